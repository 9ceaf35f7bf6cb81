"""End-to-end tests of the batch pipeline with stubbed host, detector and model."""

import asyncio
from collections.abc import Callable, Iterator, Sequence
from pathlib import Path
from typing import Any

import numpy as np
import pytest

from photo_renamer.face_store import FeatureStore
from photo_renamer.faces import BoundingBox, RawFace
from photo_renamer.pipeline import BatchPipeline, Phase, PipelineConfig, PipelineStateError
from photo_renamer.references import PersonReference
from photo_renamer.sources import ListingError, PhotoItem, RenameError

ALBUM = "Family / 2014 / Summer"


class StubSource:
    """In-memory photo host."""

    def __init__(
        self,
        count: int,
        *,
        fail_listing: bool = False,
        fail_downloads: Sequence[str] = (),
        fail_renames: Sequence[str] = (),
    ) -> None:
        self.items = [
            PhotoItem(
                id=str(i),
                filename=f"IMG_{i:04d}.jpg",
                thumbnail_ref=f"thumb/{i}",
                full_res_ref=f"full/{i}",
                collection_path=ALBUM,
            )
            for i in range(count)
        ]
        self.fail_listing = fail_listing
        self.fail_downloads = set(fail_downloads)
        self.fail_renames = set(fail_renames)
        self.list_calls = 0
        self.downloads: list[str] = []
        self.renamed: dict[str, str] = {}

    async def list_items(
        self,
        collection_id: str,  # noqa: ARG002
        on_progress: Callable[[int], None] | None = None,
    ) -> list[PhotoItem]:
        self.list_calls += 1
        if self.fail_listing:
            msg = "host unreachable"
            raise ListingError(msg)
        if on_progress is not None:
            on_progress(len(self.items))
        return list(self.items)

    async def download_bytes(self, ref: str, max_dimension: int | None = None) -> bytes:  # noqa: ARG002
        self.downloads.append(ref)
        if ref.split("/")[1] in self.fail_downloads:
            msg = f"cannot fetch {ref}"
            raise OSError(msg)
        return ref.encode()

    async def rename_item(self, item_id: str, new_name: str) -> None:
        await asyncio.sleep(0)
        if item_id in self.fail_renames:
            msg = "file is locked"
            raise RenameError(msg)
        self.renamed[item_id] = new_name


class StubDetector:
    """Returns preset faces for specific image bytes."""

    def __init__(self, faces: dict[bytes, list[RawFace]] | None = None) -> None:
        self.faces = faces or {}

    def detect(self, image_bytes: bytes) -> list[RawFace]:
        return list(self.faces.get(image_bytes, []))


class StubTitles:
    """Titles 'Photo N', optionally failing the first few requests for some images."""

    def __init__(self, failures: dict[bytes, int] | None = None) -> None:
        self.failures = failures or {}
        self.calls: list[dict[str, Any]] = []

    async def request_title(
        self,
        image_bytes: bytes,
        people: Sequence[str],
        references: Sequence[PersonReference],
        context_text: str,
    ) -> str:
        self.calls.append(
            {
                "image": image_bytes,
                "people": list(people),
                "references": list(references),
                "context": context_text,
            },
        )
        if self.failures.get(image_bytes, 0) > 0:
            self.failures[image_bytes] -= 1
            msg = "model timed out"
            raise TimeoutError(msg)
        return f"Photo {image_bytes.decode().split('/')[1]}"


def _face(vector: list[float], size: float = 0.2) -> RawFace:
    return RawFace(BoundingBox(0.1, 0.1, size, size), b"crop", np.array(vector, dtype=np.float32))


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def make_pipeline(tmp_path: Path, sleeps: list[float]) -> Iterator[Callable[..., BatchPipeline]]:
    created: list[BatchPipeline] = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    def _make(
        source: StubSource,
        *,
        detector: StubDetector | None = None,
        titles: StubTitles | None = None,
        template: str = "{date} {seq} {title}",
        page_size: int = 50,
        concurrency: int = 10,
        on_update: Callable[[BatchPipeline], None] | None = None,
    ) -> BatchPipeline:
        pipeline = BatchPipeline(
            source,
            "album-1",
            FeatureStore(tmp_path / "faces"),
            detector or StubDetector(),
            titles or StubTitles(),
            PipelineConfig(
                page_size=page_size,
                template=template,
                detection_workers=2,
                scan_concurrency=concurrency,
                naming_concurrency=concurrency,
                apply_concurrency=concurrency,
            ),
            on_update=on_update,
            sleep=fake_sleep,
        )
        created.append(pipeline)
        return pipeline

    yield _make
    for pipeline in created:
        pipeline.close()


def test_full_run_pages_through_collection(make_pipeline: Callable[..., BatchPipeline]) -> None:
    """Three photos in pages of two: names are numbered across pages and all get renamed."""
    source = StubSource(3)
    pipeline = make_pipeline(source, page_size=2)

    async def main() -> None:
        await pipeline.start()
        assert pipeline.phase == Phase.FACE_REVIEW
        assert pipeline.total_pages == 2  # noqa: PLR2004
        assert [item.id for item in pipeline.items] == ["0", "1"]

        await pipeline.continue_to_naming()
        assert pipeline.phase == Phase.REVIEW
        assert [item.suggested_name for item in pipeline.items] == [
            "20140615 001 Photo 0",
            "20140615 002 Photo 1",
        ]

        summary = await pipeline.apply()
        assert (summary.renamed, summary.failed, summary.skipped) == (2, 0, 0)
        assert pipeline.phase == Phase.FACE_REVIEW
        assert pipeline.page_index == 1
        assert [item.id for item in pipeline.items] == ["2"]

        await pipeline.continue_to_naming()
        assert pipeline.items[0].suggested_name == "20140615 003 Photo 2"
        await pipeline.apply()

    asyncio.run(main())

    assert pipeline.phase == Phase.DONE
    assert pipeline.total_renamed == 3  # noqa: PLR2004
    assert source.list_calls == 1
    assert source.renamed == {
        "0": "20140615 001 Photo 0",
        "1": "20140615 002 Photo 1",
        "2": "20140615 003 Photo 2",
    }
    assert "3 photos renamed across 2 batches" in pipeline.progress.message


def test_listing_failure_returns_to_idle(make_pipeline: Callable[..., BatchPipeline]) -> None:
    """A collection that cannot be listed stops the run with the error surfaced."""
    pipeline = make_pipeline(StubSource(3, fail_listing=True))

    asyncio.run(pipeline.start())

    assert pipeline.phase == Phase.IDLE
    assert pipeline.error == "host unreachable"
    assert pipeline.all_items is None


def test_empty_collection_is_done(make_pipeline: Callable[..., BatchPipeline]) -> None:
    """Nothing to rename finishes immediately."""
    pipeline = make_pipeline(StubSource(0))
    asyncio.run(pipeline.start())
    assert pipeline.phase == Phase.DONE


def test_title_failures_become_error_markers(
    make_pipeline: Callable[..., BatchPipeline],
    sleeps: list[float],
) -> None:
    """After five failed attempts with linear backoff the item shows an error marker and is skipped."""
    titles = StubTitles({b"thumb/0": 99})
    source = StubSource(2)
    pipeline = make_pipeline(source, titles=titles)

    async def main() -> None:
        await pipeline.start()
        await pipeline.continue_to_naming()
        assert pipeline.items[0].suggested_name == "[Error: model timed out]"
        assert pipeline.items[1].suggested_name == "20140615 002 Photo 1"
        summary = await pipeline.apply()
        assert (summary.renamed, summary.failed, summary.skipped) == (1, 0, 1)

    asyncio.run(main())

    assert sleeps == [2.0, 4.0, 6.0, 8.0]
    assert sum(1 for call in titles.calls if call["image"] == b"thumb/0") == 5  # noqa: PLR2004
    assert source.renamed == {"1": "20140615 002 Photo 1"}


def test_transient_title_failure_is_retried(
    make_pipeline: Callable[..., BatchPipeline],
    sleeps: list[float],
) -> None:
    """A request that succeeds on the third attempt yields a normal name."""
    pipeline = make_pipeline(StubSource(1), titles=StubTitles({b"thumb/0": 2}))

    async def main() -> None:
        await pipeline.start()
        await pipeline.continue_to_naming()

    asyncio.run(main())

    assert pipeline.items[0].suggested_name == "20140615 001 Photo 0"
    assert sleeps == [2.0, 4.0]


def test_rename_failures_are_counted(make_pipeline: Callable[..., BatchPipeline]) -> None:
    """A failed rename is tallied and does not stop the others."""
    source = StubSource(3, fail_renames=["2"])
    pipeline = make_pipeline(source)

    async def main() -> None:
        await pipeline.start()
        await pipeline.continue_to_naming()
        summary = await pipeline.apply()
        assert (summary.renamed, summary.failed) == (2, 1)
        assert str(summary) == "2 renamed, 1 failed"

    asyncio.run(main())

    assert pipeline.phase == Phase.DONE
    assert pipeline.total_renamed == 2  # noqa: PLR2004
    assert set(source.renamed) == {"0", "1"}


def test_download_failure_degrades_item(make_pipeline: Callable[..., BatchPipeline]) -> None:
    """An item without image data keeps its path date, gets no name and is skipped on apply."""
    titles = StubTitles()
    pipeline = make_pipeline(StubSource(2, fail_downloads=["0"]), titles=titles)

    async def main() -> None:
        await pipeline.start()
        item = pipeline.items[0]
        assert item.display_bytes is None
        assert item.hires_bytes is None
        assert item.detected_faces == []
        assert item.photo_date is not None
        assert item.photo_date.year == 2014  # noqa: PLR2004

        await pipeline.continue_to_naming()
        assert item.suggested_name == ""
        summary = await pipeline.apply()
        assert (summary.renamed, summary.skipped) == (1, 1)

    asyncio.run(main())

    assert [call["image"] for call in titles.calls] == [b"thumb/1"]


def test_labeled_faces_feed_references_and_later_pages(
    make_pipeline: Callable[..., BatchPipeline],
) -> None:
    """Labeling a face names it now, becomes a title reference, and is recognized on the next page."""
    detector = StubDetector({b"full/0": [_face([0.0, 1.0])], b"full/2": [_face([0.0, 0.98])]})
    titles = StubTitles()
    pipeline = make_pipeline(
        StubSource(3),
        detector=detector,
        titles=titles,
        template="{people} - {title} ({album})",
        page_size=2,
    )

    async def main() -> None:
        await pipeline.start()
        face = pipeline.items[0].detected_faces[0]
        assert face.matched_name is None

        pipeline.label_face(0, 0, "Ana")
        pipeline.label_face(0, 0, "Ana")
        assert face.matched_name == "Ana"
        assert pipeline.items[0].identified_names == ["Ana"]
        assert len(pipeline.store.samples_for("Ana")) == 2  # noqa: PLR2004

        await pipeline.continue_to_naming()
        assert [ref.person_name for ref in pipeline.references] == ["Ana"]
        assert pipeline.items[0].suggested_name == "Ana - Photo 0 (Summer)"
        assert pipeline.items[1].suggested_name == "Photo 1 (Summer)"

        await pipeline.apply()
        assert pipeline.page_index == 1
        assert pipeline.items[0].identified_names == ["Ana"]

    asyncio.run(main())

    first_call = next(call for call in titles.calls if call["image"] == b"thumb/0")
    assert first_call["people"] == ["Ana"]
    assert first_call["references"][0].image_bytes == b"thumb/0"
    assert "Album location: Family / 2014 / Summer" in first_call["context"]


def test_retry_selected_uses_combined_notes(make_pipeline: Callable[..., BatchPipeline]) -> None:
    """Retry only regenerates selected items, with the extra notes appended."""
    titles = StubTitles()
    pipeline = make_pipeline(StubSource(2), titles=titles)
    pipeline.notes = "Summer trip"

    async def main() -> None:
        await pipeline.start()
        await pipeline.continue_to_naming()
        pipeline.set_selected(1, False)  # noqa: FBT003
        await pipeline.retry_selected("at night")

    asyncio.run(main())

    assert pipeline.phase == Phase.REVIEW
    assert len(titles.calls) == 3  # noqa: PLR2004
    retry = titles.calls[-1]
    assert retry["image"] == b"thumb/0"
    assert "User notes: Summer trip. at night" in retry["context"]


def test_edit_and_select_all(make_pipeline: Callable[..., BatchPipeline]) -> None:
    """Edited names are applied verbatim and deselected items are left alone."""
    source = StubSource(2)
    pipeline = make_pipeline(source)

    async def main() -> None:
        await pipeline.start()
        await pipeline.continue_to_naming()
        pipeline.select_all(selected=False)
        pipeline.set_selected(0, True)  # noqa: FBT003
        pipeline.edit_name(0, "  My own name ")
        summary = await pipeline.apply()
        assert (summary.renamed, summary.skipped) == (1, 0)

    asyncio.run(main())

    assert source.renamed == {"0": "My own name"}


def test_skip_page_moves_on_without_renaming(make_pipeline: Callable[..., BatchPipeline]) -> None:
    """Skipping a page renames nothing and scans the next one."""
    source = StubSource(3)
    pipeline = make_pipeline(source, page_size=2)

    async def main() -> None:
        await pipeline.start()
        await pipeline.skip_page()
        assert pipeline.phase == Phase.FACE_REVIEW
        assert pipeline.page_index == 1
        await pipeline.skip_page()

    asyncio.run(main())

    assert pipeline.phase == Phase.DONE
    assert source.renamed == {}
    assert pipeline.total_renamed == 0


def test_commands_rejected_in_wrong_phase(make_pipeline: Callable[..., BatchPipeline]) -> None:
    """Commands outside their phase raise PipelineStateError."""
    pipeline = make_pipeline(StubSource(1), detector=StubDetector({b"full/0": [_face([1.0, 0.0])]}))

    async def main() -> None:
        with pytest.raises(PipelineStateError):
            await pipeline.apply()
        await pipeline.start()
        with pytest.raises(PipelineStateError):
            await pipeline.start()
        with pytest.raises(PipelineStateError):
            pipeline.edit_name(0, "X")
        await pipeline.continue_to_naming()
        with pytest.raises(PipelineStateError):
            pipeline.label_face(0, 0, "Ana")

    asyncio.run(main())


def test_cancel_between_stages_returns_to_idle(make_pipeline: Callable[..., BatchPipeline]) -> None:
    """Cancelling during review drops back to idle and keeps the page position."""
    source = StubSource(2)
    pipeline = make_pipeline(source)

    async def main() -> None:
        await pipeline.start()
        await pipeline.continue_to_naming()
        pipeline.cancel()

    asyncio.run(main())

    assert pipeline.phase == Phase.IDLE
    assert pipeline.page_index == 0
    assert source.renamed == {}


def _cancel_after_first(phase: Phase) -> Callable[[BatchPipeline], None]:
    """Cancel once the first operation of `phase` has completed."""
    started = False

    def _on_update(pipeline: BatchPipeline) -> None:
        nonlocal started
        if pipeline.phase != phase:
            return
        if pipeline.progress.completed == 0:
            started = True
        elif started:
            pipeline.cancel()

    return _on_update


def test_cancel_while_scanning_stops_new_downloads(make_pipeline: Callable[..., BatchPipeline]) -> None:
    """Cancelling mid-scan starts no further photos and drops back to idle."""
    source = StubSource(6)
    pipeline = make_pipeline(source, concurrency=2, on_update=_cancel_after_first(Phase.SCANNING))

    asyncio.run(pipeline.start())

    assert pipeline.phase == Phase.IDLE
    assert len([ref for ref in source.downloads if ref.startswith("full/")]) <= 3  # noqa: PLR2004
    assert sum(1 for item in pipeline.items if item.display_bytes is not None) == 1
    assert source.renamed == {}


def test_cancel_while_naming_stops_new_requests(make_pipeline: Callable[..., BatchPipeline]) -> None:
    """Cancelling mid-naming requests no further titles and later photos stay unnamed."""
    titles = StubTitles()
    source = StubSource(6)
    pipeline = make_pipeline(
        source,
        titles=titles,
        concurrency=2,
        on_update=_cancel_after_first(Phase.GENERATING),
    )

    async def main() -> None:
        await pipeline.start()
        await pipeline.continue_to_naming()

    asyncio.run(main())

    assert pipeline.phase == Phase.IDLE
    assert len(titles.calls) <= 3  # noqa: PLR2004
    assert sum(1 for item in pipeline.items if item.suggested_name) == 1
    assert all(item.suggested_name == "" for item in pipeline.items[3:])
    assert source.renamed == {}


def test_apply_with_nothing_selected_stays_in_review(make_pipeline: Callable[..., BatchPipeline]) -> None:
    """Apply without a selection renames nothing and does not move to the next page."""
    source = StubSource(3)
    pipeline = make_pipeline(source, page_size=2)

    async def main() -> None:
        await pipeline.start()
        await pipeline.continue_to_naming()
        pipeline.select_all(selected=False)
        summary = await pipeline.apply()
        assert (summary.renamed, summary.failed, summary.skipped) == (0, 0, 0)

    asyncio.run(main())

    assert pipeline.phase == Phase.REVIEW
    assert pipeline.page_index == 0
    assert source.renamed == {}


def test_rename_error_cleared_on_next_page(make_pipeline: Callable[..., BatchPipeline]) -> None:
    """A failed rename is reported for its own page only."""
    source = StubSource(3, fail_renames=["0", "2"])
    pipeline = make_pipeline(source, page_size=2)

    async def main() -> None:
        await pipeline.start()
        await pipeline.continue_to_naming()
        await pipeline.apply()
        assert pipeline.page_index == 1
        assert pipeline.error is None
        assert pipeline.last_summary is not None
        assert pipeline.last_summary.failed == 1

        await pipeline.continue_to_naming()
        await pipeline.apply()

    asyncio.run(main())

    assert pipeline.phase == Phase.DONE
    assert pipeline.error == "0 renamed, 1 failed"
    assert source.renamed == {"1": "20140615 002 Photo 1"}
