"""
Batch rename pipeline: scan, review faces, generate titles, review, apply, next page.

Phases::

    IDLE -> SCANNING -> FACE_REVIEW -> GENERATING -> REVIEW -> APPLYING
                ^                                               |
                +------------- next page ----------------------+--> DONE

The full item list of a collection is fetched once per run and processed in
pages of `page_size` items. Each I/O-bound stage (scan, generate, apply) fans
out through `bounded_map` with its own concurrency ceiling; face detection and
matching run on a separate thread pool so they never block the event loop.

Failure handling per stage:
- listing failure: fatal, the pipeline returns to IDLE with `error` set
- download / metadata / detection failure: the item continues without that data
- title failure after all attempts: the suggested name becomes an "[Error: ...]" marker
- rename failure: counted in the ApplySummary, never stops the run
"""
# ruff: noqa: PLR0913

import asyncio
import os
from collections.abc import Awaitable, Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Protocol

from loguru import logger
from pydantic import BaseModel, Field

from photo_renamer.concurrency import bounded_map
from photo_renamer.face_store import FaceSnapshot, FeatureStore, KnownFaceSample
from photo_renamer.faces import DetectedFace, FaceDetector, detect_and_match
from photo_renamer.naming import DEFAULT_TEMPLATE, render
from photo_renamer.photo_metadata import extract_photo_date, extract_photo_location
from photo_renamer.references import PersonReference, select_references
from photo_renamer.sources import PhotoItem, PhotoSource
from photo_renamer.titles import build_title_prompt

DEFAULT_PAGE_SIZE = int(os.getenv("PAGE_SIZE", "50"))
DEFAULT_SCAN_CONCURRENCY = int(os.getenv("SCAN_CONCURRENCY", "10"))
DEFAULT_NAMING_CONCURRENCY = int(os.getenv("NAMING_CONCURRENCY", "10"))
DEFAULT_APPLY_CONCURRENCY = int(os.getenv("APPLY_CONCURRENCY", "10"))
DEFAULT_TITLE_ATTEMPTS = int(os.getenv("TITLE_ATTEMPTS", "5"))
DEFAULT_HIRES_DIMENSION = int(os.getenv("HIRES_DIMENSION", "1600"))
ERROR_MARKER_PREFIX = "[Error: "


class Phase(StrEnum):
    IDLE = "idle"
    SCANNING = "scanning"
    FACE_REVIEW = "face_review"
    GENERATING = "generating"
    REVIEW = "review"
    APPLYING = "applying"
    DONE = "done"


class PipelineConfig(BaseModel):
    """Runtime knobs of one pipeline run."""

    page_size: int = Field(default=DEFAULT_PAGE_SIZE, ge=1)
    scan_concurrency: int = Field(default=DEFAULT_SCAN_CONCURRENCY, ge=1)
    naming_concurrency: int = Field(default=DEFAULT_NAMING_CONCURRENCY, ge=1)
    apply_concurrency: int = Field(default=DEFAULT_APPLY_CONCURRENCY, ge=1)
    detection_workers: int = Field(default_factory=lambda: min(8, os.cpu_count() or 1), ge=1)
    max_title_attempts: int = Field(default=DEFAULT_TITLE_ATTEMPTS, ge=1)
    retry_backoff_seconds: float = Field(default=2.0, ge=0)
    template: str = DEFAULT_TEMPLATE
    sequence_offset: int = Field(default=0, ge=0)
    hires_dimension: int | None = DEFAULT_HIRES_DIMENSION
    display_dimension: int | None = None


class PipelineStateError(RuntimeError):
    """A command was issued in a phase that does not accept it."""


class TitleRequester(Protocol):
    async def request_title(
        self,
        image_bytes: bytes,
        people: Sequence[str],
        references: Sequence[PersonReference],
        context_text: str,
    ) -> str: ...


def is_error_marker(name: str) -> bool:
    return name.startswith(ERROR_MARKER_PREFIX)


def error_marker(exc: BaseException | None) -> str:
    """
    Placeholder name shown for a photo whose title could not be generated.

    Examples:
        >>> error_marker(TimeoutError("read timed out"))
        '[Error: read timed out]'

    """
    message = str(exc) if exc is not None and str(exc) else type(exc).__name__ if exc else "Unknown error"
    return f"{ERROR_MARKER_PREFIX}{message}]"


@dataclass
class ScanResult:
    hires_bytes: bytes | None = None
    display_bytes: bytes | None = None
    photo_date: datetime | None = None
    location: str | None = None
    faces: list[DetectedFace] = field(default_factory=list)


@dataclass
class BatchItem:
    """Working state of one photo while its page moves through the pipeline."""

    photo: PhotoItem
    display_bytes: bytes | None = None
    hires_bytes: bytes | None = None
    detected_faces: list[DetectedFace] = field(default_factory=list)
    identified_names: list[str] = field(default_factory=list)
    suggested_name: str = ""
    selected: bool = True
    photo_date: datetime | None = None
    location: str | None = None

    @property
    def id(self) -> str:
        return self.photo.id

    def apply_scan(self, result: ScanResult) -> None:
        self.hires_bytes = result.hires_bytes
        self.display_bytes = result.display_bytes
        self.photo_date = result.photo_date
        self.location = result.location
        self.detected_faces = result.faces
        self.refresh_identified_names()

    def refresh_identified_names(self) -> None:
        """Distinct matched names in face order."""
        self.identified_names = list(
            dict.fromkeys(f.matched_name for f in self.detected_faces if f.matched_name),
        )


@dataclass
class Progress:
    completed: int = 0
    total: int = 0
    message: str = ""

    @property
    def fraction(self) -> float:
        return self.completed / self.total if self.total else 0.0


@dataclass
class ApplySummary:
    renamed: int = 0
    failed: int = 0
    skipped: int = 0

    def __str__(self) -> str:
        return f"{self.renamed} renamed, {self.failed} failed"


class BatchPipeline:
    """
    Drives one collection through the batch rename phases, page by page.

    Commands (`start`, `continue_to_naming`, `retry_selected`, `apply`, `skip_page`,
    `cancel`) and per-item edits are only accepted in the phases that make sense for
    them; anything else raises PipelineStateError. `on_update` is called after every
    state change so a UI can re-render; marshaling onto a UI thread is up to the caller.
    """

    def __init__(
        self,
        source: PhotoSource,
        collection_id: str,
        store: FeatureStore,
        detector: FaceDetector,
        titles: TitleRequester,
        config: PipelineConfig | None = None,
        *,
        collection_path: str | None = None,
        on_update: Callable[["BatchPipeline"], None] | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self.source = source
        self.collection_id = collection_id
        self.collection_path = collection_path
        self.store = store
        self.detector = detector
        self.titles = titles
        self.config = config or PipelineConfig()
        self.on_update = on_update
        self._sleep = sleep
        self._executor = ThreadPoolExecutor(
            max_workers=self.config.detection_workers,
            thread_name_prefix="face-detect",
        )

        self.phase = Phase.IDLE
        self.error: str | None = None
        self.notes = ""
        self.progress = Progress()
        self.all_items: list[PhotoItem] | None = None
        self.items: list[BatchItem] = []
        self.references: list[PersonReference] = []
        self.page_index = 0
        self.total_renamed = 0
        self.last_summary: ApplySummary | None = None
        self._cancelled = False

    # Derived state

    @property
    def total_pages(self) -> int:
        if not self.all_items:
            return 0
        return (len(self.all_items) + self.config.page_size - 1) // self.config.page_size

    @property
    def page_offset(self) -> int:
        return self.page_index * self.config.page_size

    @property
    def has_next_page(self) -> bool:
        return self.page_index + 1 < self.total_pages

    @property
    def page_items(self) -> list[PhotoItem]:
        if not self.all_items:
            return []
        return self.all_items[self.page_offset : self.page_offset + self.config.page_size]

    def unique_identified_names(self) -> list[str]:
        return sorted({name for item in self.items for name in item.identified_names})

    # Notifications

    def _notify(self) -> None:
        if self.on_update is not None:
            self.on_update(self)

    def _set_phase(self, phase: Phase) -> None:
        logger.debug("phase_changed", old=self.phase.value, new=phase.value, page=self.page_index + 1)
        self.phase = phase
        self._notify()

    def _set_progress(self, completed: int, total: int, message: str) -> None:
        self.progress = Progress(completed, total, message)
        self._notify()

    def _require(self, *phases: Phase) -> None:
        if self.phase not in phases:
            allowed = ", ".join(p.value for p in phases)
            msg = f"not allowed in phase {self.phase.value} (expected {allowed})"
            raise PipelineStateError(msg)

    # Scanning

    async def start(self) -> None:
        """Fetch the collection listing once, then scan the current page."""
        self._require(Phase.IDLE)
        self.error = None
        self._cancelled = False

        if self.all_items is None:
            self._set_phase(Phase.SCANNING)
            self._set_progress(0, 0, "Fetching photo list...")

            def _on_count(count: int) -> None:
                self._set_progress(0, count, f"Fetching photo list... {count} found")

            try:
                self.all_items = await self.source.list_items(self.collection_id, on_progress=_on_count)
            except Exception as exc:  # noqa: BLE001
                logger.exception("collection_listing_failed", collection=self.collection_id, error=str(exc))
                self.error = str(exc) or type(exc).__name__
                self._set_phase(Phase.IDLE)
                return
            logger.info("collection_fetched", items=len(self.all_items), pages=self.total_pages)

        if self.page_index >= self.total_pages:
            self._finish()
            return
        await self._scan_page()

    async def _download(self, ref: str, max_dimension: int | None) -> bytes | None:
        if not ref:
            return None
        try:
            return await self.source.download_bytes(ref, max_dimension)
        except Exception as exc:  # noqa: BLE001
            logger.warning("download_failed", ref=ref, error=str(exc))
            return None

    def _analyze(
        self,
        photo: PhotoItem,
        data: bytes | None,
        snapshot: FaceSnapshot,
    ) -> tuple[datetime | None, str | None, list[DetectedFace]]:
        """Blocking metadata extraction, detection and matching for one photo."""
        photo_date = extract_photo_date(
            data,
            photo.created_date,
            photo.collection_path or self.collection_path,
        )
        location = extract_photo_location(data)
        faces: list[DetectedFace] = []
        if data:
            try:
                faces = detect_and_match(self.detector, data, snapshot, photo_date)
            except Exception as exc:  # noqa: BLE001
                logger.warning("face_detection_failed", item=photo.id, error=str(exc))
        return photo_date, location, faces

    async def _scan_one(self, photo: PhotoItem, snapshot: FaceSnapshot) -> ScanResult:
        with logger.contextualize(item=photo.id):
            hires = await self._download(photo.full_res_ref, self.config.hires_dimension)
            if photo.thumbnail_ref and photo.thumbnail_ref != photo.full_res_ref:
                display = await self._download(photo.thumbnail_ref, self.config.display_dimension)
            else:
                display = hires

            data = hires or display
            loop = asyncio.get_running_loop()
            photo_date, location, faces = await loop.run_in_executor(
                self._executor,
                self._analyze,
                photo,
                data,
                snapshot,
            )
            return ScanResult(hires, display, photo_date, location, faces)

    async def _scan_page(self) -> None:
        self.items = [BatchItem(photo) for photo in self.page_items]
        self.references = []
        self._set_phase(Phase.SCANNING)

        # Labels added during review only affect the next page.
        snapshot = self.store.snapshot()
        total_all = len(self.all_items or [])
        completed = 0
        self._set_progress(0, len(self.items), f"Scanning {self.page_offset}/{total_all}...")
        logger.info(
            "page_scan_started",
            page=self.page_index + 1,
            pages=self.total_pages,
            items=len(self.items),
            known_samples=len(snapshot),
        )

        async def _op(index: int) -> ScanResult:
            return await self._scan_one(self.items[index].photo, snapshot)

        async with aclosing(bounded_map(range(len(self.items)), self.config.scan_concurrency, _op)) as results:
            async for index, result in results:
                self.items[index].apply_scan(result)
                completed += 1
                self._set_progress(
                    completed,
                    len(self.items),
                    f"Scanned {self.page_offset + completed}/{total_all}...",
                )
                if self._cancelled:
                    break

        if self._cancelled:
            self._abort()
            return

        self.rebuild_references()
        logger.info(
            "page_scan_completed",
            page=self.page_index + 1,
            faces=sum(len(item.detected_faces) for item in self.items),
            people=len(self.unique_identified_names()),
        )
        self._set_phase(Phase.FACE_REVIEW)

    # Face review

    def rebuild_references(self) -> list[PersonReference]:
        self.references = select_references(self.items)
        return self.references

    def label_face(self, item_index: int, face_index: int, name: str) -> KnownFaceSample:
        """
        Confirm the identity of one detected face and remember it in the store.

        Every call appends a sample; the face's shown name only changes if the name does.
        """
        self._require(Phase.FACE_REVIEW)
        item = self.items[item_index]
        face = item.detected_faces[face_index]
        sample = self.store.label(name, face.feature_vector, face.crop_bytes, item.photo_date)
        face.assign(sample.person_name)
        item.refresh_identified_names()
        self._notify()
        return sample

    async def continue_to_naming(self, notes: str | None = None) -> None:
        """Rebuild references from the reviewed faces and generate a name for every photo."""
        self._require(Phase.FACE_REVIEW)
        if notes is not None:
            self.notes = notes.strip()
        self.rebuild_references()
        await self._generate(range(len(self.items)), self.notes)

    async def skip_page(self) -> None:
        """Drop the current page without renaming anything and move on."""
        self._require(Phase.FACE_REVIEW, Phase.REVIEW)
        logger.info("page_skipped", page=self.page_index + 1)
        await self._advance()

    # Generating

    def sequence_number(self, index: int) -> int:
        return self.config.sequence_offset + self.total_renamed + index + 1

    async def _name_one(self, index: int, notes: str, references: Sequence[PersonReference]) -> str:
        item = self.items[index]
        with logger.contextualize(item=item.id):
            context = build_title_prompt(
                item.identified_names,
                [ref.person_name for ref in references],
                item.photo.collection_path or self.collection_path,
                item.location,
                notes or None,
            )
            last_error: BaseException | None = None
            attempts = self.config.max_title_attempts
            for attempt in range(1, attempts + 1):
                try:
                    title = await self.titles.request_title(
                        item.display_bytes or b"",
                        item.identified_names,
                        references,
                        context,
                    )
                except Exception as exc:  # noqa: BLE001
                    last_error = exc
                    logger.warning("title_attempt_failed", attempt=attempt, error=str(exc))
                    if attempt < attempts:
                        await self._sleep(attempt * self.config.retry_backoff_seconds)
                    continue

                album_path = item.photo.collection_path or self.collection_path or ""
                album = album_path.split("/")[-1].strip() or None
                return render(
                    self.config.template,
                    title=title,
                    date=item.photo_date,
                    seq=self.sequence_number(index),
                    people=item.identified_names,
                    album=album,
                    original=item.photo.original_stem,
                    location=item.location,
                )

            logger.error("title_attempts_exhausted", attempts=attempts, error=str(last_error))
            return error_marker(last_error)

    async def _generate(self, indices: Sequence[int], notes: str) -> None:
        self._set_phase(Phase.GENERATING)
        references = tuple(self.references)
        inputs = [i for i in indices if self.items[i].display_bytes is not None]
        completed = 0
        self._set_progress(0, len(inputs), f"Naming 0/{len(inputs)}...")

        async def _op(index: int) -> str:
            return await self._name_one(index, notes, references)

        async with aclosing(bounded_map(inputs, self.config.naming_concurrency, _op)) as results:
            async for position, name in results:
                self.items[inputs[position]].suggested_name = name
                completed += 1
                self._set_progress(completed, len(inputs), f"Named {completed}/{len(inputs)}...")
                if self._cancelled:
                    break

        if self._cancelled:
            self._abort()
            return

        failures = sum(1 for i in inputs if is_error_marker(self.items[i].suggested_name))
        logger.info("page_named", page=self.page_index + 1, named=len(inputs) - failures, failed=failures)
        self._set_phase(Phase.REVIEW)

    # Review

    def _item_for_edit(self, index: int) -> BatchItem:
        self._require(Phase.REVIEW)
        return self.items[index]

    def set_selected(self, index: int, selected: bool) -> None:  # noqa: FBT001
        self._item_for_edit(index).selected = selected
        self._notify()

    def select_all(self, selected: bool = True) -> None:  # noqa: FBT001, FBT002
        self._require(Phase.REVIEW)
        for item in self.items:
            item.selected = selected
        self._notify()

    def edit_name(self, index: int, name: str) -> None:
        self._item_for_edit(index).suggested_name = name.strip()
        self._notify()

    async def retry_selected(self, extra_notes: str = "") -> None:
        """Regenerate names for the selected photos only, with optional extra notes."""
        self._require(Phase.REVIEW)
        selected = [i for i, item in enumerate(self.items) if item.selected]
        if not selected:
            return
        combined = ". ".join(part for part in (self.notes.strip(), extra_notes.strip()) if part)
        logger.info("retrying_selected", count=len(selected), notes=combined)
        await self._generate(selected, combined)

    # Apply

    async def _rename_one(self, item_id: str, name: str) -> bool:
        try:
            await self.source.rename_item(item_id, name)
        except Exception as exc:  # noqa: BLE001
            logger.warning("rename_failed", item=item_id, name=name, error=str(exc))
            return False
        return True

    async def apply(self) -> ApplySummary:
        """
        Rename every selected photo that has a usable name, then move to the next page.

        Items with an empty name or an error marker are skipped. With nothing selected
        the pipeline stays in REVIEW; use `skip_page` to move on without renaming.
        """
        self._require(Phase.REVIEW)
        selected = [item for item in self.items if item.selected]
        if not selected:
            logger.info("nothing_selected", page=self.page_index + 1)
            return ApplySummary()
        targets = [
            (item.id, item.suggested_name)
            for item in selected
            if item.suggested_name.strip() and not is_error_marker(item.suggested_name)
        ]
        summary = ApplySummary(skipped=len(selected) - len(targets))

        self._set_phase(Phase.APPLYING)
        self._set_progress(0, len(targets), "Applying renames...")

        async def _op(target: tuple[str, str]) -> bool:
            return await self._rename_one(*target)

        async with aclosing(bounded_map(targets, self.config.apply_concurrency, _op)) as results:
            async for _, ok in results:
                if ok:
                    summary.renamed += 1
                else:
                    summary.failed += 1
                done = summary.renamed + summary.failed
                self._set_progress(done, len(targets), f"Renaming {done}/{len(targets)}...")
                if self._cancelled:
                    break

        self.total_renamed += summary.renamed
        self.last_summary = summary
        if summary.failed:
            self.error = str(summary)
        logger.info(
            "page_applied",
            page=self.page_index + 1,
            renamed=summary.renamed,
            failed=summary.failed,
            skipped=summary.skipped,
            total_renamed=self.total_renamed,
        )

        if self._cancelled:
            self._abort()
            return summary
        await self._advance()
        return summary

    # Paging, termination

    async def _advance(self) -> None:
        if self.has_next_page:
            self.page_index += 1
            self.error = None
            self.items = []
            self.references = []
            self._set_progress(0, 0, f"Batch {self.page_index} done. Starting next batch...")
            await self._scan_page()
        else:
            self._finish()

    def _finish(self) -> None:
        pages = self.total_pages
        self._set_progress(
            pages,
            pages,
            f"Done! {self.total_renamed} photos renamed across {pages} batch{'' if pages == 1 else 'es'}.",
        )
        logger.info("run_completed", total_renamed=self.total_renamed, pages=pages)
        self._set_phase(Phase.DONE)

    def _abort(self) -> None:
        logger.warning("run_cancelled", phase=self.phase.value, page=self.page_index + 1)
        self._set_phase(Phase.IDLE)

    def cancel(self) -> None:
        """
        Stop starting new work. Operations already running finish in the background.

        Takes effect at the next completed operation of the running stage; between stages
        it returns the pipeline to IDLE immediately.
        """
        self._cancelled = True
        if self.phase in (Phase.FACE_REVIEW, Phase.REVIEW):
            self._abort()

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
