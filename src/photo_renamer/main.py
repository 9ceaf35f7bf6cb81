#!/usr/bin/env python3
"""
Photo Renamer: CLI app to batch-rename photos with AI-written titles and face recognition.

Photos in a collection are processed page by page: faces are detected and matched
against a local store of known people, you confirm or label faces, a vision-language
model proposes a title for each photo, you review the names, and the files are renamed.

Requirements:
 - Exiftool installed and available in PATH (capture dates, title tags).
 - Ollama, LM Studio or an OpenAI-compatible server with a vision-language model.
 - Optional: `pip install 'photo-renamer[faces]'` for face recognition.

"""
# ruff: noqa: PLR0913

import asyncio
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Annotated, Literal

from cyclopts import App, Parameter, validators
from loguru import logger
from prompt_toolkit import PromptSession
from prompt_toolkit.completion import WordCompleter

from photo_renamer.face_store import DEFAULT_STORE_DIR, FeatureStore
from photo_renamer.faces import FaceDetector, InsightFaceDetector, NullFaceDetector
from photo_renamer.matching import (
    DEFAULT_AGE_WINDOW_YEARS,
    DEFAULT_AMBIGUITY_FLOOR,
    DEFAULT_AMBIGUITY_RATIO,
    DEFAULT_MATCH_THRESHOLD,
    MatchSettings,
)
from photo_renamer.naming import DEFAULT_TEMPLATE, preview
from photo_renamer.pipeline import (
    DEFAULT_APPLY_CONCURRENCY,
    DEFAULT_NAMING_CONCURRENCY,
    DEFAULT_PAGE_SIZE,
    DEFAULT_SCAN_CONCURRENCY,
    BatchPipeline,
    Phase,
    PipelineConfig,
    is_error_marker,
)
from photo_renamer.sources import LocalFolderSource
from photo_renamer.titles import (
    DEFAULT_MAX_TOKENS,
    DEFAULT_MODEL_NAME,
    DEFAULT_TEMPERATURE,
    DEFAULT_VALIDATION_RETRIES,
    ProviderName,
    TitleGenerator,
    create_agent,
)

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL", "OFF"]
FaceBackend = Literal["insightface", "none"]

REVIEW_HELP = (
    "[Enter] apply  e N name: edit  t N: toggle  a/n: select all/none  "
    "r [notes]: retry selected  s: skip page  q: quit"
)


# Cyclopts app
__version__ = "0.1.0"
app = App(
    name="photo-renamer",
    version=__version__,
)
faces_app = App(name="faces", help="Manage the store of known faces.")
app.command(faces_app)


def setup_logging(
    file_log_level: LogLevel = "DEBUG",
    console_log_level: LogLevel = "INFO",
    log_folder: Path = Path("logs"),
) -> None:
    """
    Configure Loguru for both console and file logging.

    Args:
        file_log_level: Log level for file (use 'OFF' to disable)
        console_log_level: Log level for console (use 'OFF' to disable)
        log_folder: Directory where log files are stored

    """
    # Remove default handler
    logger.remove()

    # Add file logging
    if file_log_level != "OFF":
        log_folder.mkdir(parents=True, exist_ok=True)
        log_file = log_folder / Path(
            datetime.now(tz=UTC).strftime("%Y%m%d%H%M%S-photo_renamer.log"),
        )
        logger.add(
            log_file,
            level=file_log_level,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{name:<8}:{function:<25}:{line:>4} | "
                "{message:<40} | "
                "{extra}"
            ),
            rotation="500 MB",
            retention="10 days",
            compression="zip",
        )

    # Add console logging
    if console_log_level != "OFF":
        logger.add(
            sys.stderr,
            level=console_log_level,
            colorize=True,
            format=(
                "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
                "<level>{level: <7}</level> | "
                "<level>{message:<40.50}</level> | "
                "<yellow>{extra}</yellow>"
            ),
        )


def _create_detector(backend: FaceBackend) -> FaceDetector:
    if backend == "none":
        return NullFaceDetector()
    return InsightFaceDetector()


def _print_progress(pipeline: BatchPipeline) -> None:
    if pipeline.phase in (Phase.SCANNING, Phase.GENERATING, Phase.APPLYING) and pipeline.progress.total:
        progress = pipeline.progress
        print(f"\r  {progress.message} ({progress.fraction:.0%})", end="", file=sys.stderr, flush=True)


async def _review_faces(pipeline: BatchPipeline, session: PromptSession[str]) -> None:
    """Ask for a name for every unmatched or ambiguous face on the page."""
    pending = [
        (i, j)
        for i, item in enumerate(pipeline.items)
        for j, face in enumerate(item.detected_faces)
        if face.matched_name is None
    ]
    print(
        f"\nBatch {pipeline.page_index + 1}/{pipeline.total_pages}: "
        f"{sum(len(item.detected_faces) for item in pipeline.items)} faces, "
        f"{len(pending)} to review. Known: {', '.join(pipeline.unique_identified_names()) or '-'}",
    )
    for item_index, face_index in pending:
        item = pipeline.items[item_index]
        face = item.detected_faces[face_index]
        hint = f" (maybe {' / '.join(face.ambiguous_candidates)})" if face.is_ambiguous else ""
        completer = WordCompleter(
            sorted({*pipeline.store.known_names(), *face.ambiguous_candidates}),
            ignore_case=True,
            sentence=True,
        )
        answer = (
            await session.prompt_async(
                f"{item.photo.display_name} face {face_index + 1}{hint} [Enter skip, . done]: ",
                completer=completer,
            )
        ).strip()
        if answer == ".":
            break
        if answer:
            try:
                pipeline.label_face(item_index, face_index, answer)
            except ValueError as exc:
                logger.warning("face_label_rejected", name=answer, error=str(exc))
                print(f"Could not save {answer!r}: {exc}")


def _print_review(pipeline: BatchPipeline) -> None:
    print(f"\nBatch {pipeline.page_index + 1}/{pipeline.total_pages}:")
    for index, item in enumerate(pipeline.items, start=1):
        mark = "x" if item.selected else " "
        name = item.suggested_name or "(no name)"
        flag = "  !" if is_error_marker(item.suggested_name) else ""
        print(f"  [{mark}] {index:>3}. {item.photo.filename} -> {name}{flag}")
    print(REVIEW_HELP)


async def _review_names(pipeline: BatchPipeline, session: PromptSession[str]) -> bool:
    """
    Interactive review loop. Returns False when the user quits.

    Leaves the pipeline in the phase reached by the chosen command.
    """
    while pipeline.phase == Phase.REVIEW:
        _print_review(pipeline)
        command = (await session.prompt_async("> ")).strip()
        verb, _, rest = command.partition(" ")
        verb = verb.lower()
        if not verb:
            if not any(item.selected for item in pipeline.items):
                print("Nothing selected. Use t N or a to select, or s to skip this page.")
                continue
            summary = await pipeline.apply()
            print(f"\n{summary}")
        elif verb == "q":
            pipeline.cancel()
            return False
        elif verb == "s":
            await pipeline.skip_page()
        elif verb == "a":
            pipeline.select_all(selected=True)
        elif verb == "n":
            pipeline.select_all(selected=False)
        elif verb == "r":
            await pipeline.retry_selected(rest)
        elif verb in ("e", "t"):
            number, _, new_name = rest.partition(" ")
            if not number.isdigit() or not 1 <= int(number) <= len(pipeline.items):
                print(f"No photo number {number!r}")
                continue
            index = int(number) - 1
            if verb == "t":
                pipeline.set_selected(index, not pipeline.items[index].selected)
            else:
                pipeline.edit_name(index, new_name)
        else:
            print(f"Unknown command {verb!r}")
    return True


async def _run(pipeline: BatchPipeline, *, interactive: bool) -> bool:
    """Drive the pipeline to DONE. Returns True when every attempted rename succeeded."""
    session: PromptSession[str] = PromptSession()
    all_ok = True
    await pipeline.start()
    while pipeline.phase not in (Phase.DONE, Phase.IDLE):
        if pipeline.phase == Phase.FACE_REVIEW:
            print(file=sys.stderr)
            if interactive:
                await _review_faces(pipeline, session)
            await pipeline.continue_to_naming()
        elif pipeline.phase == Phase.REVIEW:
            if interactive:
                if not await _review_names(pipeline, session):
                    break
            else:
                summary = await pipeline.apply()
                logger.info("batch_applied", summary=str(summary))
            if pipeline.last_summary is not None and pipeline.last_summary.failed:
                all_ok = False
        else:
            msg = f"unexpected pipeline phase {pipeline.phase.value}"
            raise RuntimeError(msg)

    if pipeline.error and pipeline.all_items is None:
        logger.error("run_failed", error=pipeline.error)
        return False
    print(f"\n{pipeline.progress.message}")
    return all_ok


@app.command
def rename(
    folder: Annotated[
        Path,
        Parameter(
            validator=validators.Path(exists=True, file_okay=False, dir_okay=True),
            help="Root folder of the photo library",
        ),
    ],
    collection: Annotated[
        str,
        Parameter(
            name=("--collection", "-c"),
            help="Sub-folder of the root to rename (relative path, default: the root itself)",
        ),
    ] = ".",
    *,
    template: Annotated[
        str,
        Parameter(
            name=("--template", "-t"),
            help=(
                "Naming template. Tokens: {title} {date} {date:FMT} {seq} {seq:N} "
                "{people} {album} {original} {location}"
            ),
        ),
    ] = DEFAULT_TEMPLATE,
    notes: Annotated[
        str,
        Parameter(name=("--notes",), help="Free-text notes passed to the model for every photo"),
    ] = "",
    sequence_offset: Annotated[
        int,
        Parameter(name=("--sequence-offset",), help="Number the first photo offset+1"),
    ] = 0,
    model_name: Annotated[
        str,
        Parameter(
            name=("--model", "-m"),
            help="Vision-language model name",
        ),
    ] = DEFAULT_MODEL_NAME,
    provider_name: Annotated[
        ProviderName,
        Parameter(
            name=("--provider",),
            help="Backend provider: 'ollama', 'lmstudio' or 'openai'",
        ),
    ] = "lmstudio",
    api_base_url: Annotated[
        str | None,
        Parameter(name=("--url", "-u"), help="Provider API base URL"),
    ] = None,
    api_key: Annotated[
        str | None,
        Parameter(name=("--api-key", "-k"), help="Provider API key. Will try env vars if not set"),
    ] = None,
    temperature: Annotated[
        float,
        Parameter(
            name=("--temperature",),
            help="Sampling temperature (0.0-1.0)",
        ),
    ] = DEFAULT_TEMPERATURE,
    max_tokens: Annotated[
        int,
        Parameter(
            name=("--max-tokens",),
            help="Maximum tokens to generate",
        ),
    ] = DEFAULT_MAX_TOKENS,
    retries: Annotated[
        int,
        Parameter(
            name=("--retries",),
            help="Number of automatic output validation retries per request",
        ),
    ] = DEFAULT_VALIDATION_RETRIES,
    page_size: Annotated[
        int,
        Parameter(name=("--page-size",), help="Photos per batch"),
    ] = DEFAULT_PAGE_SIZE,
    scan_concurrency: Annotated[
        int,
        Parameter(name=("--scan-concurrency",), help="Parallel downloads/scans"),
    ] = DEFAULT_SCAN_CONCURRENCY,
    naming_concurrency: Annotated[
        int,
        Parameter(name=("--naming-concurrency",), help="Parallel title requests"),
    ] = DEFAULT_NAMING_CONCURRENCY,
    apply_concurrency: Annotated[
        int,
        Parameter(name=("--apply-concurrency",), help="Parallel renames"),
    ] = DEFAULT_APPLY_CONCURRENCY,
    face_backend: Annotated[
        FaceBackend,
        Parameter(name=("--face-backend",), help="Face recognition backend ('none' to disable)"),
    ] = "insightface",
    match_threshold: Annotated[
        float,
        Parameter(name=("--match-threshold",), help="Maximum feature distance for a face match"),
    ] = DEFAULT_MATCH_THRESHOLD,
    ambiguity_ratio: Annotated[
        float,
        Parameter(name=("--ambiguity-ratio",), help="Relative distance gap needed to pick one person"),
    ] = DEFAULT_AMBIGUITY_RATIO,
    ambiguity_floor: Annotated[
        float,
        Parameter(name=("--ambiguity-floor",), help="Absolute distance gap needed to pick one person"),
    ] = DEFAULT_AMBIGUITY_FLOOR,
    age_window_years: Annotated[
        float,
        Parameter(
            name=("--age-window",),
            help="Ignore face samples taken more than this many years from the photo",
        ),
    ] = DEFAULT_AGE_WINDOW_YEARS,
    store_dir: Annotated[
        Path,
        Parameter(name=("--store-dir",), help="Folder of the known-faces store"),
    ] = DEFAULT_STORE_DIR,
    write_title: Annotated[
        bool,
        Parameter(
            name=("--write-title",),
            negative="--no-write-title",
            help="Also write the new name as title (XMP-dc:Title / IPTC:ObjectName)",
        ),
    ] = True,
    yes: Annotated[
        bool,
        Parameter(
            name=("--yes", "-y"),
            help="Non-interactive: skip face review and apply every generated name",
        ),
    ] = False,
    file_log_level: Annotated[
        LogLevel,
        Parameter(
            name="--file-log-level",
            help="Log level for file (use 'OFF' to disable)",
        ),
    ] = "DEBUG",
    log_folder: Annotated[
        Path,
        Parameter(
            name=("--log-folder",),
            help="Folder where log files are stored",
        ),
    ] = Path("logs"),
    console_log_level: Annotated[
        LogLevel,
        Parameter(
            name="--console-log-level",
            help="Log level for console (use 'OFF' to disable)",
        ),
    ] = "INFO",
) -> None:
    """
    Rename the photos of a folder with AI titles, batch by batch.

    Each batch goes through: scan (download, dates, GPS, faces) -> face review ->
    title generation -> name review -> rename. Then the next batch is scanned.

    Exit status: returns 1 if the collection cannot be listed or any rename fails.

    Examples:
        photo-renamer rename ~/Pictures -c "2019/Lisbon"
        photo-renamer rename ~/Pictures -t "{date:yyyy-MM-dd} {title}" --provider ollama -m qwen2.5vl
        photo-renamer rename ~/Pictures --face-backend none --yes

    """
    setup_logging(file_log_level=file_log_level, console_log_level=console_log_level, log_folder=log_folder)
    logger.info(
        "starting_photo_renamer",
        folder=str(folder),
        collection=collection,
        template=template,
        model=model_name,
        provider=provider_name,
        api_base_url=api_base_url,
        api_key_present=bool(api_key),
        page_size=page_size,
        face_backend=face_backend,
        interactive=not yes,
    )

    settings = MatchSettings(
        threshold=match_threshold,
        ambiguity_ratio=ambiguity_ratio,
        ambiguity_floor=ambiguity_floor,
        age_window_years=age_window_years,
    )
    config = PipelineConfig(
        page_size=page_size,
        scan_concurrency=scan_concurrency,
        naming_concurrency=naming_concurrency,
        apply_concurrency=apply_concurrency,
        template=template,
        sequence_offset=sequence_offset,
    )
    source = LocalFolderSource(folder, write_title=write_title)
    agent = create_agent(
        provider_name,
        model_name,
        api_base_url=api_base_url,
        api_key=api_key,
        retries=retries,
    )
    pipeline = BatchPipeline(
        source,
        collection,
        FeatureStore(store_dir, settings),
        _create_detector(face_backend),
        TitleGenerator(agent, temperature=temperature, max_tokens=max_tokens),
        config,
        collection_path=source.collection_path(collection),
        on_update=_print_progress,
    )
    pipeline.notes = notes.strip()

    try:
        ok = asyncio.run(_run(pipeline, interactive=not yes))
    finally:
        pipeline.close()

    logger.info("processing_summary", total_renamed=pipeline.total_renamed, pages=pipeline.total_pages)
    if not ok:
        raise SystemExit(1)


@app.command(name="preview-format")
def preview_format(
    template: Annotated[str, Parameter(help="Naming template to render with sample values")] = DEFAULT_TEMPLATE,
) -> None:
    """
    Show what a naming template produces for a sample photo.

    Examples:
        photo-renamer preview-format "{date:yyyy-MM-dd} {people} - {title}"

    """
    print(preview(template))


@faces_app.command(name="list")
def list_faces(
    store_dir: Annotated[Path, Parameter(name=("--store-dir",), help="Folder of the known-faces store")] = DEFAULT_STORE_DIR,
) -> None:
    """List known people and their number of samples."""
    store = FeatureStore(store_dir)
    names = store.known_names()
    if not names:
        print("No known faces.")
        return
    for name in names:
        samples = store.samples_for(name)
        print(f"{name}: {len(samples)} sample{'' if len(samples) == 1 else 's'}")


@faces_app.command(name="rename")
def rename_person(
    old_name: str,
    new_name: str,
    *,
    store_dir: Annotated[Path, Parameter(name=("--store-dir",), help="Folder of the known-faces store")] = DEFAULT_STORE_DIR,
) -> None:
    """Rename a person across all of their samples."""
    store = FeatureStore(store_dir)
    changed = store.rename_person(old_name, new_name)
    if not changed:
        logger.error("person_not_renamed", old=old_name, new=new_name)
        raise SystemExit(1)
    print(f"Renamed {changed} sample{'' if changed == 1 else 's'}: {old_name} -> {new_name.strip()}")


@faces_app.command(name="remove")
def remove_faces(
    target: Annotated[str, Parameter(help="A person name (removes all their samples) or a sample id")],
    *,
    store_dir: Annotated[Path, Parameter(name=("--store-dir",), help="Folder of the known-faces store")] = DEFAULT_STORE_DIR,
) -> None:
    """Forget a person, or a single sample by id."""
    store = FeatureStore(store_dir)
    ids = [sample.id for sample in store.samples_for(target)] or [target]
    removed = sum(1 for sample_id in ids if store.remove(sample_id))
    if not removed:
        logger.error("face_samples_not_found", target=target)
        raise SystemExit(1)
    print(f"Removed {removed} sample{'' if removed == 1 else 's'}")


if __name__ == "__main__":
    app()
