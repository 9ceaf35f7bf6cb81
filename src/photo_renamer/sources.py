"""
Photo sources: list a collection, download image bytes, and rename items.

The pipeline only depends on the `PhotoSource` protocol. `LocalFolderSource`
implements it for a folder tree on disk: each sub-folder is a collection,
files are renamed in place and the new title is written to IPTC/XMP with
ExifTool.
"""

import asyncio
import os
import threading
from collections.abc import Callable
from io import BytesIO
from pathlib import Path
from typing import Protocol

import httpx
import rawpy
from exiftool import ExifToolHelper  # type: ignore[attr-defined]
from exiftool.exceptions import ExifToolExecuteError
from loguru import logger
from PIL import Image
from pydantic import BaseModel

DEFAULT_DOWNLOAD_TIMEOUT = float(os.getenv("DOWNLOAD_TIMEOUT", "30"))
DEFAULT_JPEG_QUALITY = int(os.getenv("JPEG_QUALITY", "85"))
IMAGE_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png", ".heic", ".tiff", ".tif"})
RAW_EXTENSIONS = frozenset(
    {".arw", ".cr2", ".cr3", ".dng", ".nef", ".nrw", ".orf", ".raf", ".rw2", ".pef", ".srw"},
)
UNSAFE_FILENAME_CHARS = '/:\\?*"<>|'
TITLE_TAGS = ("IPTC:ObjectName", "XMP-dc:Title")


class ListingError(RuntimeError):
    """The collection could not be enumerated."""


class RenameError(RuntimeError):
    """An item could not be renamed."""


class PhotoItem(BaseModel):
    """One image as reported by a photo source."""

    id: str
    filename: str
    title: str | None = None
    thumbnail_ref: str
    full_res_ref: str
    created_date: str | None = None
    collection_path: str = ""

    @property
    def display_name(self) -> str:
        """Title if set and distinct from the filename, otherwise the filename."""
        if self.title and self.title != self.filename:
            return self.title
        return self.filename

    @property
    def original_stem(self) -> str:
        """
        Filename without its last extension.

        Examples:
            >>> PhotoItem(id="1", filename="IMG_1.JPG", thumbnail_ref="", full_res_ref="").original_stem
            'IMG_1'

        """
        stem, dot, _ = self.filename.rpartition(".")
        return stem if dot else self.filename


class PhotoSource(Protocol):
    """The three host capabilities the pipeline consumes."""

    async def list_items(
        self,
        collection_id: str,
        on_progress: Callable[[int], None] | None = None,
    ) -> list[PhotoItem]:
        """Return every item in the collection, in display order. Raises ListingError."""
        ...

    async def download_bytes(self, ref: str, max_dimension: int | None = None) -> bytes:
        """Fetch image bytes (JPEG where the source can convert), scaled to fit `max_dimension`."""
        ...

    async def rename_item(self, item_id: str, new_name: str) -> None:
        """Rename/relabel an item. Raises on failure."""
        ...


def sanitize_filename(name: str) -> str:
    """
    Make a title safe to use as a filename.

    Examples:
        >>> sanitize_filename('Trip: "Day 1" / Beach')
        'Trip- -Day 1- - Beach'
        >>> sanitize_filename(" .. ")
        'untitled'

    """
    sanitized = "".join("-" if ch in UNSAFE_FILENAME_CHARS else ch for ch in name)
    sanitized = sanitized.strip().strip(".")
    return sanitized or "untitled"


def _unique_target(directory: Path, stem: str, suffix: str, current: Path) -> Path:
    """Pick `stem<suffix>`, or `stem_2<suffix>`, `stem_3<suffix>`... if taken by another file."""
    target = directory / f"{stem}{suffix}"
    counter = 2
    while target.exists() and target != current:
        target = directory / f"{stem}_{counter}{suffix}"
        counter += 1
    return target


def _encode_jpeg(img: Image.Image, exif: bytes | None = None) -> bytes:
    """Encode as RGB JPEG, compositing any alpha channel onto white."""
    if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
        alpha = img.convert("RGBA")
        bg = Image.new("RGBA", alpha.size, (255, 255, 255, 255))
        img = Image.alpha_composite(bg, alpha).convert("RGB")
    elif img.mode not in ("RGB", "L"):
        img = img.convert("RGB")
    buf = BytesIO()
    if exif:
        img.save(buf, format="JPEG", quality=DEFAULT_JPEG_QUALITY, exif=exif)
    else:
        img.save(buf, format="JPEG", quality=DEFAULT_JPEG_QUALITY)
    return buf.getvalue()


def load_local_image(path: Path, max_dimension: int | None = None) -> bytes:
    """
    Read a local image as JPEG, downscaled to fit `max_dimension` with EXIF preserved.

    RAW files are developed with rawpy. JPEG files that already fit are returned
    untouched; every other format is re-encoded so the bytes are always JPEG.
    """
    if path.suffix.lower() in RAW_EXTENSIONS:
        with rawpy.imread(str(path)) as raw:  # type: ignore[no-untyped-call]
            rgb = raw.postprocess()
        img = Image.fromarray(rgb)
        if max_dimension:
            img.thumbnail((max_dimension, max_dimension), Image.Resampling.LANCZOS)
        return _encode_jpeg(img)

    return as_jpeg(path.read_bytes(), max_dimension)


def as_jpeg(data: bytes, max_dimension: int | None = None) -> bytes:
    """Return JPEG bytes fitting `max_dimension`; JPEG input that already fits is passed through."""
    with Image.open(BytesIO(data)) as img:
        fits = not max_dimension or max(img.size) <= max_dimension
        if img.format == "JPEG" and fits:
            return data
        logger.debug("reencoding_image", format=img.format, size=img.size)
        exif = img.info.get("exif")
        img.load()
        if max_dimension:
            img.thumbnail((max_dimension, max_dimension), Image.Resampling.LANCZOS)
        return _encode_jpeg(img, exif)


def _format_exif_date(value: object) -> str | None:
    """
    Turn an EXIF 'yyyy:MM:dd HH:mm:ss' date into 'yyyy-MM-dd HH:mm:ss'.

    Examples:
        >>> _format_exif_date("2021:08:14 10:02:03")
        '2021-08-14 10:02:03'

    """
    text = str(value).strip()
    if len(text) < 10:  # noqa: PLR2004
        return None
    return text[:10].replace(":", "-") + text[10:]


class LocalFolderSource:
    """Photo source backed by a folder tree; collection ids are paths relative to the root."""

    def __init__(
        self,
        root: Path,
        *,
        write_title: bool = True,
        timeout: float = DEFAULT_DOWNLOAD_TIMEOUT,
    ) -> None:
        self.root = root.resolve()
        self.write_title = write_title
        self.timeout = timeout
        self._paths: dict[str, Path] = {}
        self._rename_lock = threading.Lock()

    def collection_path(self, collection_id: str) -> str:
        """Human-readable album path, e.g. 'Photos / 2019 / Lisbon'."""
        parts = [self.root.name, *(p for p in Path(collection_id).parts if p not in ("", "."))]
        return " / ".join(parts)

    def _read_capture_dates(self, files: list[Path]) -> dict[str, str]:
        if not files:
            return {}
        try:
            with ExifToolHelper() as et:  # type: ignore[no-untyped-call]
                blocks = et.get_tags(files=[str(f) for f in files], tags=["EXIF:DateTimeOriginal"])
        except (ValueError, TypeError, OSError, ExifToolExecuteError) as exc:
            logger.warning("capture_dates_unavailable", error=str(exc))
            return {}
        dates: dict[str, str] = {}
        for block in blocks:
            value = block.get("EXIF:DateTimeOriginal")
            if value and (formatted := _format_exif_date(value)):
                dates[str(Path(block["SourceFile"]).resolve())] = formatted
        return dates

    def _list_sync(self, collection_id: str) -> list[PhotoItem]:
        folder = (self.root / collection_id).resolve()
        if not folder.is_dir():
            msg = f"collection folder not found: {folder}"
            raise ListingError(msg)
        try:
            files = [
                f
                for f in folder.iterdir()
                if f.is_file()
                and not f.name.startswith(".")
                and f.suffix.lower() in IMAGE_EXTENSIONS | RAW_EXTENSIONS
            ]
        except OSError as exc:
            msg = f"cannot read collection folder {folder}: {exc}"
            raise ListingError(msg) from exc
        files.sort(key=lambda f: f.name.casefold())

        dates = self._read_capture_dates(files)
        album_path = self.collection_path(collection_id)
        items: list[PhotoItem] = []
        for f in files:
            item_id = f.relative_to(self.root).as_posix()
            self._paths[item_id] = f
            items.append(
                PhotoItem(
                    id=item_id,
                    filename=f.name,
                    thumbnail_ref=str(f),
                    full_res_ref=str(f),
                    created_date=dates.get(str(f)),
                    collection_path=album_path,
                ),
            )
        return items

    async def list_items(
        self,
        collection_id: str,
        on_progress: Callable[[int], None] | None = None,
    ) -> list[PhotoItem]:
        items = await asyncio.to_thread(self._list_sync, collection_id)
        logger.info("collection_listed", collection=collection_id or ".", count=len(items))
        if on_progress is not None:
            on_progress(len(items))
        return items

    async def download_bytes(self, ref: str, max_dimension: int | None = None) -> bytes:
        if ref.startswith(("http://", "https://")):
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                response = await client.get(ref)
                response.raise_for_status()
            return await asyncio.to_thread(as_jpeg, response.content, max_dimension)
        return await asyncio.to_thread(load_local_image, Path(ref), max_dimension)

    def _write_title(self, path: Path, title: str) -> None:
        tags: dict[str, str] = dict.fromkeys(TITLE_TAGS, title)
        try:
            with ExifToolHelper() as et:  # type: ignore[no-untyped-call]
                et.set_tags(files=[str(path)], tags=tags, params=["-overwrite_original"])
        except (ValueError, TypeError, OSError, ExifToolExecuteError) as exc:
            logger.warning("title_tag_write_failed", file=path.name, error=str(exc))

    def _rename_sync(self, item_id: str, new_name: str) -> Path:
        current = self._paths.get(item_id)
        if current is None:
            msg = f"unknown item id: {item_id}"
            raise RenameError(msg)
        if not current.exists():
            msg = f"file does not exist: {current}"
            raise RenameError(msg)

        stem = sanitize_filename(new_name)
        with self._rename_lock:
            target = _unique_target(current.parent, stem, current.suffix, current)
            if target != current:
                current.rename(target)
                self._paths[item_id] = target
        if self.write_title:
            self._write_title(target, new_name)
        return target

    async def rename_item(self, item_id: str, new_name: str) -> None:
        target = await asyncio.to_thread(self._rename_sync, item_id, new_name)
        logger.debug("item_renamed", item=item_id, target=target.name)
