"""Photo date and GPS location extraction from image bytes and host metadata."""

import re
from datetime import datetime
from io import BytesIO

from loguru import logger
from PIL import ExifTags, Image, UnidentifiedImageError

EXIF_DATE_FORMAT = "%Y:%m:%d %H:%M:%S"
HOST_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_YEAR_IN_PATH = re.compile(r"\b(19\d{2}|20\d{2})\b")


def _read_exif(image_bytes: bytes) -> dict[str, dict[int, object]] | None:
    """Read the IFD0, Exif and GPS directories while the image is still open."""
    try:
        with Image.open(BytesIO(image_bytes)) as img:
            exif = img.getexif()
            return {
                "ifd0": dict(exif),
                "exif": dict(exif.get_ifd(ExifTags.IFD.Exif)),
                "gps": dict(exif.get_ifd(ExifTags.IFD.GPSInfo)),
            }
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        logger.debug("exif_unreadable", error=str(exc))
        return None


def exif_date(image_bytes: bytes) -> datetime | None:
    """Return EXIF DateTimeOriginal, falling back to the IFD0 DateTime tag."""
    exif = _read_exif(image_bytes)
    if exif is None:
        return None
    raw = exif["exif"].get(ExifTags.Base.DateTimeOriginal) or exif["ifd0"].get(ExifTags.Base.DateTime)
    if not raw:
        return None
    try:
        return datetime.strptime(str(raw).strip("\x00 "), EXIF_DATE_FORMAT)  # noqa: DTZ007
    except ValueError:
        logger.debug("exif_date_unparseable", value=str(raw))
        return None


def year_from_collection_path(path: str) -> datetime | None:
    """
    Approximate a photo date from a 4-digit year (1900-2099) in the album path.

    Examples:
        >>> year_from_collection_path("Family / 2014 / Summer")
        datetime.datetime(2014, 6, 15, 0, 0)
        >>> year_from_collection_path("Room 12345") is None
        True

    """
    if not (found := _YEAR_IN_PATH.search(path)):
        return None
    # Mid-year as approximation
    return datetime(int(found.group(1)), 6, 15)  # noqa: DTZ001


def parse_host_date(value: str) -> datetime | None:
    """
    Parse a host-supplied creation date ('YYYY-MM-DD HH:MM:SS' or ISO 8601).

    Examples:
        >>> parse_host_date("2019-07-04 18:30:00")
        datetime.datetime(2019, 7, 4, 18, 30)
        >>> parse_host_date("not a date") is None
        True

    """
    value = value.strip()
    try:
        return datetime.strptime(value, HOST_DATE_FORMAT)  # noqa: DTZ007
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def extract_photo_date(
    image_bytes: bytes | None,
    host_date: str | None,
    collection_path: str | None,
) -> datetime | None:
    """
    Work out when a photo was taken, trying each source in priority order.

    1. EXIF capture date embedded in the image
    2. A year in the album/collection path
    3. The creation date supplied by the photo host
    """
    if image_bytes and (found := exif_date(image_bytes)):
        return found
    if collection_path and (found := year_from_collection_path(collection_path)):
        return found
    if host_date:
        return parse_host_date(host_date)
    return None


def _to_degrees(value: object) -> float:
    """Convert an EXIF (degrees, minutes, seconds) triple, or a plain number, to decimal degrees."""
    if isinstance(value, (tuple, list)):
        parts = [float(part) for part in value] + [0.0, 0.0]
        degrees, minutes, seconds = parts[:3]
        return degrees + minutes / 60 + seconds / 3600
    return float(value)  # type: ignore[arg-type]


def format_coordinates(latitude: float, longitude: float) -> str:
    """
    Format signed decimal degrees as 'lat, lon'.

    Examples:
        >>> format_coordinates(38.7223, -9.13934)
        '38.72230, -9.13934'

    """
    return f"{latitude:.5f}, {longitude:.5f}"


def extract_photo_location(image_bytes: bytes | None) -> str | None:
    """Return the EXIF GPS position as 'lat, lon' in decimal degrees, or None."""
    if not image_bytes or (exif := _read_exif(image_bytes)) is None:
        return None
    gps = exif["gps"]
    lat = gps.get(ExifTags.GPS.GPSLatitude)
    lat_ref = gps.get(ExifTags.GPS.GPSLatitudeRef)
    lon = gps.get(ExifTags.GPS.GPSLongitude)
    lon_ref = gps.get(ExifTags.GPS.GPSLongitudeRef)
    if lat is None or lon is None or not lat_ref or not lon_ref:
        return None
    try:
        latitude = _to_degrees(lat)
        longitude = _to_degrees(lon)
    except (TypeError, ValueError, ZeroDivisionError) as exc:
        logger.debug("gps_unparseable", error=str(exc))
        return None
    if str(lat_ref).upper().startswith("S"):
        latitude = -latitude
    if str(lon_ref).upper().startswith("W"):
        longitude = -longitude
    return format_coordinates(latitude, longitude)
