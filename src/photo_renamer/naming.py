"""
Naming templates: turn a token template plus photo context into a final name.

Template tokens (case-sensitive):
    {date}          photo date as yyyyMMdd
    {date:FORMAT}   photo date with a custom format (e.g. {date:yyyy-MM-dd} or {date:%Y-%m})
    {seq}           sequence number, zero-padded to 3 digits
    {seq:N}         sequence number, zero-padded to N digits
    {title}         AI-generated title
    {people}        identified people, joined naturally
    {album}         album or folder name
    {original}      original filename without extension
    {location}      photo location

A token whose value is unavailable is removed entirely; leftover double spaces
and dangling separators are cleaned up afterwards.
"""

import datetime as dt
import os
import re
from collections.abc import Sequence

DEFAULT_TEMPLATE = os.getenv("NAMING_TEMPLATE", "{date} {seq} {title}")
DEFAULT_DATE_FORMAT = "yyyyMMdd"
DEFAULT_SEQ_DIGITS = 3
SEPARATOR_CHARS = "-_ "

_DATE_TOKEN = re.compile(r"\{date(?::([^}]+))?\}")
_SEQ_TOKEN = re.compile(r"\{seq(?::(\d+))?\}")
_MULTI_SPACE = re.compile(r" {2,}")
_PATTERN_RUN = re.compile(r"([A-Za-z])\1*")

# Unicode date pattern runs (as used by most photo tools) mapped to strftime.
_PATTERN_TO_STRFTIME = {
    "yyyy": "%Y",
    "yy": "%y",
    "MMMM": "%B",
    "MMM": "%b",
    "MM": "%m",
    "dd": "%d",
    "HH": "%H",
    "mm": "%M",
    "ss": "%S",
    "EEEE": "%A",
    "EEE": "%a",
}


def join_people(names: Sequence[str]) -> str:
    """
    Join people names the way they would be read aloud.

    Examples:
        >>> join_people(["Sarah"])
        'Sarah'
        >>> join_people(["Sarah", "John"])
        'Sarah and John'
        >>> join_people(["Sarah", "John", "Mike"])
        'Sarah, John, and Mike'

    """
    if not names:
        return ""
    if len(names) == 1:
        return names[0]
    if len(names) == 2:  # noqa: PLR2004
        return f"{names[0]} and {names[1]}"
    return ", ".join(names[:-1]) + ", and " + names[-1]


def format_date(value: dt.date, pattern: str) -> str:
    """
    Format a date with either a strftime pattern or a Unicode pattern like 'yyyy-MM-dd'.

    Examples:
        >>> format_date(dt.date(2025, 11, 2), "yyyy-MM-dd")
        '2025-11-02'
        >>> format_date(dt.date(2025, 11, 2), "d.M.yy")
        '2.11.25'
        >>> format_date(dt.date(2025, 11, 2), "%Y/%m")
        '2025/11'

    """
    if "%" in pattern:
        return value.strftime(pattern)

    def _convert(match: re.Match[str]) -> str:
        run = match.group(0)
        if run in _PATTERN_TO_STRFTIME:
            return value.strftime(_PATTERN_TO_STRFTIME[run])
        if run == "M":
            return str(value.month)
        if run == "d":
            return str(value.day)
        if run == "y":
            return str(value.year)
        return run

    return _PATTERN_RUN.sub(_convert, pattern)


def _replace_date(template: str, value: dt.date | None) -> str:
    def _sub(match: re.Match[str]) -> str:
        if value is None:
            return ""
        return format_date(value, match.group(1) or DEFAULT_DATE_FORMAT)

    return _DATE_TOKEN.sub(_sub, template)


def _replace_seq(template: str, seq: int | None) -> str:
    def _sub(match: re.Match[str]) -> str:
        if seq is None:
            return ""
        digits = int(match.group(1)) if match.group(1) else DEFAULT_SEQ_DIGITS
        return f"{seq:0{digits}d}"

    return _SEQ_TOKEN.sub(_sub, template)


def render(
    template: str,
    *,
    title: str,
    date: dt.date | None = None,
    seq: int | None = None,
    people: Sequence[str] = (),
    album: str | None = None,
    original: str | None = None,
    location: str | None = None,
) -> str:
    """
    Apply a naming template to the context of one photo.

    Args:
        template: Template string containing brace-delimited tokens
        title: AI-generated title
        date: Photo date; the date tokens are removed when absent
        seq: Sequence number; the seq tokens are removed when absent
        people: Identified people names
        album: Album or folder name
        original: Original filename without extension
        location: Location string

    Returns:
        The rendered name with collapsed spaces and no leading/trailing separators.

    Examples:
        >>> render("{date} {seq} {title}", title="X", date=dt.datetime(2025, 11, 12), seq=1)
        '20251112 001 X'
        >>> render("{date} - {title}", title="X")
        'X'

    """
    result = _replace_date(template, date)
    result = _replace_seq(result, seq)
    result = result.replace("{title}", title or "")
    result = result.replace("{people}", join_people(people))
    result = result.replace("{album}", album or "")
    result = result.replace("{original}", original or "")
    result = result.replace("{location}", location or "")

    result = _MULTI_SPACE.sub(" ", result).strip()
    return result.strip(SEPARATOR_CHARS)


def preview(template: str) -> str:
    """Render a template with fixed sample values, for help output and settings screens."""
    return render(
        template,
        date=dt.datetime(2025, 11, 12),  # noqa: DTZ001
        seq=1,
        title="Sarah and John on a boat",
        people=["Sarah", "John"],
        album="Vacation 2025",
        original="IMG_4523",
        location="Lake Tahoe",
    )
