"""Duration arithmetic and formatting.

Everything is computed in integer milliseconds; conversion to hours, minutes
and seconds only happens in the ``format_*`` helpers.
"""

from __future__ import annotations

import datetime as dt
from typing import Any, Iterable, Optional, Union

UTC = dt.timezone.utc

_MILLISECOND = dt.timedelta(milliseconds=1)
_SECOND = dt.timedelta(seconds=1)

Timestamp = Union[dt.datetime, str, None]


def parse_timestamp(value: Timestamp) -> Optional[dt.datetime]:
    """Return an aware datetime for ``value``.

    Strings must be ISO-8601; a trailing ``Z`` is accepted. Naive values are
    taken as UTC. Unparseable strings raise ``ValueError``.
    """
    if value is None:
        return None
    if isinstance(value, dt.datetime):
        parsed = value
    elif isinstance(value, dt.date):
        parsed = dt.datetime.combine(value, dt.time.min)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        parsed = dt.datetime.fromisoformat(text)
    else:
        raise ValueError(f"Unsupported timestamp value: {value!r}")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


def duration_ms(start: Timestamp, end: Timestamp) -> int:
    start_at = parse_timestamp(start)
    end_at = parse_timestamp(end)
    if start_at is None or end_at is None:
        return 0
    return (end_at - start_at) // _MILLISECOND


def entry_duration_ms(entry: Any) -> int:
    return duration_ms(getattr(entry, "start_time", None), getattr(entry, "end_time", None))


def total_duration(entries: Iterable[Any]) -> int:
    """Sum of entry durations in milliseconds; entries missing a bound count as zero."""
    return sum(entry_duration_ms(entry) for entry in entries)


def elapsed_seconds(start: Timestamp, now: Timestamp) -> int:
    start_at = parse_timestamp(start)
    now_at = parse_timestamp(now)
    if start_at is None or now_at is None:
        return 0
    return max((now_at - start_at) // _SECOND, 0)


def format_duration(milliseconds: int) -> str:
    """Abbreviated duration such as ``1h 30m`` or ``2m 5s``."""
    if milliseconds < 1000:
        return "0s"
    total_seconds = milliseconds // 1000
    hours, remainder = divmod(total_seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    parts = [f"{value}{unit}" for value, unit in ((hours, "h"), (minutes, "m"), (seconds, "s")) if value]
    return " ".join(parts)


def format_duration_for_export(milliseconds: int) -> str:
    if milliseconds < 1000:
        return "0 mins"
    total_minutes = milliseconds // 60_000
    hours, minutes = divmod(total_minutes, 60)
    if hours > 0:
        return f"{hours}hr {minutes} min"
    return f"{minutes} mins"


def format_clock(seconds: int) -> str:
    """``HH:MM:SS`` for a number of seconds."""
    seconds = max(int(seconds), 0)
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def ms_to_hours(milliseconds: int) -> float:
    return round(milliseconds / 3_600_000, 2)


__all__ = [
    "duration_ms",
    "elapsed_seconds",
    "entry_duration_ms",
    "format_clock",
    "format_duration",
    "format_duration_for_export",
    "ms_to_hours",
    "parse_timestamp",
    "total_duration",
]
