"""Central helpers for ISO8601 UTC timestamps and calendar-day arithmetic.

Storage standard:
- Timestamps are stored as strings YYYY-MM-DDTHH:MM:SS.mmm+00:00 (millisecond precision, UTC)
- Desired / departure dates are calendar days; they may arrive as ``date``,
  ``datetime`` (Mongo BSON) or ISO strings with or without a time part.
"""
from __future__ import annotations
import datetime as _dt
import re
from typing import Any, Iterable, Optional

_ISO_MILLIS_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}\+00:00$")

_FALLBACK_PARSE_FORMATS: Iterable[str] = [
    "%Y-%m-%dT%H:%M:%S.%fZ",
    "%Y-%m-%dT%H:%M:%S.%f+00:00",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y-%m-%dT%H:%M:%SZ",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d",  # date only
]


def _format(dt: _dt.datetime) -> str:
    ms = int(dt.microsecond / 1000)
    return f"{dt.strftime('%Y-%m-%dT%H:%M:%S')}.{ms:03d}+00:00"


def now_iso() -> str:
    """Return current UTC time as normalized ISO string with millisecond precision and +00:00 offset."""
    return _format(_dt.datetime.now(_dt.timezone.utc))


def to_iso(value: Any) -> str | None:
    """Convert supported input to normalized ISO string or return None if input is falsy.

    Supported inputs: datetime (naive=UTC), string (various ISO forms), date.
    Raises ValueError for unsupported types or unparsable strings.
    """
    if value is None or value == "":
        return None
    if isinstance(value, _dt.datetime):
        dt = value
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=_dt.timezone.utc)
        else:
            dt = dt.astimezone(_dt.timezone.utc)
        return _format(dt)
    if isinstance(value, _dt.date):
        return _format(_dt.datetime(value.year, value.month, value.day, tzinfo=_dt.timezone.utc))
    if isinstance(value, str):
        s = value.strip()
        if _ISO_MILLIS_RE.match(s):
            return s
        for fmt in _FALLBACK_PARSE_FORMATS:
            try:
                dt = _dt.datetime.strptime(s, fmt)
            except ValueError:
                continue
            return _format(dt.replace(tzinfo=_dt.timezone.utc))
        try:
            # offsets other than +00:00 (e.g. exports from other timezones)
            return to_iso(_dt.datetime.fromisoformat(s))
        except ValueError:
            pass
        raise ValueError(f"Unrecognized datetime string format: {value!r}")
    raise ValueError(f"Unsupported datetime value type: {type(value)}")


def parse_iso(s: str | None) -> _dt.datetime | None:
    """Parse a normalized ISO string (or accepted variant) into a timezone-aware UTC datetime."""
    if not s:
        return None
    normalized = to_iso(s)
    base, _plus, _offset = normalized.partition('+')
    main, _dot, milli_part = base.partition('.')
    dt = _dt.datetime.strptime(main, "%Y-%m-%dT%H:%M:%S")
    return dt.replace(microsecond=int(milli_part) * 1000, tzinfo=_dt.timezone.utc)


def parse_day(value: Any) -> Optional[_dt.date]:
    """Return the calendar day of ``value`` or None when missing/unparsable."""
    if value is None or value == "":
        return None
    if isinstance(value, _dt.datetime):
        return value.date()
    if isinstance(value, _dt.date):
        return value
    try:
        parsed = parse_iso(str(value))
    except ValueError:
        return None
    return parsed.date() if parsed else None


def day_difference(first: Any, second: Any) -> Optional[int]:
    """Absolute number of calendar days between two dates, None if either is missing."""
    a = parse_day(first)
    b = parse_day(second)
    if a is None or b is None:
        return None
    return abs((a - b).days)


__all__ = ["now_iso", "to_iso", "parse_iso", "parse_day", "day_difference"]
