"""Utility helpers for OpenSeries."""

from __future__ import annotations

import re
import unicodedata
from datetime import UTC, date, datetime, time, timedelta, timezone, tzinfo
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

_slug_invalid = re.compile(r"[^a-z0-9]+")
_fixed_offset = re.compile(r"^(?:UTC|GMT)?([+-])(\d{1,2})(?::?(\d{2}))?$")


def utcnow() -> datetime:
    """Return a naive UTC datetime."""

    return datetime.now(UTC).replace(tzinfo=None)


def to_naive_utc(value: datetime | None) -> datetime | None:
    """Normalize aware datetimes to naive UTC; naive values are assumed UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def slugify(value: str) -> str:
    """Return a canonical slug suitable for URLs."""
    value = (
        unicodedata.normalize("NFKD", value or "")
        .encode("ascii", "ignore")
        .decode("ascii")
    )
    value = value.strip().lower()
    value = _slug_invalid.sub("-", value)
    value = value.strip("-")
    return value


@lru_cache(maxsize=32)
def resolve_timezone(name: str) -> tzinfo:
    """Return a tzinfo for an IANA name or a fixed ``+HH:MM`` offset."""
    cleaned = (name or "").strip()
    if cleaned.upper() in {"UTC", "Z", "GMT"}:
        return UTC
    match = _fixed_offset.match(cleaned)
    if match:
        sign, hours, minutes = match.groups()
        offset = timedelta(hours=int(hours), minutes=int(minutes or 0))
        if offset >= timedelta(hours=24):
            raise ValueError(f"Invalid UTC offset {name!r}")
        return timezone(-offset if sign == "-" else offset)
    try:
        return ZoneInfo(cleaned)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown timezone {name!r}") from exc


def to_absolute(local_date: date, local_time: time, tz: tzinfo) -> datetime:
    """Combine a civil date and wall-clock time, returning naive UTC.

    Ambiguous wall times (DST fall-back) resolve to the first occurrence;
    wall times inside a DST gap move forward by the size of the gap.
    """
    local = datetime.combine(local_date, local_time.replace(tzinfo=None), tzinfo=tz)
    return local.astimezone(UTC).replace(tzinfo=None)


def to_local(value: datetime, tz: tzinfo) -> datetime:
    """Return the civil wall-clock datetime for a naive UTC value."""
    return value.replace(tzinfo=UTC).astimezone(tz)


def local_today(now: datetime, tz: tzinfo) -> date:
    """Return the civil calendar date for a naive UTC ``now``."""
    return to_local(now, tz).date()


def parse_time_of_day(raw: str | time) -> time:
    """Parse ``HH:MM`` or ``HH:MM:SS`` into a naive ``time``."""
    if isinstance(raw, time):
        return raw.replace(tzinfo=None, microsecond=0)
    cleaned = (raw or "").strip()
    parts = cleaned.split(":")
    if len(parts) not in (2, 3) or not all(p.isdigit() for p in parts):
        raise ValueError(f"Invalid time of day {raw!r}; use HH:MM")
    hour, minute = int(parts[0]), int(parts[1])
    second = int(parts[2]) if len(parts) == 3 else 0
    return time(hour, minute, second)
