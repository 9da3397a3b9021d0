"""iCalendar (.ics) export of series instances."""

from __future__ import annotations

import html
import re
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from .enums import InstanceStatus

if TYPE_CHECKING:
    from openseries.models import Instance, Series


_tag_pattern = re.compile(r"<[^>]+>")


def _ensure_utc(dt: datetime) -> datetime:
    """Return a timezone-aware UTC datetime."""

    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def _format_utc(dt: datetime) -> str:
    """Format a datetime as an RFC5545 UTC timestamp."""

    return _ensure_utc(dt).replace(microsecond=0).strftime("%Y%m%dT%H%M%SZ")


def _escape_text(value: str | None) -> str:
    """Escape text for ICS fields and strip any HTML tags."""

    if not value:
        return ""
    stripped = _tag_pattern.sub("", html.unescape(value))
    normalized = stripped.replace("\r\n", "\n").replace("\r", "\n")
    return (
        normalized.replace("\\", "\\\\")
        .replace(";", r"\;")
        .replace(",", r"\,")
        .replace("\n", "\\n")
    )


def _event_lines(instance: Instance, *, dtstamp: str) -> list[str]:
    status = (
        "CANCELLED" if instance.status == InstanceStatus.CANCELLED else "CONFIRMED"
    )
    return [
        "BEGIN:VEVENT",
        f"UID:{instance.id}@openseries",
        f"DTSTAMP:{dtstamp}",
        f"DTSTART:{_format_utc(instance.start_time)}",
        f"DTEND:{_format_utc(instance.end_time)}",
        f"SUMMARY:{_escape_text(instance.title)}",
        f"DESCRIPTION:{_escape_text(instance.description)}",
        f"LOCATION:{_escape_text(instance.location)}",
        f"STATUS:{status}",
        "END:VEVENT",
    ]


def generate_ics(
    series: Series, instances: Iterable[Instance], *, now: datetime | None = None
) -> str:
    """Return ICS text with one VEVENT per materialized instance."""

    dtstamp = _format_utc(now or datetime.now(UTC))
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//OpenSeries//EN",
        f"X-WR-CALNAME:{_escape_text(series.title)}",
    ]
    for instance in instances:
        lines.extend(_event_lines(instance, dtstamp=dtstamp))
    lines.append("END:VCALENDAR")
    return "\r\n".join(lines) + "\r\n"
