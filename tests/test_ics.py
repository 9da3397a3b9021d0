from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from types import SimpleNamespace

from openseries.enums import InstanceStatus
from openseries.ics import generate_ics


def _instance(day: int, **overrides):
    values = {
        "id": f"inst-{day}",
        "instance_date": date(2025, 1, day),
        "start_time": datetime(2025, 1, day, 11, 0),
        "end_time": datetime(2025, 1, day, 12, 30),
        "title": "Monday Run Club",
        "description": "Bring water",
        "location": "Riverside Park",
        "status": InstanceStatus.PUBLISHED,
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def test_calendar_has_one_event_per_instance():
    series = SimpleNamespace(title="Monday Run Club")
    body = generate_ics(
        series,
        [_instance(6), _instance(13, status=InstanceStatus.CANCELLED)],
        now=datetime(2025, 1, 1, 8, 0),
    )

    assert body.startswith("BEGIN:VCALENDAR\r\n")
    assert body.endswith("END:VCALENDAR\r\n")
    assert body.count("BEGIN:VEVENT") == 2
    assert "UID:inst-6@openseries" in body
    assert "DTSTART:20250106T110000Z" in body
    assert "DTEND:20250106T123000Z" in body
    assert "DTSTAMP:20250101T080000Z" in body
    assert "STATUS:CONFIRMED" in body
    assert "STATUS:CANCELLED" in body


def test_text_fields_are_escaped_and_stripped():
    series = SimpleNamespace(title="Runs, walks; and more")
    instance = _instance(
        6, description="<b>Line one</b>\nLine two", location=None
    )

    body = generate_ics(series, [instance], now=datetime(2025, 1, 1))

    assert "X-WR-CALNAME:Runs\\, walks\\; and more" in body
    assert "DESCRIPTION:Line one\\nLine two" in body
    assert "LOCATION:\r\n" in body


def test_aware_datetimes_are_normalized_to_utc():
    plus_seven = timezone(timedelta(hours=7))
    instance = _instance(
        6,
        start_time=datetime(2025, 1, 6, 18, 0, tzinfo=plus_seven),
        end_time=datetime(2025, 1, 6, 19, 30, tzinfo=plus_seven),
    )

    body = generate_ics(SimpleNamespace(title="x"), [instance], now=datetime(2025, 1, 1))

    assert "DTSTART:20250106T110000Z" in body
    assert "DTEND:20250106T123000Z" in body
