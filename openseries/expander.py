"""Expansion of recurrence rules into concrete local dates."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import date, datetime, time, timedelta

from dateutil.rrule import (
    DAILY,
    FR,
    MO,
    MONTHLY,
    SA,
    SU,
    TH,
    TU,
    WE,
    WEEKLY,
    rrule,
)

from .rrule import RecurrenceRule

_FREQUENCY_MAP = {"DAILY": DAILY, "WEEKLY": WEEKLY, "MONTHLY": MONTHLY}
_WEEKDAY_MAP = {"MO": MO, "TU": TU, "WE": WE, "TH": TH, "FR": FR, "SA": SA, "SU": SU}


def effective_until(rule: RecurrenceRule, until: date | None = None) -> date | None:
    """Return the earliest of the rule's UNTIL and the series ``until``."""
    bounds = [value for value in (rule.until, until) if value is not None]
    return min(bounds) if bounds else None


def effective_count(rule: RecurrenceRule, count: int | None = None) -> int | None:
    bounds = [value for value in (rule.count, count) if value is not None]
    return min(bounds) if bounds else None


def _midnight(value: date) -> datetime:
    return datetime.combine(value, time())


def phase_origin(rule: RecurrenceRule, anchor: date, start: date) -> date:
    """Return the latest date on or before ``start`` in step with ``anchor``.

    Starting the rrule there yields the same dates on or after ``start`` as
    starting it at the anchor, without walking the periods in between.
    """
    if start <= anchor:
        return anchor
    if rule.frequency == "MONTHLY":
        months = (start.year - anchor.year) * 12 + start.month - anchor.month
        offset = anchor.month - 1 + months - months % rule.interval
        return date(anchor.year + offset // 12, offset % 12 + 1, 1)
    step = rule.interval * (7 if rule.frequency == "WEEKLY" else 1)
    gap = (start - anchor).days
    return anchor + timedelta(days=gap - gap % step)


def build_rrule(
    rule: RecurrenceRule,
    anchor: date,
    *,
    until: date | None = None,
    start: date | None = None,
) -> rrule:
    """Translate a validated rule into an unbounded-by-count dateutil rrule.

    ``start`` replaces the anchor as dtstart and must come from ``phase_origin``.
    """
    kwargs: dict = {
        "freq": _FREQUENCY_MAP[rule.frequency],
        "interval": rule.interval,
        "dtstart": _midnight(start or anchor),
    }
    if rule.weekdays:
        kwargs["byweekday"] = [_WEEKDAY_MAP[code] for code in rule.weekdays]
    elif rule.month_weekday:
        weekday = _WEEKDAY_MAP[rule.month_weekday.weekday]
        kwargs["byweekday"] = weekday(rule.month_weekday.position)
    elif rule.frequency == "MONTHLY":
        day = rule.month_day or anchor.day
        if day > 28:
            # Clamp to the last day of short months (31 -> Feb 28/29).
            kwargs["bymonthday"] = tuple(range(28, day + 1))
            kwargs["bysetpos"] = -1
        else:
            kwargs["bymonthday"] = day
    if until is not None:
        kwargs["until"] = _midnight(until)
    return rrule(**kwargs)


def iter_occurrences(
    rule: RecurrenceRule,
    anchor: date,
    *,
    until: date | None = None,
    count: int | None = None,
    start: date | None = None,
) -> Iterator[date]:
    """Yield the series dates in order, starting with the anchor.

    The anchor is always the first occurrence even when it does not match the
    rule's by-day modifiers. ``count`` caps the sequence by position.

    Without a count, dates before ``start`` may be left out so a long-running
    series is not walked from its anchor on every call. Counted series are
    always walked from the anchor because their positions matter.
    """
    last_day = effective_until(rule, until)
    limit = effective_count(rule, count)
    if limit == 0 or (last_day is not None and anchor > last_day):
        return
    origin = anchor
    if limit is None and start is not None:
        origin = phase_origin(rule, anchor, start)
    produced = 0
    if origin == anchor:
        yield anchor
        produced = 1
    for occurrence in build_rrule(rule, anchor, until=last_day, start=origin):
        current = occurrence.date()
        if current <= anchor:
            continue
        if limit is not None and produced >= limit:
            return
        yield current
        produced += 1


def expand_occurrences(
    rule: RecurrenceRule,
    anchor: date,
    window_start: date,
    window_end: date,
    *,
    until: date | None = None,
    count: int | None = None,
    count_so_far: int = 0,
    max_occurrences: int | None = None,
) -> list[date]:
    """Return candidate dates in ``[window_start, window_end)``.

    ``count_so_far`` is the number of occurrences already consumed before
    ``window_start``; the result never lets the cumulative total pass the
    series count. ``max_occurrences`` bounds the work done per call.
    """
    if window_end <= window_start:
        return []
    limits: list[int] = []
    total = effective_count(rule, count)
    if total is not None:
        limits.append(max(total - count_so_far, 0))
    if max_occurrences is not None:
        limits.append(max(max_occurrences, 0))
    limit = min(limits) if limits else None
    if limit == 0:
        return []

    dates: list[date] = []
    for current in iter_occurrences(
        rule, anchor, until=until, count=count, start=window_start
    ):
        if current >= window_end:
            break
        if current < window_start:
            continue
        dates.append(current)
        if limit is not None and len(dates) >= limit:
            break
    return dates


def upcoming_occurrences(
    rule: RecurrenceRule,
    anchor: date,
    *,
    after: date,
    limit: int = 10,
    until: date | None = None,
    count: int | None = None,
) -> list[date]:
    """Return up to ``limit`` dates on or after ``after``."""
    dates: list[date] = []
    if limit <= 0:
        return dates
    for current in iter_occurrences(rule, anchor, until=until, count=count, start=after):
        if current < after:
            continue
        dates.append(current)
        if len(dates) >= limit:
            break
    return dates


def is_occurrence_date(
    rule: RecurrenceRule,
    anchor: date,
    candidate: date,
    *,
    until: date | None = None,
    count: int | None = None,
) -> bool:
    for current in iter_occurrences(
        rule, anchor, until=until, count=count, start=candidate
    ):
        if current == candidate:
            return True
        if current > candidate:
            return False
    return False
