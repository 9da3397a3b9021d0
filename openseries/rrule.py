"""Recurrence rule parsing and validation.

Supports a practical subset of RFC 5545 ``RRULE`` syntax::

    FREQ=WEEKLY;INTERVAL=2;BYDAY=MO,TH;COUNT=12
    FREQ=MONTHLY;BYDAY=-1FR;UNTIL=20251231
    FREQ=MONTHLY;BYMONTHDAY=15

Only DAILY, WEEKLY and MONTHLY frequencies are accepted. Anything else is
rejected with :class:`~openseries.errors.InvalidRecurrenceRule` naming the
offending token.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime

from .errors import InvalidRecurrenceRule

FREQUENCIES = ("DAILY", "WEEKLY", "MONTHLY")
WEEKDAY_CODES = ("MO", "TU", "WE", "TH", "FR", "SA", "SU")
WEEKDAY_NAMES = {
    "MO": "Monday",
    "TU": "Tuesday",
    "WE": "Wednesday",
    "TH": "Thursday",
    "FR": "Friday",
    "SA": "Saturday",
    "SU": "Sunday",
}
ORDINAL_NAMES = {
    1: "first",
    2: "second",
    3: "third",
    4: "fourth",
    5: "fifth",
    -1: "last",
    -2: "second to last",
}
SUPPORTED_KEYS = ("FREQ", "INTERVAL", "BYDAY", "BYMONTHDAY", "COUNT", "UNTIL")

_positional_day = re.compile(r"^([+-]?\d)([A-Z]{2})$")
_until_compact = re.compile(r"^(\d{8})(T\d{6}Z?)?$")


@dataclass(frozen=True)
class MonthWeekday:
    position: int
    weekday: str


@dataclass(frozen=True)
class RecurrenceRule:
    frequency: str
    interval: int = 1
    weekdays: tuple[str, ...] = ()
    month_day: int | None = None
    month_weekday: MonthWeekday | None = None
    count: int | None = None
    until: date | None = None

    @property
    def is_bounded(self) -> bool:
        return self.count is not None or self.until is not None


def _positive_int(token: str, raw: str) -> int:
    try:
        value = int(raw)
    except ValueError as exc:
        raise InvalidRecurrenceRule(token, f"{raw!r} is not an integer") from exc
    if value < 1:
        raise InvalidRecurrenceRule(token, "must be a positive integer")
    return value


def _parse_until(raw: str) -> date:
    match = _until_compact.match(raw)
    if match:
        try:
            return datetime.strptime(match.group(1), "%Y%m%d").date()
        except ValueError as exc:
            raise InvalidRecurrenceRule("UNTIL", f"{raw!r} is not a valid date") from exc
    try:
        return date.fromisoformat(raw[:10])
    except ValueError as exc:
        raise InvalidRecurrenceRule("UNTIL", f"{raw!r} is not a valid date") from exc


def _parse_byday(frequency: str, raw: str) -> tuple[tuple[str, ...], MonthWeekday | None]:
    codes = [code.strip() for code in raw.split(",")]
    if frequency == "DAILY":
        raise InvalidRecurrenceRule("BYDAY", "not supported with FREQ=DAILY")
    if frequency == "MONTHLY":
        if len(codes) != 1:
            raise InvalidRecurrenceRule(
                "BYDAY", "monthly rules accept a single positional weekday"
            )
        match = _positional_day.match(codes[0])
        if not match or match.group(2) not in WEEKDAY_CODES:
            raise InvalidRecurrenceRule(
                "BYDAY", f"{codes[0]!r} is not a positional weekday such as 2TU"
            )
        position = int(match.group(1))
        if position == 0 or not -5 <= position <= 5:
            raise InvalidRecurrenceRule("BYDAY", "position must be 1..5 or -5..-1")
        return (), MonthWeekday(position=position, weekday=match.group(2))

    weekdays: list[str] = []
    for code in codes:
        if code not in WEEKDAY_CODES:
            raise InvalidRecurrenceRule("BYDAY", f"{code!r} is not a weekday code")
        if code not in weekdays:
            weekdays.append(code)
    ordered = tuple(sorted(weekdays, key=WEEKDAY_CODES.index))
    return ordered, None


def parse_rule(text: str, *, require_bound: bool = False) -> RecurrenceRule:
    """Parse and validate a rule string into a :class:`RecurrenceRule`."""
    cleaned = (text or "").strip()
    if cleaned.upper().startswith("RRULE:"):
        cleaned = cleaned[len("RRULE:"):]
    if not cleaned:
        raise InvalidRecurrenceRule("FREQ", "rule is empty")

    parts: dict[str, str] = {}
    for part in cleaned.rstrip(";").split(";"):
        if "=" not in part:
            raise InvalidRecurrenceRule(part or ";", "expected KEY=VALUE")
        key, value = part.split("=", 1)
        key = key.strip().upper()
        value = value.strip().upper()
        if not key or not value:
            raise InvalidRecurrenceRule(part, "expected KEY=VALUE")
        if key not in SUPPORTED_KEYS:
            raise InvalidRecurrenceRule(key, "unsupported rule part")
        if key in parts:
            raise InvalidRecurrenceRule(key, "appears more than once")
        parts[key] = value

    if "FREQ" not in parts:
        raise InvalidRecurrenceRule("FREQ", "is required")
    frequency = parts["FREQ"]
    if frequency not in FREQUENCIES:
        raise InvalidRecurrenceRule(
            "FREQ", f"{frequency!r} is not one of {', '.join(FREQUENCIES)}"
        )

    interval = _positive_int("INTERVAL", parts["INTERVAL"]) if "INTERVAL" in parts else 1

    weekdays: tuple[str, ...] = ()
    month_weekday = None
    if "BYDAY" in parts:
        weekdays, month_weekday = _parse_byday(frequency, parts["BYDAY"])

    month_day = None
    if "BYMONTHDAY" in parts:
        if frequency != "MONTHLY":
            raise InvalidRecurrenceRule("BYMONTHDAY", "only supported with FREQ=MONTHLY")
        if month_weekday is not None:
            raise InvalidRecurrenceRule("BYMONTHDAY", "conflicts with BYDAY")
        month_day = _positive_int("BYMONTHDAY", parts["BYMONTHDAY"])
        if month_day > 31:
            raise InvalidRecurrenceRule("BYMONTHDAY", "must be between 1 and 31")

    count = _positive_int("COUNT", parts["COUNT"]) if "COUNT" in parts else None
    until = _parse_until(parts["UNTIL"]) if "UNTIL" in parts else None
    if count is not None and until is not None:
        raise InvalidRecurrenceRule("UNTIL", "COUNT and UNTIL cannot be combined")

    rule = RecurrenceRule(
        frequency=frequency,
        interval=interval,
        weekdays=weekdays,
        month_day=month_day,
        month_weekday=month_weekday,
        count=count,
        until=until,
    )
    if require_bound and not rule.is_bounded:
        raise InvalidRecurrenceRule("COUNT", "rule needs a COUNT or UNTIL bound")
    return rule


def is_valid_rule(text: str) -> bool:
    try:
        parse_rule(text)
    except InvalidRecurrenceRule:
        return False
    return True


def format_rule(rule: RecurrenceRule) -> str:
    """Render the canonical string for ``rule``."""
    parts = [f"FREQ={rule.frequency}"]
    if rule.interval > 1:
        parts.append(f"INTERVAL={rule.interval}")
    if rule.weekdays:
        parts.append(f"BYDAY={','.join(rule.weekdays)}")
    if rule.month_weekday:
        parts.append(f"BYDAY={rule.month_weekday.position}{rule.month_weekday.weekday}")
    if rule.month_day:
        parts.append(f"BYMONTHDAY={rule.month_day}")
    if rule.count is not None:
        parts.append(f"COUNT={rule.count}")
    if rule.until is not None:
        parts.append(f"UNTIL={rule.until.strftime('%Y%m%d')}")
    return ";".join(parts)


def _ordinal(position: int) -> str:
    return ORDINAL_NAMES.get(position, f"{position}th")


def describe_rule(rule: RecurrenceRule) -> str:
    """Return a human readable description such as 'Every 2 weeks on Monday'."""
    unit = {"DAILY": "day", "WEEKLY": "week", "MONTHLY": "month"}[rule.frequency]
    if rule.interval == 1:
        description = f"Every {unit}"
    else:
        description = f"Every {rule.interval} {unit}s"

    if rule.weekdays:
        description += " on " + ", ".join(WEEKDAY_NAMES[d] for d in rule.weekdays)
    elif rule.month_weekday:
        description += (
            f" on the {_ordinal(rule.month_weekday.position)} "
            f"{WEEKDAY_NAMES[rule.month_weekday.weekday]}"
        )
    elif rule.month_day:
        description += f" on day {rule.month_day}"

    if rule.count is not None:
        description += f", {rule.count} times"
    elif rule.until is not None:
        description += f", until {rule.until.isoformat()}"
    return description


def short_label(rule: RecurrenceRule) -> str:
    """Return a compact label for list views."""
    if rule.frequency == "WEEKLY":
        if rule.interval == 1:
            if len(rule.weekdays) == 1:
                return f"Weekly on {WEEKDAY_NAMES[rule.weekdays[0]]}"
            return "Weekly"
        return f"Every {rule.interval} weeks"
    if rule.frequency == "MONTHLY":
        if rule.month_weekday:
            return (
                f"{_ordinal(rule.month_weekday.position).capitalize()} "
                f"{WEEKDAY_NAMES[rule.month_weekday.weekday]}"
            )
        if rule.month_day:
            return f"Day {rule.month_day} monthly"
        return "Monthly"
    return "Daily" if rule.interval == 1 else f"Every {rule.interval} days"
