from __future__ import annotations

from datetime import date
from itertools import takewhile

import pytest

from openseries import expander
from openseries.expander import (
    expand_occurrences,
    is_occurrence_date,
    iter_occurrences,
    phase_origin,
    upcoming_occurrences,
)
from openseries.rrule import parse_rule

MONDAY = date(2025, 1, 6)


def test_weekly_window_is_half_open():
    rule = parse_rule("FREQ=WEEKLY;BYDAY=MO")
    dates = expand_occurrences(rule, MONDAY, MONDAY, date(2025, 2, 4))
    assert dates == [
        date(2025, 1, 6),
        date(2025, 1, 13),
        date(2025, 1, 20),
        date(2025, 1, 27),
        date(2025, 2, 3),
    ]
    assert date(2025, 2, 3) not in expand_occurrences(
        rule, MONDAY, MONDAY, date(2025, 2, 3)
    )


def test_anchor_is_first_even_when_off_pattern():
    rule = parse_rule("FREQ=WEEKLY;BYDAY=WE")
    dates = list(iter_occurrences(rule, MONDAY, count=3))
    assert dates == [date(2025, 1, 6), date(2025, 1, 8), date(2025, 1, 15)]


def test_count_limits_by_position():
    rule = parse_rule("FREQ=WEEKLY;BYDAY=MO")
    dates = expand_occurrences(rule, MONDAY, MONDAY, date(2025, 12, 31), count=3)
    assert dates == [date(2025, 1, 6), date(2025, 1, 13), date(2025, 1, 20)]


def test_count_so_far_limits_remaining_slots():
    rule = parse_rule("FREQ=WEEKLY;BYDAY=MO")
    window = (date(2025, 1, 13), date(2025, 3, 1))
    assert expand_occurrences(rule, MONDAY, *window, count=3, count_so_far=1) == [
        date(2025, 1, 13),
        date(2025, 1, 20),
    ]
    assert expand_occurrences(rule, MONDAY, *window, count=3, count_so_far=2) == [
        date(2025, 1, 13)
    ]
    assert expand_occurrences(rule, MONDAY, *window, count=3, count_so_far=3) == []


def test_rule_count_and_series_count_take_the_minimum():
    rule = parse_rule("FREQ=DAILY;COUNT=4")
    dates = expand_occurrences(rule, MONDAY, MONDAY, date(2025, 2, 1), count=10)
    assert len(dates) == 4


def test_until_is_inclusive_and_uses_the_earliest_bound():
    rule = parse_rule("FREQ=WEEKLY;BYDAY=MO;UNTIL=20250127")
    dates = expand_occurrences(
        rule, MONDAY, MONDAY, date(2025, 3, 1), until=date(2025, 1, 20)
    )
    assert dates[-1] == date(2025, 1, 20)
    assert len(dates) == 3


def test_anchor_after_until_yields_nothing():
    rule = parse_rule("FREQ=DAILY")
    assert list(iter_occurrences(rule, MONDAY, until=date(2025, 1, 1))) == []


def test_monthly_day_clamps_to_month_end():
    rule = parse_rule("FREQ=MONTHLY")
    dates = expand_occurrences(rule, date(2025, 1, 31), date(2025, 1, 1), date(2025, 5, 1))
    assert dates == [
        date(2025, 1, 31),
        date(2025, 2, 28),
        date(2025, 3, 31),
        date(2025, 4, 30),
    ]


def test_monthly_bymonthday_clamps_in_leap_years():
    rule = parse_rule("FREQ=MONTHLY;BYMONTHDAY=31")
    dates = expand_occurrences(rule, date(2024, 1, 31), date(2024, 1, 1), date(2024, 4, 1))
    assert dates == [date(2024, 1, 31), date(2024, 2, 29), date(2024, 3, 31)]


def test_monthly_last_friday():
    rule = parse_rule("FREQ=MONTHLY;BYDAY=-1FR")
    dates = expand_occurrences(rule, date(2025, 1, 31), date(2025, 1, 1), date(2025, 4, 1))
    assert dates == [date(2025, 1, 31), date(2025, 2, 28), date(2025, 3, 28)]


def test_max_occurrences_bounds_one_call():
    rule = parse_rule("FREQ=DAILY")
    dates = expand_occurrences(
        rule, MONDAY, MONDAY, date(2025, 3, 1), max_occurrences=5
    )
    assert dates == [date(2025, 1, d) for d in range(6, 11)]


def test_empty_or_inverted_window():
    rule = parse_rule("FREQ=DAILY")
    assert expand_occurrences(rule, MONDAY, MONDAY, MONDAY) == []
    assert expand_occurrences(rule, MONDAY, date(2025, 2, 1), date(2025, 1, 1)) == []


def test_overlapping_windows_are_consistent():
    rule = parse_rule("FREQ=WEEKLY;INTERVAL=2;BYDAY=MO,TH")
    full = expand_occurrences(rule, MONDAY, MONDAY, date(2025, 4, 1))
    first = expand_occurrences(rule, MONDAY, MONDAY, date(2025, 2, 15))
    second = expand_occurrences(rule, MONDAY, date(2025, 2, 1), date(2025, 4, 1))
    assert sorted(set(first) | set(second)) == full
    assert set(first) & set(second) == {d for d in full if date(2025, 2, 1) <= d < date(2025, 2, 15)}


def test_upcoming_and_membership_helpers():
    rule = parse_rule("FREQ=WEEKLY;BYDAY=MO")
    assert upcoming_occurrences(rule, MONDAY, after=date(2025, 1, 15), limit=2) == [
        date(2025, 1, 20),
        date(2025, 1, 27),
    ]
    assert is_occurrence_date(rule, MONDAY, date(2025, 1, 20))
    assert not is_occurrence_date(rule, MONDAY, date(2025, 1, 21))
    assert not is_occurrence_date(rule, MONDAY, date(2025, 1, 20), count=2)


def test_long_running_series_starts_near_the_window(monkeypatch):
    rule = parse_rule("FREQ=DAILY;INTERVAL=3")
    starts = []
    original = expander.build_rrule

    def recording(*args, **kwargs):
        starts.append(kwargs.get("start"))
        return original(*args, **kwargs)

    monkeypatch.setattr(expander, "build_rrule", recording)

    dates = expand_occurrences(rule, date(2015, 1, 1), date(2025, 1, 1), date(2025, 1, 10))

    # 3653 days separate the anchor and the window, two past a multiple of 3.
    assert dates == [date(2025, 1, 2), date(2025, 1, 5), date(2025, 1, 8)]
    assert starts == [date(2024, 12, 30)]


@pytest.mark.parametrize(
    "text, anchor",
    [
        ("FREQ=DAILY;INTERVAL=4", date(2024, 2, 29)),
        ("FREQ=WEEKLY;INTERVAL=2;BYDAY=MO,WE", date(2025, 1, 8)),
        ("FREQ=WEEKLY;INTERVAL=3", date(2023, 11, 5)),
        ("FREQ=MONTHLY;INTERVAL=2;BYMONTHDAY=31", date(2025, 1, 31)),
        ("FREQ=MONTHLY", date(2024, 1, 30)),
        ("FREQ=MONTHLY;INTERVAL=5;BYDAY=-1FR", date(2022, 6, 24)),
    ],
)
def test_window_far_from_anchor_matches_full_walk(text, anchor):
    rule = parse_rule(text)
    window_start, window_end = date(2027, 3, 10), date(2027, 9, 1)
    walked = [
        d
        for d in takewhile(lambda d: d < window_end, iter_occurrences(rule, anchor))
        if d >= window_start
    ]

    assert walked
    assert expand_occurrences(rule, anchor, window_start, window_end) == walked
    assert upcoming_occurrences(rule, anchor, after=window_start, limit=1) == walked[:1]
    assert phase_origin(rule, anchor, window_start) <= window_start


def test_counted_series_ignores_the_window_start(monkeypatch):
    rule = parse_rule("FREQ=DAILY;COUNT=500")
    starts = []
    original = expander.build_rrule

    def recording(*args, **kwargs):
        starts.append(kwargs.get("start"))
        return original(*args, **kwargs)

    monkeypatch.setattr(expander, "build_rrule", recording)

    dates = expand_occurrences(rule, MONDAY, date(2026, 5, 1), date(2026, 6, 1))

    assert dates == [date(2026, 5, d) for d in range(1, 21)]
    assert starts == [MONDAY]
