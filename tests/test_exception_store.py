from __future__ import annotations

from datetime import date, datetime

import pytest

from openseries import crud
from openseries.enums import ExceptionType, FactKind, InstanceStatus
from openseries.errors import InstanceNotFound
from openseries.exception_store import add_skip, edit_instance, get_exceptions, skip_dates
from openseries.facts import read_facts
from openseries.materializer import materialize_series

NEW_YEAR = datetime(2025, 1, 1)


def _materialized(db_session, make_series, **overrides):
    series = make_series(**overrides)
    materialize_series(db_session, series, now=NEW_YEAR, window_end=date(2025, 2, 4))
    return series


def test_add_skip_is_idempotent(db_session, make_series):
    series = make_series()

    first = add_skip(db_session, series, date(2025, 1, 20), reason="Holiday")
    second = add_skip(db_session, series, date(2025, 1, 20), reason="Holiday")

    assert first.id == second.id
    exceptions = get_exceptions(db_session, series.id)
    assert len(exceptions) == 1
    assert exceptions[0].exception_type == ExceptionType.SKIP
    assert exceptions[0].reason == "Holiday"
    assert skip_dates(db_session, series.id) == {date(2025, 1, 20)}


def test_add_skip_rejects_dates_outside_the_pattern(db_session, make_series):
    series = make_series()
    with pytest.raises(ValueError):
        add_skip(db_session, series, date(2025, 1, 21))


def test_add_skip_cancels_materialized_instance(db_session, make_series):
    series = _materialized(db_session, make_series)

    add_skip(db_session, series, date(2025, 1, 20), created_by="owner-1")

    instance = crud.get_instance_by_date(db_session, series.id, date(2025, 1, 20))
    assert instance.status == InstanceStatus.CANCELLED
    cancelled = read_facts(db_session, kinds=[FactKind.CANCELLED])
    assert [fact.instance_id for fact in cancelled] == [instance.id]


def test_skip_dates_respects_window(db_session, make_series):
    series = make_series()
    add_skip(db_session, series, date(2025, 1, 13))
    add_skip(db_session, series, date(2025, 2, 3))

    assert skip_dates(db_session, series.id, date(2025, 1, 1), date(2025, 2, 1)) == {
        date(2025, 1, 13)
    }


def test_edit_instance_marks_exception_and_recomputes_time(db_session, make_series):
    series = _materialized(db_session, make_series)

    instance = edit_instance(
        db_session,
        series,
        date(2025, 1, 27),
        {"title": "Trail edition", "start_time": "19:30"},
        actor_id="owner-1",
        reason="Moved to the trail",
    )

    assert instance.is_exception is True
    assert instance.title == "Trail edition"
    assert instance.start_time == datetime(2025, 1, 27, 12, 30)
    assert instance.end_time == datetime(2025, 1, 27, 14, 0)
    exceptions = get_exceptions(db_session, series.id)
    assert [(e.original_date, e.exception_type) for e in exceptions] == [
        (date(2025, 1, 27), ExceptionType.MODIFIED)
    ]
    assert date(2025, 1, 27) not in skip_dates(db_session, series.id)
    updated = read_facts(db_session, kinds=[FactKind.UPDATED])
    assert [fact.instance_id for fact in updated] == [instance.id]


def test_edit_instance_duration_only_keeps_start(db_session, make_series):
    series = _materialized(db_session, make_series)

    instance = edit_instance(
        db_session, series, date(2025, 1, 13), {"duration_minutes": 30}
    )

    assert instance.start_time == datetime(2025, 1, 13, 11, 0)
    assert instance.end_time == datetime(2025, 1, 13, 11, 30)


def test_edit_instance_requires_materialized_instance(db_session, make_series):
    series = make_series()
    with pytest.raises(InstanceNotFound):
        edit_instance(db_session, series, date(2025, 1, 13), {"title": "Nope"})


def test_edit_instance_rejects_unknown_fields(db_session, make_series):
    series = _materialized(db_session, make_series)
    with pytest.raises(ValueError):
        edit_instance(db_session, series, date(2025, 1, 13), {"rule": "FREQ=DAILY"})


def test_edit_cancelled_instance_is_rejected(db_session, make_series):
    series = _materialized(db_session, make_series)
    add_skip(db_session, series, date(2025, 1, 13))
    with pytest.raises(ValueError):
        edit_instance(db_session, series, date(2025, 1, 13), {"title": "Back on"})
