from __future__ import annotations

from datetime import date, datetime
from types import SimpleNamespace

import pytest

from openseries import crud
from openseries.cancellation import cancel_series, plan_cancellation
from openseries.enums import CancelScope, FactKind, InstanceStatus, SeriesStatus
from openseries.errors import NotAuthorized
from openseries.exception_store import edit_instance
from openseries.facts import read_facts
from openseries.materializer import materialize_series

NEW_YEAR = datetime(2025, 1, 1)
MID_JANUARY = datetime(2025, 1, 15)


def _materialized(db_session, make_series):
    series = make_series()
    materialize_series(db_session, series, now=NEW_YEAR, window_end=date(2025, 2, 4))
    return series


def _statuses(db_session, series_id) -> dict[date, InstanceStatus]:
    db_session.expire_all()
    return {i.instance_date: i.status for i in crud.list_instances(db_session, series_id)}


def test_plan_cancellation_filters_by_scope():
    instances = [
        SimpleNamespace(
            start_time=datetime(2025, 1, day, 11, 0),
            is_exception=day == 27,
            status=InstanceStatus.PUBLISHED,
        )
        for day in (6, 13, 20, 27)
    ]
    future = plan_cancellation(instances, CancelScope.FUTURE, now=MID_JANUARY)
    everything = plan_cancellation(instances, CancelScope.ALL, now=MID_JANUARY)
    assert [i.start_time.day for i in future] == [20, 27]
    assert [i.start_time.day for i in everything] == [6, 13, 20, 27]


def test_future_cancellation_keeps_history(db_session, make_series):
    series = _materialized(db_session, make_series)

    result = cancel_series(
        db_session, series.id, CancelScope.FUTURE, actor_id="owner-1", now=MID_JANUARY
    )

    assert result.updated == [date(2025, 1, 20), date(2025, 1, 27), date(2025, 2, 3)]
    statuses = _statuses(db_session, series.id)
    assert statuses[date(2025, 1, 6)] == InstanceStatus.PUBLISHED
    assert statuses[date(2025, 1, 13)] == InstanceStatus.PUBLISHED
    assert statuses[date(2025, 1, 20)] == InstanceStatus.CANCELLED
    assert statuses[date(2025, 2, 3)] == InstanceStatus.CANCELLED
    assert crud.get_series(db_session, series.id).status == SeriesStatus.CANCELLED
    assert len(read_facts(db_session, kinds=[FactKind.CANCELLED])) == 3


def test_all_cancellation_includes_hand_edited_instances(db_session, make_series):
    series = _materialized(db_session, make_series)
    edited = edit_instance(
        db_session, series, date(2025, 1, 27), {"title": "Special", "start_time": "19:30"}
    )
    edited_start = edited.start_time

    result = cancel_series(db_session, series.id, "all", actor_id="owner-1", now=MID_JANUARY)

    statuses = _statuses(db_session, series.id)
    assert set(statuses.values()) == {InstanceStatus.CANCELLED}
    assert len(result.updated) == 5
    instance = crud.get_instance_by_date(db_session, series.id, date(2025, 1, 27))
    assert instance.is_exception is True
    assert instance.title == "Special"
    assert instance.start_time == edited_start


def test_cancellation_is_idempotent(db_session, make_series):
    series = _materialized(db_session, make_series)
    cancel_series(db_session, series.id, "all", actor_id="owner-1", now=MID_JANUARY)

    again = cancel_series(db_session, series.id, "all", actor_id="owner-1", now=MID_JANUARY)

    assert again.updated == []
    assert again.series.status == SeriesStatus.CANCELLED
    assert len(read_facts(db_session, kinds=[FactKind.CANCELLED])) == 5


def test_cancelled_series_is_not_extended(db_session, make_series):
    series = _materialized(db_session, make_series)
    cancel_series(db_session, series.id, actor_id="owner-1", now=MID_JANUARY)

    result = materialize_series(
        db_session, series, now=MID_JANUARY, window_end=date(2025, 6, 1)
    )

    assert result.created == []
    assert len(crud.list_instances(db_session, series.id)) == 5


def test_non_owner_cannot_cancel(db_session, make_series):
    series = _materialized(db_session, make_series)

    with pytest.raises(NotAuthorized):
        cancel_series(db_session, series.id, "all", actor_id="intruder")

    db_session.expire_all()
    assert crud.get_series(db_session, series.id).status == SeriesStatus.ACTIVE
    assert InstanceStatus.CANCELLED not in _statuses(db_session, series.id).values()
