from __future__ import annotations

from datetime import date, datetime, time

from sqlalchemy import func, select

from openseries import crud, database, materializer
from openseries.cancellation import cancel_series
from openseries.enums import FactKind, InstanceStatus, SeriesStatus
from openseries.exception_store import add_skip
from openseries.facts import read_facts
from openseries.materializer import materialize_series, plan_materialization
from openseries.models import Instance

NEW_YEAR = datetime(2025, 1, 1)
WINDOW_END = date(2025, 2, 4)


def _instance_count(session, series_id) -> int:
    return session.scalar(
        select(func.count()).select_from(Instance).where(Instance.series_id == series_id)
    )


def test_plan_materialization_skips_existing_and_skipped_dates():
    candidates = [date(2025, 1, d) for d in (6, 13, 20, 27)]
    planned = plan_materialization(
        candidates, {date(2025, 1, 6)}, {date(2025, 1, 20)}
    )
    assert planned == [date(2025, 1, 13), date(2025, 1, 27)]
    assert plan_materialization(candidates, set(), set(), remaining=1) == [
        date(2025, 1, 6)
    ]


def test_weekly_series_materializes_in_civil_time(db_session, make_series):
    series = make_series()

    result = materialize_series(db_session, series, now=NEW_YEAR, window_end=WINDOW_END)

    assert result.created == [
        date(2025, 1, 6),
        date(2025, 1, 13),
        date(2025, 1, 20),
        date(2025, 1, 27),
        date(2025, 2, 3),
    ]
    instances = crud.list_instances(db_session, series.id)
    assert len(instances) == 5
    for instance in instances:
        assert instance.start_time.time() == time(11, 0)
        assert instance.end_time.time() == time(12, 30)
        assert instance.start_time.date() == instance.instance_date
        assert instance.status == InstanceStatus.PUBLISHED
        assert instance.is_exception is False
        assert instance.title == "Monday Run Club"
        assert instance.owner_id == "owner-1"
    assert instances[0].slug == f"{series.slug}-20250106"
    assert series.instances_generated_until == date(2025, 2, 3)

    facts = read_facts(db_session)
    assert [fact.kind for fact in facts] == [FactKind.CREATED] * 5
    assert {fact.instance_id for fact in facts} == {i.id for i in instances}


def test_materialization_is_idempotent(db_session, make_series):
    series = make_series()
    materialize_series(db_session, series, now=NEW_YEAR, window_end=WINDOW_END)

    again = materialize_series(db_session, series, now=NEW_YEAR, window_end=WINDOW_END)

    assert again.created == []
    assert len(again.existing) == 5
    assert _instance_count(db_session, series.id) == 5
    assert len(read_facts(db_session)) == 5


def test_default_window_uses_horizon(db_session, make_series, override_settings):
    override_settings(horizon_days=14)
    series = make_series()

    result = materialize_series(db_session, series, now=NEW_YEAR)

    assert result.created == [date(2025, 1, 6), date(2025, 1, 13)]


def test_skipped_date_stays_absent_after_wider_window(db_session, make_series):
    series = make_series()
    add_skip(db_session, series, date(2025, 1, 20), created_by="owner-1")

    materialize_series(db_session, series, now=NEW_YEAR, window_end=WINDOW_END)
    result = materialize_series(
        db_session, series, now=NEW_YEAR, window_end=date(2025, 3, 31)
    )

    dates = [i.instance_date for i in crud.list_instances(db_session, series.id)]
    assert date(2025, 1, 20) not in dates
    assert date(2025, 1, 20) in result.skipped
    assert date(2025, 3, 24) in dates


def test_count_is_never_exceeded_across_overlapping_runs(db_session, make_series):
    series = make_series(occurrence_count=5)

    first = materialize_series(
        db_session, series, now=NEW_YEAR, window_end=date(2025, 1, 27)
    )
    second = materialize_series(
        db_session,
        series,
        now=NEW_YEAR,
        window_start=date(2025, 1, 13),
        window_end=date(2025, 3, 31),
    )
    third = materialize_series(
        db_session, series, now=NEW_YEAR, window_end=date(2025, 12, 31)
    )

    assert len(first.created) == 3
    assert second.created == [date(2025, 1, 27), date(2025, 2, 3)]
    assert third.created == []
    assert _instance_count(db_session, series.id) == 5


def test_skip_consumes_its_position_in_the_count(db_session, make_series):
    series = make_series(occurrence_count=3)
    add_skip(db_session, series, date(2025, 1, 13))

    materialize_series(db_session, series, now=NEW_YEAR, window_end=date(2025, 6, 1))

    dates = [i.instance_date for i in crud.list_instances(db_session, series.id)]
    assert dates == [date(2025, 1, 6), date(2025, 1, 20)]


def test_lost_race_counts_as_success(db_session, make_series, monkeypatch):
    series = make_series()
    materialize_series(db_session, series, now=NEW_YEAR, window_end=WINDOW_END)
    # Pretend nothing exists yet, as a concurrent writer would see it.
    monkeypatch.setattr(materializer, "list_instances", lambda *args, **kwargs: [])

    result = materialize_series(db_session, series, now=NEW_YEAR, window_end=WINDOW_END)

    assert result.created == []
    assert len(result.races) == 5
    assert _instance_count(db_session, series.id) == 5
    assert len(read_facts(db_session)) == 5


def test_cancelled_series_materializes_nothing(db_session, make_series):
    series = make_series()
    series.status = SeriesStatus.CANCELLED
    db_session.commit()

    result = materialize_series(db_session, series, now=NEW_YEAR, window_end=WINDOW_END)

    assert result.created == []
    assert _instance_count(db_session, series.id) == 0


def test_series_cancelled_elsewhere_materializes_nothing(db_session, make_series):
    series = make_series()
    other = database.SessionLocal.session_factory()
    try:
        cancel_series(other, series.id, "all", actor_id="owner-1", now=NEW_YEAR)
    finally:
        other.close()

    # ``series`` was loaded before the cancel and still reads as active here.
    result = materialize_series(db_session, series, now=NEW_YEAR, window_end=WINDOW_END)

    assert result.created == []
    assert series.status == SeriesStatus.CANCELLED
    assert _instance_count(db_session, series.id) == 0
    assert read_facts(db_session, kinds=[FactKind.CREATED]) == []


def test_daylight_saving_keeps_wall_clock(db_session, make_series, override_settings):
    override_settings(civil_timezone="America/New_York")
    series = make_series(
        rule="FREQ=WEEKLY;BYDAY=SU",
        anchor_date=date(2025, 3, 2),
        start_time=time(10, 0),
        duration_minutes=60,
    )

    materialize_series(
        db_session, series, now=datetime(2025, 3, 1), window_end=date(2025, 3, 17)
    )

    starts = [i.start_time for i in crud.list_instances(db_session, series.id)]
    assert starts == [
        datetime(2025, 3, 2, 15, 0),
        datetime(2025, 3, 9, 14, 0),
        datetime(2025, 3, 16, 14, 0),
    ]
