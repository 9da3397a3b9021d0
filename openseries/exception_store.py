"""Per-date exceptions to a series template."""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta
from typing import Any, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from .crud import civil_timezone, get_instance_by_date
from .enums import ExceptionType, FactKind, InstanceStatus
from .errors import InstanceNotFound
from .expander import is_occurrence_date
from .facts import record_fact
from .locking import series_lock
from .models import Instance, Series, SeriesException
from .rrule import parse_rule
from .utils import parse_time_of_day, to_absolute, to_local, utcnow

logger = logging.getLogger("uvicorn.error")

EDITABLE_INSTANCE_FIELDS = (
    "title",
    "description",
    "location",
    "capacity",
    "start_time",
    "duration_minutes",
)


def get_exceptions(
    session: Session,
    series_id: str,
    *,
    start: date | None = None,
    end: date | None = None,
) -> Sequence[SeriesException]:
    stmt = select(SeriesException).where(SeriesException.series_id == series_id)
    if start is not None:
        stmt = stmt.where(SeriesException.original_date >= start)
    if end is not None:
        stmt = stmt.where(SeriesException.original_date < end)
    return session.scalars(stmt.order_by(SeriesException.original_date)).all()


def skip_dates(
    session: Session,
    series_id: str,
    start: date | None = None,
    end: date | None = None,
) -> set[date]:
    return {
        exception.original_date
        for exception in get_exceptions(session, series_id, start=start, end=end)
        if exception.exception_type == ExceptionType.SKIP
    }


def _get_exception(
    session: Session, series_id: str, original_date: date
) -> SeriesException | None:
    stmt = select(SeriesException).where(
        SeriesException.series_id == series_id,
        SeriesException.original_date == original_date,
    )
    return session.scalars(stmt).first()


def add_skip(
    session: Session,
    series: Series,
    original_date: date,
    *,
    reason: str | None = None,
    created_by: str | None = None,
    now: datetime | None = None,
) -> SeriesException:
    """Suppress the occurrence on ``original_date``.

    Calling it again for the same date returns the existing record. An already
    materialized instance for that date is cancelled.
    """
    now = now or utcnow()
    rule = parse_rule(series.rule)
    if not is_occurrence_date(
        rule,
        series.anchor_date,
        original_date,
        until=series.until_date,
        count=series.occurrence_count,
    ):
        raise ValueError(
            f"{original_date.isoformat()} is not an occurrence of series {series.slug}"
        )

    with series_lock(series.id):
        exception = _get_exception(session, series.id, original_date)
        if exception is None:
            exception = SeriesException(
                series_id=series.id,
                original_date=original_date,
                exception_type=ExceptionType.SKIP,
                reason=(reason or "").strip() or None,
                created_by=created_by,
                created_at=now,
            )
            session.add(exception)
        elif exception.exception_type == ExceptionType.MODIFIED:
            exception.exception_type = ExceptionType.SKIP
            exception.reason = (reason or "").strip() or exception.reason
            exception.created_by = created_by or exception.created_by

        instance = get_instance_by_date(session, series.id, original_date)
        if instance is not None and instance.status == InstanceStatus.PUBLISHED:
            instance.status = InstanceStatus.CANCELLED
            instance.last_modified = now
            record_fact(
                session,
                FactKind.CANCELLED,
                instance_id=instance.id,
                series_id=series.id,
                instance_date=original_date,
            )
            logger.info(
                "Cancelled instance %s of series %s for skipped date %s",
                instance.id,
                series.slug,
                original_date.isoformat(),
            )
        session.commit()
    return exception


def _clean_instance_changes(changes: dict[str, Any]) -> dict[str, Any]:
    unknown = set(changes) - set(EDITABLE_INSTANCE_FIELDS)
    if unknown:
        raise ValueError(f"Fields cannot be edited per instance: {', '.join(sorted(unknown))}")
    cleaned: dict[str, Any] = {}
    for field, value in changes.items():
        if field == "title":
            value = (value or "").strip()
            if not value:
                raise ValueError("Title is required")
        elif field in {"description", "location"}:
            value = (value or "").strip() or None
        elif field == "capacity":
            if value is not None and int(value) < 1:
                raise ValueError("Capacity must be positive")
            value = int(value) if value is not None else None
        elif field == "start_time":
            value = parse_time_of_day(value)
        elif field == "duration_minutes":
            value = int(value)
            if value < 1:
                raise ValueError("Duration must be at least one minute")
        cleaned[field] = value
    return cleaned


def edit_instance(
    session: Session,
    series: Series,
    instance_date: date,
    changes: dict[str, Any],
    *,
    actor_id: str | None = None,
    reason: str | None = None,
    now: datetime | None = None,
) -> Instance:
    """Apply a hand edit to one instance and mark it as an exception.

    Once edited, the instance is no longer touched by scoped updates or
    cancellations of the series.
    """
    now = now or utcnow()
    cleaned = _clean_instance_changes(changes)
    tz = civil_timezone()

    with series_lock(series.id):
        instance = get_instance_by_date(session, series.id, instance_date)
        if instance is None:
            raise InstanceNotFound(series.slug, instance_date)
        if instance.status != InstanceStatus.PUBLISHED:
            raise ValueError("Cancelled instances cannot be edited")

        for field in ("title", "description", "location", "capacity"):
            if field in cleaned:
                setattr(instance, field, cleaned[field])

        if "start_time" in cleaned or "duration_minutes" in cleaned:
            duration = cleaned.get("duration_minutes")
            if duration is None:
                duration = int(
                    (instance.end_time - instance.start_time).total_seconds() // 60
                )
            local_time: time = cleaned.get("start_time") or to_local(
                instance.start_time, tz
            ).time()
            instance.start_time = to_absolute(instance_date, local_time, tz)
            instance.end_time = instance.start_time + timedelta(minutes=duration)

        instance.is_exception = True
        instance.last_modified = now

        exception = _get_exception(session, series.id, instance_date)
        if exception is None:
            session.add(
                SeriesException(
                    series_id=series.id,
                    original_date=instance_date,
                    exception_type=ExceptionType.MODIFIED,
                    reason=(reason or "").strip() or None,
                    created_by=actor_id,
                    created_at=now,
                )
            )
        elif reason:
            exception.reason = reason.strip()

        record_fact(
            session,
            FactKind.UPDATED,
            instance_id=instance.id,
            series_id=series.id,
            instance_date=instance_date,
        )
        session.commit()
        logger.debug(
            "Edited instance %s of series %s on %s (fields=%s)",
            instance.id,
            series.slug,
            instance_date.isoformat(),
            ",".join(sorted(cleaned)),
        )
    return instance
