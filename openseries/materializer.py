"""Turn a series template into concrete instance rows."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Collection, Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, tzinfo

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from .config import settings
from .crud import civil_timezone, count_instances, list_instances
from .enums import FactKind, InstanceStatus
from .errors import MaterializationRace
from .exception_store import skip_dates
from .expander import effective_count, expand_occurrences
from .facts import record_fact
from .locking import series_lock
from .models import Instance, Series
from .rrule import parse_rule
from .utils import local_today, to_absolute, utcnow

logger = logging.getLogger("uvicorn.error")


@dataclass
class MaterializationResult:
    series_id: str
    created: list[date] = field(default_factory=list)
    existing: list[date] = field(default_factory=list)
    skipped: list[date] = field(default_factory=list)
    races: list[date] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "series_id": self.series_id,
            "created": [d.isoformat() for d in self.created],
            "existing": [d.isoformat() for d in self.existing],
            "skipped": [d.isoformat() for d in self.skipped],
            "races": [d.isoformat() for d in self.races],
        }


def instance_times(
    instance_date: date, start_time: time, duration_minutes: int, tz: tzinfo
) -> tuple[datetime, datetime]:
    """Return naive UTC ``(start, end)`` for a civil date and time of day."""
    start = to_absolute(instance_date, start_time, tz)
    return start, start + timedelta(minutes=duration_minutes)


def default_window(series: Series, *, now: datetime, tz: tzinfo) -> tuple[date, date]:
    today = local_today(now, tz)
    return max(series.anchor_date, today), today + settings.horizon


def plan_materialization(
    candidates: Iterable[date],
    existing_dates: Collection[date],
    skipped: Collection[date],
    *,
    remaining: int | None = None,
) -> list[date]:
    """Return the candidate dates that still need an instance row."""
    planned: list[date] = []
    for candidate in candidates:
        if candidate in existing_dates or candidate in skipped:
            continue
        if remaining is not None and len(planned) >= remaining:
            break
        planned.append(candidate)
    return planned


def _insert_instance(session: Session, values: dict) -> None:
    """Insert one instance, raising :class:`MaterializationRace` on conflict."""
    dialect = session.get_bind().dialect.name
    insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
    stmt = (
        insert(Instance)
        .values(**values)
        .on_conflict_do_nothing(index_elements=["series_id", "instance_date"])
    )
    result = session.execute(stmt)
    if result.rowcount == 0:
        raise MaterializationRace(values["series_id"], values["instance_date"])


def materialize_series(
    session: Session,
    series: Series,
    *,
    now: datetime | None = None,
    window_start: date | None = None,
    window_end: date | None = None,
) -> MaterializationResult:
    """Create the missing instances of ``series`` inside the window.

    Existing rows are never edited or deleted, so calling this repeatedly
    with overlapping windows is safe.
    """
    result = MaterializationResult(series_id=series.id)
    now = now or utcnow()
    tz = civil_timezone()

    with series_lock(series.id):
        # Another writer may have edited or cancelled the series since it was loaded.
        session.refresh(series)
        if not series.is_active:
            logger.debug("Series %s is cancelled; nothing to materialize", series.slug)
            return result

        default_start, default_end = default_window(series, now=now, tz=tz)
        start = window_start or default_start
        end = window_end or default_end
        rule = parse_rule(series.rule)

        candidates = expand_occurrences(
            rule,
            series.anchor_date,
            start,
            end,
            until=series.until_date,
            count=series.occurrence_count,
            count_so_far=count_instances(session, series.id, before=start),
            max_occurrences=settings.max_occurrences_per_run,
        )
        existing = {
            instance.instance_date
            for instance in list_instances(session, series.id, start=start, end=end)
        }
        skipped = skip_dates(session, series.id, start, end)
        total = effective_count(rule, series.occurrence_count)
        remaining = None
        if total is not None:
            remaining = max(total - count_instances(session, series.id), 0)

        result.existing = [d for d in candidates if d in existing]
        result.skipped = [d for d in candidates if d in skipped]

        for instance_date in plan_materialization(
            candidates, existing, skipped, remaining=remaining
        ):
            starts_at, ends_at = instance_times(
                instance_date, series.start_time, series.duration_minutes, tz
            )
            instance_id = str(uuid.uuid4())
            try:
                _insert_instance(
                    session,
                    {
                        "id": instance_id,
                        "series_id": series.id,
                        "slug": f"{series.slug}-{instance_date:%Y%m%d}",
                        "owner_id": series.owner_id,
                        "title": series.title,
                        "description": series.description,
                        "location": series.location,
                        "capacity": series.capacity,
                        "instance_date": instance_date,
                        "start_time": starts_at,
                        "end_time": ends_at,
                        "is_exception": False,
                        "status": InstanceStatus.PUBLISHED,
                        "created_at": now,
                        "last_modified": now,
                    },
                )
            except MaterializationRace as race:
                logger.info("%s; treating as materialized", race)
                result.races.append(instance_date)
                continue
            record_fact(
                session,
                FactKind.CREATED,
                instance_id=instance_id,
                series_id=series.id,
                instance_date=instance_date,
            )
            result.created.append(instance_date)
            logger.debug(
                "Materialized %s on %s (%s UTC)",
                series.slug,
                instance_date.isoformat(),
                starts_at.isoformat(),
            )

        covered_until = end - timedelta(days=1)
        if (
            series.instances_generated_until is None
            or covered_until > series.instances_generated_until
        ):
            series.instances_generated_until = covered_until
        session.commit()

    if result.created or result.races:
        logger.info(
            "Materialized series %s: created=%d existing=%d skipped=%d races=%d",
            series.slug,
            len(result.created),
            len(result.existing),
            len(result.skipped),
            len(result.races),
        )
    return result
