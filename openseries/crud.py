"""CRUD helpers for series and their instances."""

from __future__ import annotations

import secrets
from datetime import date, datetime, time, tzinfo
from typing import Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import settings
from .enums import InstanceStatus, SeriesStatus
from .errors import InvalidRecurrenceRule, NotAuthorized, SeriesNotFound
from .models import Instance, Series
from .rrule import RecurrenceRule, parse_rule
from .utils import resolve_timezone, slugify, utcnow

MAX_SLUG_RETRIES = 3
SLUG_BASE_LENGTH = 50


def _now() -> datetime:
    return utcnow()


def civil_timezone() -> tzinfo:
    """Return the platform's fixed civil timezone."""
    return resolve_timezone(settings.civil_timezone)


def get_series(session: Session, series_id: str) -> Series | None:
    return session.get(Series, series_id)


def get_series_by_slug(session: Session, slug: str) -> Series | None:
    normalized = (slug or "").strip().lower()
    if not normalized:
        return None
    stmt = select(Series).where(Series.slug == normalized)
    return session.scalars(stmt).first()


def require_series(session: Session, series_id: str) -> Series:
    series = get_series(session, series_id)
    if series is None:
        raise SeriesNotFound(series_id)
    return series


def require_series_by_slug(session: Session, slug: str) -> Series:
    series = get_series_by_slug(session, slug)
    if series is None:
        raise SeriesNotFound(slug)
    return series


def ensure_owner(series: Series, actor_id: str | None) -> None:
    """Reject mutation attempts from anyone but the series owner."""
    if not actor_id or actor_id != series.owner_id:
        raise NotAuthorized(f"User {actor_id!r} does not own series {series.slug}")


def list_series(
    session: Session,
    *,
    owner_id: str | None = None,
    include_cancelled: bool = False,
    limit: int | None = None,
) -> Sequence[Series]:
    stmt = select(Series).order_by(Series.created_at.desc(), Series.id)
    if owner_id is not None:
        stmt = stmt.where(Series.owner_id == owner_id)
    if not include_cancelled:
        stmt = stmt.where(Series.status == SeriesStatus.ACTIVE)
    if limit and limit > 0:
        stmt = stmt.limit(limit)
    return session.scalars(stmt).all()


def list_active_series_ids(session: Session) -> list[str]:
    stmt = (
        select(Series.id)
        .where(Series.status == SeriesStatus.ACTIVE)
        .order_by(Series.created_at, Series.id)
    )
    return list(session.scalars(stmt).all())


def resolve_bounds(
    rule: RecurrenceRule,
    *,
    anchor_date: date,
    until_date: date | None,
    occurrence_count: int | None,
) -> tuple[date | None, int | None]:
    """Merge the rule's own COUNT/UNTIL with the series columns."""
    if occurrence_count is not None and occurrence_count < 1:
        raise InvalidRecurrenceRule("COUNT", "must be a positive integer")
    if (
        rule.count is not None
        and occurrence_count is not None
        and rule.count != occurrence_count
    ):
        raise InvalidRecurrenceRule("COUNT", "disagrees with the series count")
    if rule.until is not None and until_date is not None and rule.until != until_date:
        raise InvalidRecurrenceRule("UNTIL", "disagrees with the series until date")
    until = until_date or rule.until
    count = occurrence_count or rule.count
    if until is not None and until < anchor_date:
        raise InvalidRecurrenceRule("UNTIL", "falls before the anchor date")
    return until, count


def validate_rule(text: str) -> RecurrenceRule:
    return parse_rule(text, require_bound=settings.require_bounded_rules)


def _series_slug(title: str, attempt: int) -> str:
    base = slugify(title)[:SLUG_BASE_LENGTH].strip("-") or "series"
    suffix = secrets.token_hex(2 if attempt == 0 else 3)
    return f"{base}-{suffix}"


def create_series(
    session: Session,
    *,
    owner_id: str,
    title: str,
    rule: str,
    anchor_date: date,
    start_time: time,
    duration_minutes: int | None = None,
    description: str | None = None,
    location: str | None = None,
    capacity: int | None = None,
    until_date: date | None = None,
    occurrence_count: int | None = None,
) -> Series:
    """Validate and persist a new series template.

    Nothing is written when the rule, bounds or scheduling fields are invalid.
    """
    cleaned_title = (title or "").strip()
    if not cleaned_title:
        raise ValueError("Title is required")
    if not owner_id:
        raise NotAuthorized("An owner is required to create a series")
    parsed = validate_rule(rule)
    until, count = resolve_bounds(
        parsed,
        anchor_date=anchor_date,
        until_date=until_date,
        occurrence_count=occurrence_count,
    )
    duration = duration_minutes or settings.default_duration_minutes
    if duration < 1:
        raise ValueError("Duration must be at least one minute")
    if capacity is not None and capacity < 1:
        raise ValueError("Capacity must be positive")

    for attempt in range(MAX_SLUG_RETRIES):
        series = Series(
            slug=_series_slug(cleaned_title, attempt),
            owner_id=owner_id,
            title=cleaned_title,
            description=(description or "").strip() or None,
            location=(location or "").strip() or None,
            capacity=capacity,
            rule=rule.strip(),
            anchor_date=anchor_date,
            start_time=start_time.replace(tzinfo=None, microsecond=0),
            duration_minutes=duration,
            until_date=until,
            occurrence_count=count,
            status=SeriesStatus.ACTIVE,
            created_at=_now(),
            last_modified=_now(),
        )
        if get_series_by_slug(session, series.slug) is not None:
            continue
        session.add(series)
        try:
            session.flush()
        except IntegrityError:
            session.rollback()
            if attempt == MAX_SLUG_RETRIES - 1:
                raise
            continue
        return series
    raise RuntimeError("Failed to allocate a unique series slug")


def list_instances(
    session: Session,
    series_id: str,
    *,
    start: date | None = None,
    end: date | None = None,
    statuses: Sequence[InstanceStatus] | None = None,
) -> Sequence[Instance]:
    """Return instances ordered by date, optionally within ``[start, end)``."""
    stmt = select(Instance).where(Instance.series_id == series_id)
    if start is not None:
        stmt = stmt.where(Instance.instance_date >= start)
    if end is not None:
        stmt = stmt.where(Instance.instance_date < end)
    if statuses:
        stmt = stmt.where(Instance.status.in_(list(statuses)))
    return session.scalars(stmt.order_by(Instance.instance_date)).all()


def get_instance_by_date(
    session: Session, series_id: str, instance_date: date
) -> Instance | None:
    stmt = select(Instance).where(
        Instance.series_id == series_id, Instance.instance_date == instance_date
    )
    return session.scalars(stmt).first()


def upcoming_instances(
    session: Session, series_id: str, *, now: datetime, limit: int
) -> Sequence[Instance]:
    stmt = (
        select(Instance)
        .where(
            Instance.series_id == series_id,
            Instance.status == InstanceStatus.PUBLISHED,
            Instance.start_time > now,
        )
        .order_by(Instance.start_time.asc())
    )
    if limit and limit > 0:
        stmt = stmt.limit(limit)
    return session.scalars(stmt).all()


def count_instances(
    session: Session, series_id: str, *, before: date | None = None
) -> int:
    stmt = select(func.count()).select_from(Instance).where(
        Instance.series_id == series_id
    )
    if before is not None:
        stmt = stmt.where(Instance.instance_date < before)
    return session.scalar(stmt) or 0


def latest_instance_date(session: Session, series_id: str) -> date | None:
    stmt = select(func.max(Instance.instance_date)).where(
        Instance.series_id == series_id
    )
    return session.scalar(stmt)
