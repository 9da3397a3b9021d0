"""Template edits and their propagation to materialized instances."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, tzinfo
from typing import Any

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .crud import (
    civil_timezone,
    count_instances,
    ensure_owner,
    latest_instance_date,
    list_instances,
    require_series,
    resolve_bounds,
    validate_rule,
)
from .enums import FactKind, UpdateScope
from .errors import InstanceFailure, InvalidRecurrenceRule, PartialScopeFailure
from .facts import record_fact
from .locking import series_lock
from .materializer import instance_times, materialize_series
from .models import Instance, Series
from .utils import parse_time_of_day, utcnow

logger = logging.getLogger("uvicorn.error")

SERIES_TEMPLATE_FIELDS = (
    "title",
    "description",
    "location",
    "capacity",
    "rule",
    "start_time",
    "duration_minutes",
    "until_date",
    "occurrence_count",
)
PROPAGATED_FIELDS = ("title", "description", "location", "capacity")
TIME_FIELDS = ("start_time", "duration_minutes")


@dataclass(frozen=True)
class InstanceDelta:
    instance_id: str
    instance_date: date
    changes: dict[str, Any]


@dataclass(frozen=True)
class UpdatePlan:
    template_changes: dict[str, Any]
    deltas: tuple[InstanceDelta, ...] = ()


@dataclass
class ScopeResult:
    """Outcome of a scoped update or cancellation.

    ``skipped`` lists instances that changed between planning and writing
    (edited by hand for updates, already cancelled for cancellations), so
    the guarded write left them alone.
    """

    series: Series
    updated: list[date] = field(default_factory=list)
    skipped: list[date] = field(default_factory=list)
    failures: list[InstanceFailure] = field(default_factory=list)

    @property
    def partial_failure(self) -> PartialScopeFailure | None:
        if not self.failures:
            return None
        return PartialScopeFailure(self.failures)


def _as_date(value: Any) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


def normalize_changes(changes: dict[str, Any]) -> dict[str, Any]:
    """Coerce whitelisted template fields; anything else is ignored."""
    cleaned: dict[str, Any] = {}
    for key, value in changes.items():
        if key not in SERIES_TEMPLATE_FIELDS:
            logger.debug("Ignoring non-template field %s in series update", key)
            continue
        if key == "title":
            value = (value or "").strip()
            if not value:
                raise ValueError("Title is required")
        elif key in {"description", "location"}:
            value = (value or "").strip() or None
        elif key == "capacity":
            value = int(value) if value is not None else None
            if value is not None and value < 1:
                raise ValueError("Capacity must be positive")
        elif key == "rule":
            value = (value or "").strip()
        elif key == "start_time":
            value = parse_time_of_day(value)
        elif key == "duration_minutes":
            value = int(value)
            if value < 1:
                raise ValueError("Duration must be at least one minute")
        elif key == "until_date":
            value = _as_date(value)
        elif key == "occurrence_count":
            value = int(value) if value is not None else None
        cleaned[key] = value
    return cleaned


def plan_scope_update(
    series: Series,
    changes: dict[str, Any],
    scope: UpdateScope,
    instances: Iterable[Instance],
    *,
    now: datetime,
    tz: tzinfo,
) -> UpdatePlan:
    """Compute the template change and the per-instance deltas.

    Every non-exception instance is targeted, cancelled ones included, so
    their times stay in step with the template. ``future`` further restricts
    to instances starting after ``now``. Times are recomputed from
    each instance's own date so DST transitions are honoured.
    """
    template_changes = {
        key: value
        for key, value in changes.items()
        if getattr(series, key) != value
    }
    if not scope.propagates or not template_changes:
        return UpdatePlan(template_changes=template_changes)

    propagated = {
        key: template_changes[key] for key in PROPAGATED_FIELDS if key in template_changes
    }
    retime = any(key in template_changes for key in TIME_FIELDS)
    start_time = template_changes.get("start_time", series.start_time)
    duration = template_changes.get("duration_minutes", series.duration_minutes)

    deltas: list[InstanceDelta] = []
    for instance in instances:
        if instance.is_exception:
            continue
        if scope is UpdateScope.FUTURE and instance.start_time <= now:
            continue
        delta = {
            key: value
            for key, value in propagated.items()
            if getattr(instance, key) != value
        }
        if retime:
            starts_at, ends_at = instance_times(
                instance.instance_date, start_time, duration, tz
            )
            if starts_at != instance.start_time:
                delta["start_time"] = starts_at
            if ends_at != instance.end_time:
                delta["end_time"] = ends_at
        if delta:
            deltas.append(
                InstanceDelta(
                    instance_id=instance.id,
                    instance_date=instance.instance_date,
                    changes=delta,
                )
            )
    return UpdatePlan(template_changes=template_changes, deltas=tuple(deltas))


def _validate_template(session: Session, series: Series, changes: dict[str, Any]) -> None:
    """Reject rule and bound changes before anything is written."""
    if not {"rule", "until_date", "occurrence_count"} & set(changes):
        return
    rule = validate_rule(changes.get("rule", series.rule))
    until, count = resolve_bounds(
        rule,
        anchor_date=series.anchor_date,
        until_date=changes.get("until_date", series.until_date),
        occurrence_count=changes.get("occurrence_count", series.occurrence_count),
    )
    latest = latest_instance_date(session, series.id)
    if until is not None and latest is not None and until < latest:
        raise InvalidRecurrenceRule(
            "UNTIL", f"would end the series before existing instance {latest.isoformat()}"
        )
    if count is not None and count < count_instances(session, series.id):
        raise InvalidRecurrenceRule(
            "COUNT", "is lower than the number of instances already created"
        )
    if rule.until is not None and "until_date" not in changes:
        changes["until_date"] = until
    if rule.count is not None and "occurrence_count" not in changes:
        changes["occurrence_count"] = count


def _apply_delta(
    session: Session, series: Series, delta: InstanceDelta, now: datetime
) -> bool:
    stmt = (
        update(Instance)
        .where(
            Instance.id == delta.instance_id,
            Instance.is_exception.is_(False),
        )
        .values(**delta.changes, last_modified=now)
    )
    result = session.execute(stmt)
    if result.rowcount == 0:
        return False
    record_fact(
        session,
        FactKind.UPDATED,
        instance_id=delta.instance_id,
        series_id=series.id,
        instance_date=delta.instance_date,
    )
    return True


def update_series(
    session: Session,
    series_id: str,
    changes: dict[str, Any],
    scope: UpdateScope | str = UpdateScope.TEMPLATE_ONLY,
    *,
    actor_id: str | None,
    now: datetime | None = None,
) -> ScopeResult:
    """Edit the series template and propagate it according to ``scope``.

    The template change commits first. Each instance is then updated in its
    own transaction; failures are collected on the result instead of undoing
    the template change.
    """
    now = now or utcnow()
    scope = UpdateScope(scope)
    series = require_series(session, series_id)
    ensure_owner(series, actor_id)
    cleaned = normalize_changes(changes)

    with series_lock(series.id):
        _validate_template(session, series, cleaned)
        plan = plan_scope_update(
            series,
            cleaned,
            scope,
            list_instances(session, series.id),
            now=now,
            tz=civil_timezone(),
        )
        for key, value in plan.template_changes.items():
            setattr(series, key, value)
        if plan.template_changes:
            series.last_modified = now
        session.commit()

        result = ScopeResult(series=series)
        for delta in plan.deltas:
            try:
                applied = _apply_delta(session, series, delta, now)
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                logger.warning(
                    "Failed to update instance %s of series %s: %s",
                    delta.instance_id,
                    series.slug,
                    exc,
                )
                result.failures.append(
                    InstanceFailure(
                        instance_id=delta.instance_id,
                        instance_date=delta.instance_date,
                        reason=exc.__class__.__name__,
                    )
                )
                continue
            if applied:
                result.updated.append(delta.instance_date)
            else:
                result.skipped.append(delta.instance_date)

        if series.is_active and plan.template_changes:
            materialize_series(session, series, now=now)

    logger.info(
        "Updated series %s (scope=%s, fields=%s): instances updated=%d skipped=%d failed=%d",
        series.slug,
        scope.value,
        ",".join(sorted(plan.template_changes)) or "-",
        len(result.updated),
        len(result.skipped),
        len(result.failures),
    )
    return result
