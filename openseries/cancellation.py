"""Scoped cancellation of a series and its instances."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .crud import ensure_owner, list_instances, require_series
from .enums import CancelScope, FactKind, InstanceStatus, SeriesStatus
from .errors import InstanceFailure
from .facts import record_fact
from .locking import series_lock
from .models import Instance
from .updates import ScopeResult
from .utils import utcnow

logger = logging.getLogger("uvicorn.error")


def plan_cancellation(
    instances: Iterable[Instance], scope: CancelScope, *, now: datetime
) -> list[Instance]:
    """Return the instances a cancellation with ``scope`` would cancel.

    Hand-edited instances are included: cancelling only changes their status,
    never their content or times.
    """
    planned: list[Instance] = []
    for instance in instances:
        if instance.status != InstanceStatus.PUBLISHED:
            continue
        if scope is CancelScope.FUTURE and instance.start_time <= now:
            continue
        planned.append(instance)
    return planned


def cancel_series(
    session: Session,
    series_id: str,
    scope: CancelScope | str = CancelScope.FUTURE,
    *,
    actor_id: str | None,
    now: datetime | None = None,
) -> ScopeResult:
    """Cancel instances in ``scope`` and then the series itself.

    The series ends up cancelled even when some instances fail; those are
    reported on the result. Running it twice is harmless.
    """
    now = now or utcnow()
    scope = CancelScope(scope)
    series = require_series(session, series_id)
    ensure_owner(series, actor_id)

    with series_lock(series.id):
        result = ScopeResult(series=series)
        targets = [
            (instance.id, instance.instance_date)
            for instance in plan_cancellation(
                list_instances(session, series.id), scope, now=now
            )
        ]
        for instance_id, instance_date in targets:
            try:
                outcome = session.execute(
                    update(Instance)
                    .where(
                        Instance.id == instance_id,
                        Instance.status == InstanceStatus.PUBLISHED,
                    )
                    .values(status=InstanceStatus.CANCELLED, last_modified=now)
                )
                if outcome.rowcount:
                    record_fact(
                        session,
                        FactKind.CANCELLED,
                        instance_id=instance_id,
                        series_id=series.id,
                        instance_date=instance_date,
                    )
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                logger.warning(
                    "Failed to cancel instance %s of series %s: %s",
                    instance_id,
                    series.slug,
                    exc,
                )
                result.failures.append(
                    InstanceFailure(
                        instance_id=instance_id,
                        instance_date=instance_date,
                        reason=exc.__class__.__name__,
                    )
                )
                continue
            if outcome.rowcount:
                result.updated.append(instance_date)
            else:
                result.skipped.append(instance_date)

        series.status = SeriesStatus.CANCELLED
        series.last_modified = now
        session.commit()

    logger.info(
        "Cancelled series %s (scope=%s): instances cancelled=%d skipped=%d failed=%d",
        series.slug,
        scope.value,
        len(result.updated),
        len(result.skipped),
        len(result.failures),
    )
    return result
