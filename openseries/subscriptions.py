"""Series subscriptions and auto-RSVP fan-out."""

from __future__ import annotations

import logging

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .config import settings
from .enums import FactKind, InstanceStatus, RSVPSource
from .facts import read_facts
from .models import Instance, InstanceRSVP, Meta, Series, SeriesSubscription
from .utils import utcnow

logger = logging.getLogger("uvicorn.error")


def get_subscription(
    session: Session, series_id: str, user_id: str
) -> SeriesSubscription | None:
    stmt = select(SeriesSubscription).where(
        SeriesSubscription.series_id == series_id,
        SeriesSubscription.user_id == user_id,
    )
    return session.scalars(stmt).first()


def subscribe(
    session: Session, series: Series, user_id: str, *, auto_rsvp: bool = True
) -> SeriesSubscription:
    if not user_id:
        raise ValueError("A user is required to subscribe")
    if not series.is_active:
        raise ValueError("Cannot subscribe to a cancelled series")
    subscription = get_subscription(session, series.id, user_id)
    if subscription is None:
        subscription = SeriesSubscription(
            series_id=series.id,
            user_id=user_id,
            auto_rsvp=auto_rsvp,
            created_at=utcnow(),
        )
        session.add(subscription)
    else:
        subscription.auto_rsvp = auto_rsvp
    session.flush()
    return subscription


def unsubscribe(session: Session, series: Series, user_id: str) -> bool:
    """Remove a subscription. RSVPs already created are kept."""
    subscription = get_subscription(session, series.id, user_id)
    if subscription is None:
        return False
    session.delete(subscription)
    session.flush()
    return True


def subscriber_count(session: Session, series_id: str) -> int:
    """Count subscribers who RSVP automatically to new instances."""
    stmt = (
        select(func.count())
        .select_from(SeriesSubscription)
        .where(
            SeriesSubscription.series_id == series_id,
            SeriesSubscription.auto_rsvp.is_(True),
        )
    )
    return session.scalar(stmt) or 0


def is_subscribed(session: Session, series_id: str, user_id: str | None) -> bool:
    if not user_id:
        return False
    return get_subscription(session, series_id, user_id) is not None


def _read_cursor(session: Session) -> int:
    meta = session.get(Meta, settings.fanout_cursor_key)
    if meta is None:
        return 0
    try:
        return int(meta.value)
    except ValueError:
        logger.warning("Ignoring malformed fan-out cursor %r", meta.value)
        return 0


def _write_cursor(session: Session, value: int) -> None:
    session.merge(
        Meta(key=settings.fanout_cursor_key, value=str(value), updated_at=utcnow())
    )


def _auto_rsvp_users(session: Session, series_id: str) -> list[str]:
    stmt = (
        select(SeriesSubscription.user_id)
        .where(
            SeriesSubscription.series_id == series_id,
            SeriesSubscription.auto_rsvp.is_(True),
        )
        .order_by(SeriesSubscription.created_at, SeriesSubscription.id)
    )
    return list(session.scalars(stmt).all())


def fan_out_new_instances(session: Session, *, batch_size: int | None = None) -> dict:
    """RSVP auto-RSVP subscribers to newly created instances.

    Reads ``created`` facts past the stored cursor. Existing RSVPs are left
    alone and full instances are not overbooked.
    """
    stats = {"facts": 0, "rsvps_created": 0, "instances_skipped": 0, "cursor": 0}
    limit = batch_size or settings.fanout_batch_size
    cursor = _read_cursor(session)
    facts = read_facts(session, after_id=cursor, limit=limit, kinds=[FactKind.CREATED])
    stats["cursor"] = cursor
    if not facts:
        return stats

    for fact in facts:
        stats["facts"] += 1
        instance = session.get(Instance, fact.instance_id)
        if instance is None or instance.status != InstanceStatus.PUBLISHED:
            stats["instances_skipped"] += 1
            continue
        responded = {rsvp.user_id for rsvp in instance.rsvps}
        attending = instance.yes_count
        for user_id in _auto_rsvp_users(session, fact.series_id):
            if user_id in responded:
                continue
            if instance.capacity is not None and attending >= instance.capacity:
                logger.debug(
                    "Instance %s is full; not auto-RSVPing %s", instance.id, user_id
                )
                break
            session.add(
                InstanceRSVP(
                    instance_id=instance.id,
                    user_id=user_id,
                    attendance_status="yes",
                    source=RSVPSource.AUTO,
                    created_at=utcnow(),
                )
            )
            responded.add(user_id)
            attending += 1
            stats["rsvps_created"] += 1

    stats["cursor"] = facts[-1].id
    _write_cursor(session, stats["cursor"])
    session.commit()
    logger.debug(
        "Fan-out processed %d facts up to %d; created %d RSVPs",
        stats["facts"],
        stats["cursor"],
        stats["rsvps_created"],
    )
    return stats
