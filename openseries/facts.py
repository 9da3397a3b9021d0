"""Instance lifecycle facts.

Every create, update or cancel of an instance appends a row to the
``instance_facts`` outbox in the same transaction as the instance write.
Downstream collaborators (auto-RSVP fan-out, reminder scheduling) only read
this feed; nothing here calls into them.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import date

from sqlalchemy import select
from sqlalchemy.orm import Session

from .enums import FactKind
from .models import InstanceFact
from .utils import utcnow


def record_fact(
    session: Session,
    kind: FactKind,
    *,
    instance_id: str,
    series_id: str,
    instance_date: date,
) -> InstanceFact:
    fact = InstanceFact(
        kind=kind,
        instance_id=instance_id,
        series_id=series_id,
        instance_date=instance_date,
        created_at=utcnow(),
    )
    session.add(fact)
    return fact


def read_facts(
    session: Session,
    *,
    after_id: int = 0,
    limit: int = 100,
    kinds: Iterable[FactKind] | None = None,
    series_id: str | None = None,
) -> Sequence[InstanceFact]:
    """Return facts with ``id > after_id`` in emission order."""
    stmt = select(InstanceFact).where(InstanceFact.id > after_id)
    if kinds:
        stmt = stmt.where(InstanceFact.kind.in_(list(kinds)))
    if series_id:
        stmt = stmt.where(InstanceFact.series_id == series_id)
    stmt = stmt.order_by(InstanceFact.id.asc()).limit(max(limit, 0))
    return session.scalars(stmt).all()


def serialize_fact(fact: InstanceFact) -> dict:
    return {
        "id": fact.id,
        "kind": FactKind(fact.kind).value,
        "instance_id": fact.instance_id,
        "series_id": fact.series_id,
        "instance_date": fact.instance_date.isoformat(),
        "created_at": fact.created_at.isoformat(),
    }
