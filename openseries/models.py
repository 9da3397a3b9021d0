"""SQLAlchemy models for OpenSeries."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

from .enums import (
    ExceptionType,
    FactKind,
    InstanceStatus,
    RSVPSource,
    SeriesStatus,
)
from .utils import utcnow

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return utcnow()


def _enum(enum_cls):
    return Enum(
        enum_cls,
        native_enum=False,
        create_constraint=False,
        length=16,
        values_callable=lambda members: [member.value for member in members],
    )


class Meta(Base):
    __tablename__ = "meta"

    key = Column(String(128), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)


class Series(Base):
    __tablename__ = "event_series"

    id = Column(String(36), primary_key=True, default=_uuid)
    slug = Column(String(128), nullable=False, unique=True)
    owner_id = Column(String(64), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    location = Column(String(255), nullable=True)
    capacity = Column(Integer, nullable=True)
    rule = Column(String(255), nullable=False)
    anchor_date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    until_date = Column(Date, nullable=True)
    occurrence_count = Column(Integer, nullable=True)
    status = Column(_enum(SeriesStatus), nullable=False, default=SeriesStatus.ACTIVE)
    instances_generated_until = Column(Date, nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)
    last_modified = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    instances = relationship(
        "Instance",
        back_populates="series",
        order_by="Instance.instance_date",
    )
    exceptions = relationship(
        "SeriesException",
        back_populates="series",
        cascade="all, delete-orphan",
        order_by="SeriesException.original_date",
    )
    subscriptions = relationship(
        "SeriesSubscription",
        back_populates="series",
        cascade="all, delete-orphan",
    )

    @property
    def is_active(self) -> bool:
        return self.status == SeriesStatus.ACTIVE


class Instance(Base):
    """One concrete, bookable occurrence of a series."""

    __tablename__ = "events"
    __table_args__ = (
        UniqueConstraint("series_id", "instance_date", name="uq_events_series_date"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    series_id = Column(String(36), ForeignKey("event_series.id"), nullable=False)
    slug = Column(String(160), nullable=False)
    owner_id = Column(String(64), nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    location = Column(String(255), nullable=True)
    capacity = Column(Integer, nullable=True)
    instance_date = Column(Date, nullable=False)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    is_exception = Column(Boolean, default=False, nullable=False)
    status = Column(
        _enum(InstanceStatus), nullable=False, default=InstanceStatus.PUBLISHED
    )
    created_at = Column(DateTime, default=_now, nullable=False)
    last_modified = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    series = relationship("Series", back_populates="instances")
    rsvps = relationship(
        "InstanceRSVP", back_populates="instance", cascade="all, delete-orphan"
    )

    @property
    def yes_count(self) -> int:
        return sum(1 for r in self.rsvps if r.attendance_status == "yes")


class SeriesException(Base):
    __tablename__ = "series_exceptions"
    __table_args__ = (
        UniqueConstraint(
            "series_id", "original_date", name="uq_series_exceptions_series_date"
        ),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    series_id = Column(String(36), ForeignKey("event_series.id"), nullable=False)
    original_date = Column(Date, nullable=False)
    exception_type = Column(_enum(ExceptionType), nullable=False)
    reason = Column(Text, nullable=True)
    created_by = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)

    series = relationship("Series", back_populates="exceptions")


class SeriesSubscription(Base):
    __tablename__ = "series_subscriptions"
    __table_args__ = (
        UniqueConstraint(
            "series_id", "user_id", name="uq_series_subscriptions_series_user"
        ),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    series_id = Column(String(36), ForeignKey("event_series.id"), nullable=False)
    user_id = Column(String(64), nullable=False)
    auto_rsvp = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)

    series = relationship("Series", back_populates="subscriptions")


class InstanceRSVP(Base):
    __tablename__ = "rsvps"
    __table_args__ = (
        UniqueConstraint("instance_id", "user_id", name="uq_rsvps_instance_user"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    instance_id = Column(String(36), ForeignKey("events.id"), nullable=False)
    user_id = Column(String(64), nullable=False)
    attendance_status = Column(String(16), nullable=False, default="yes")
    source = Column(_enum(RSVPSource), nullable=False, default=RSVPSource.MANUAL)
    created_at = Column(DateTime, default=_now, nullable=False)

    instance = relationship("Instance", back_populates="rsvps")


class InstanceFact(Base):
    """Append-only outbox of instance lifecycle facts."""

    __tablename__ = "instance_facts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(_enum(FactKind), nullable=False)
    instance_id = Column(String(36), nullable=False, index=True)
    series_id = Column(String(36), nullable=False, index=True)
    instance_date = Column(Date, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)
