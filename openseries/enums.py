"""Tagged variants shared by the series engine."""

from __future__ import annotations

from enum import Enum


class SeriesStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"


class InstanceStatus(str, Enum):
    PUBLISHED = "published"
    CANCELLED = "cancelled"


class ExceptionType(str, Enum):
    """Per-date deviation from the template.

    ``SKIP`` suppresses the occurrence entirely. ``MODIFIED`` marks an instance
    that was edited by hand and must be left alone by automation.
    """

    SKIP = "skip"
    MODIFIED = "modified"


class UpdateScope(str, Enum):
    TEMPLATE_ONLY = "template-only"
    FUTURE = "future"
    ALL = "all"

    @property
    def propagates(self) -> bool:
        return self is not UpdateScope.TEMPLATE_ONLY


class CancelScope(str, Enum):
    FUTURE = "future"
    ALL = "all"


class FactKind(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    CANCELLED = "cancelled"


class RSVPSource(str, Enum):
    AUTO = "auto"
    MANUAL = "manual"
