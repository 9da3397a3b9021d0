"""Error kinds raised by the series engine."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date


class SeriesError(Exception):
    """Base class for series engine errors."""


class InvalidRecurrenceRule(SeriesError):
    """Raised when a rule string is malformed or uses unsupported constructs."""

    def __init__(self, token: str, message: str):
        self.token = token
        self.message = message
        super().__init__(f"{token}: {message}")


class SeriesNotFound(SeriesError):
    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Series not found: {key}")


class InstanceNotFound(SeriesError):
    def __init__(self, series_key: str, instance_date: date):
        self.series_key = series_key
        self.instance_date = instance_date
        super().__init__(
            f"No instance of series {series_key} on {instance_date.isoformat()}"
        )


class NotAuthorized(SeriesError):
    """Raised when a non-owner attempts to mutate a series."""


class MaterializationRace(SeriesError):
    """Another writer created the same ``(series_id, instance_date)`` first."""

    def __init__(self, series_id: str, instance_date: date):
        self.series_id = series_id
        self.instance_date = instance_date
        super().__init__(
            f"Instance for series {series_id} on {instance_date.isoformat()} "
            "already exists"
        )


@dataclass(frozen=True)
class InstanceFailure:
    instance_id: str
    instance_date: date
    reason: str

    def as_dict(self) -> dict:
        return {
            "instance_id": self.instance_id,
            "instance_date": self.instance_date.isoformat(),
            "reason": self.reason,
        }


class PartialScopeFailure(SeriesError):
    """One or more instances could not be updated or cancelled.

    Returned alongside an otherwise committed result rather than raised.
    """

    def __init__(self, failures: list[InstanceFailure]):
        self.failures = list(failures)
        super().__init__(
            f"{len(self.failures)} instance(s) were not updated: "
            + ", ".join(f.instance_date.isoformat() for f in self.failures)
        )

    def as_warnings(self) -> list[dict]:
        return [failure.as_dict() for failure in self.failures]
