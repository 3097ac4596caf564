"""Persistence operations and the backend interface."""

from __future__ import annotations

import dataclasses
from datetime import datetime
from enum import StrEnum
from typing import Any, Protocol

from geofleet.models.alert import Alert
from geofleet.models.speed import SpeedViolation
from geofleet.models.trip import Trip


class OpKind(StrEnum):
    INSERT_ALERT = "insert_alert"
    MARK_ALERT_READ = "mark_alert_read"
    MARK_ALL_ALERTS_READ = "mark_all_alerts_read"
    CLEAR_READ_ALERTS = "clear_read_alerts"
    INSERT_TRIP = "insert_trip"
    INSERT_SPEED_VIOLATION = "insert_speed_violation"
    UPDATE_GEOFENCE_TRIGGERED = "update_geofence_triggered"


@dataclasses.dataclass(frozen=True)
class PersistenceOp:
    """One durable write, queued until a backend accepts it."""

    kind: OpKind
    payload: Any = None

    @classmethod
    def insert_alert(cls, alert: Alert) -> PersistenceOp:
        return cls(OpKind.INSERT_ALERT, alert)

    @classmethod
    def mark_alert_read(cls, alert_id: str) -> PersistenceOp:
        return cls(OpKind.MARK_ALERT_READ, alert_id)

    @classmethod
    def mark_all_alerts_read(cls) -> PersistenceOp:
        return cls(OpKind.MARK_ALL_ALERTS_READ)

    @classmethod
    def clear_read_alerts(cls) -> PersistenceOp:
        return cls(OpKind.CLEAR_READ_ALERTS)

    @classmethod
    def insert_trip(cls, trip: Trip) -> PersistenceOp:
        return cls(OpKind.INSERT_TRIP, trip)

    @classmethod
    def insert_speed_violation(cls, violation: SpeedViolation) -> PersistenceOp:
        return cls(OpKind.INSERT_SPEED_VIOLATION, violation)

    @classmethod
    def update_geofence_triggered(cls, geofence_id: str, timestamp: datetime) -> PersistenceOp:
        return cls(OpKind.UPDATE_GEOFENCE_TRIGGERED, (geofence_id, timestamp))


class PersistenceBackend(Protocol):
    """Structural interface of a durable store.

    Implementations raise :class:`~geofleet.exceptions.PersistenceError`
    for failures worth retrying.
    """

    async def write(self, op: PersistenceOp) -> None: ...
