"""Alert records and retrieval filter."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import StrEnum

from pydantic import Field

from geofleet.models._base import FleetBaseModel, UtcTimestamp


class AlertType(StrEnum):
    SPEED = "speed"
    GEOFENCE_ENTRY = "geofence_entry"
    GEOFENCE_EXIT = "geofence_exit"
    GEOFENCE_DWELL = "geofence_dwell"
    GEOFENCE_TIME_VIOLATION = "geofence_time_violation"
    SYSTEM = "system"


class AlertPriority(StrEnum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


def new_id() -> str:
    return str(uuid.uuid4())


class Alert(FleetBaseModel):
    """An emitted alert.

    Append-only: the sink replaces the record with a copy when ``read``
    flips, nothing else ever changes after creation.
    """

    id: str = Field(default_factory=new_id)
    type: AlertType
    priority: AlertPriority
    vehicle_id: str
    vehicle_name: str
    message: str
    timestamp: UtcTimestamp
    read: bool = False
    latitude: float | None = None
    longitude: float | None = None
    speed: float | None = None
    speed_limit: int | None = None
    geofence_id: str | None = None
    geofence_name: str | None = None
    dedupe_key: str | None = Field(default=None, exclude=True)
    """Identity of the (vehicle, rule, interval) that produced the alert."""


class AlertFilter(FleetBaseModel):
    """Criteria for :meth:`geofleet.alerts.sink.AlertSink.list`.  Unset fields match anything."""

    vehicle_id: str | None = None
    type: AlertType | None = None
    priority: AlertPriority | None = None
    unread_only: bool = False
    since: UtcTimestamp | None = None
    until: UtcTimestamp | None = None
    limit: int | None = Field(default=None, ge=1)

    def matches(self, alert: Alert) -> bool:
        if self.vehicle_id is not None and alert.vehicle_id != self.vehicle_id:
            return False
        if self.type is not None and alert.type != self.type:
            return False
        if self.priority is not None and alert.priority != self.priority:
            return False
        if self.unread_only and alert.read:
            return False
        if self.since is not None and alert.timestamp < self.since:
            return False
        return not (self.until is not None and alert.timestamp > self.until)


def alert_sort_key(alert: Alert) -> tuple[datetime, str]:
    return (alert.timestamp, alert.id)
