"""Explicit interval records for continuous-condition rules.

An interval is opened on the sample that starts the condition (entering a
geofence, exceeding the speed limit) and closed on the sample that ends it.
Alerts raised inside an interval are keyed by the interval start, which is
what makes re-processing a position idempotent.
"""

from __future__ import annotations

import dataclasses
from datetime import datetime

from geofleet.models.position import VehiclePosition


def interval_key(vehicle_id: str, scope: str, rule_index: int | str, started_at: datetime) -> str:
    """Stable dedupe key for an alert raised within one interval."""
    return f"{vehicle_id}|{scope}|{rule_index}|{started_at.isoformat()}"


@dataclasses.dataclass
class InsideInterval:
    """Continuous presence of one vehicle inside one geofence."""

    geofence_id: str
    started_at: datetime
    fired: set[int] = dataclasses.field(default_factory=set)
    """Indices of rules that already alerted in this interval."""
    pending: dict[int, datetime] = dataclasses.field(default_factory=dict)
    """Time-violation rules whose window presence started at the given time."""

    def inside_for(self, at: datetime) -> float:
        return (at - self.started_at).total_seconds()


@dataclasses.dataclass
class SpeedInterval:
    """Consecutive over-limit samples of one vehicle."""

    vehicle_id: str
    vehicle_name: str
    speed_limit: int
    started_at: datetime
    latitude: float
    longitude: float
    last_over_at: datetime
    max_speed: float

    @classmethod
    def open(cls, position: VehiclePosition, *, vehicle_name: str, speed_limit: int) -> SpeedInterval:
        return cls(
            vehicle_id=position.vehicle_id,
            vehicle_name=vehicle_name,
            speed_limit=speed_limit,
            started_at=position.timestamp,
            latitude=position.latitude,
            longitude=position.longitude,
            last_over_at=position.timestamp,
            max_speed=position.speed,
        )

    def extend(self, position: VehiclePosition) -> None:
        self.last_over_at = position.timestamp
        self.max_speed = max(self.max_speed, position.speed)

    @property
    def excess(self) -> float:
        return self.max_speed - self.speed_limit

    @property
    def duration(self) -> float:
        return (self.last_over_at - self.started_at).total_seconds()
