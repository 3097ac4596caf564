"""Trip, location point and route event models."""

from __future__ import annotations

from enum import StrEnum

from pydantic import Field

from geofleet.models._base import FleetBaseModel, UtcTimestamp
from geofleet.models.alert import new_id
from geofleet.models.position import VehiclePosition


class RouteEventType(StrEnum):
    DEPARTURE = "departure"
    ARRIVAL = "arrival"
    STOP = "stop"
    SPEED_VIOLATION = "speed_violation"
    GEOFENCE_ENTRY = "geofence_entry"
    GEOFENCE_EXIT = "geofence_exit"


class LocationPoint(FleetBaseModel):
    latitude: float
    longitude: float
    speed: float = 0.0
    heading: float = 0.0
    timestamp: UtcTimestamp
    accuracy: float | None = None

    @classmethod
    def from_position(cls, position: VehiclePosition) -> LocationPoint:
        return cls(
            latitude=position.latitude,
            longitude=position.longitude,
            speed=position.speed,
            heading=position.heading,
            timestamp=position.timestamp,
            accuracy=position.accuracy,
        )


class RouteEvent(FleetBaseModel):
    id: str = Field(default_factory=new_id)
    type: RouteEventType
    latitude: float
    longitude: float
    timestamp: UtcTimestamp
    duration: float | None = None
    """Seconds, for stops and speed violations."""
    speed: float | None = None
    speed_limit: int | None = None
    geofence_name: str | None = None
    address: str | None = None


class Trip(FleetBaseModel):
    """A finalized trip.

    Distances are metres, durations seconds, speeds km/h.
    ``travel_time + stopped_time`` equals ``end_time - start_time``.
    """

    id: str = Field(default_factory=new_id)
    vehicle_id: str
    start_time: UtcTimestamp
    end_time: UtcTimestamp
    total_distance: float = Field(default=0.0, ge=0)
    travel_time: float = 0.0
    stopped_time: float = 0.0
    average_speed: float = 0.0
    max_speed: float = 0.0
    stops_count: int = 0
    points: list[LocationPoint] = Field(default_factory=list)
    events: list[RouteEvent] = Field(default_factory=list)

    @property
    def duration(self) -> float:
        return (self.end_time - self.start_time).total_seconds()
