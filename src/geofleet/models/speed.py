"""Speed violation records and aggregated statistics."""

from __future__ import annotations

from datetime import date, datetime

from pydantic import Field

from geofleet.models._base import FleetBaseModel, UtcTimestamp
from geofleet.models.alert import new_id


class SpeedViolation(FleetBaseModel):
    """One closed violation interval.

    ``speed`` is the maximum observed speed, ``timestamp`` and the
    coordinates are those of the first over-limit sample, ``duration`` spans
    first to last over-limit sample in seconds.
    """

    id: str = Field(default_factory=new_id)
    vehicle_id: str
    vehicle_name: str
    speed: float
    speed_limit: int
    excess_speed: float
    timestamp: UtcTimestamp
    latitude: float
    longitude: float
    duration: float = 0.0


class DailyViolationCount(FleetBaseModel):
    day: date = Field(alias="date")
    count: int


class TopViolator(FleetBaseModel):
    vehicle_id: str
    vehicle_name: str
    total_violations: int
    average_excess_speed: float
    last_violation: datetime


class SpeedStats(FleetBaseModel):
    total_violations: int = 0
    vehicles_with_violations: int = 0
    average_excess_speed: float = 0.0
    violations_by_day: list[DailyViolationCount] = Field(default_factory=list)
    top_violators: list[TopViolator] = Field(default_factory=list)
