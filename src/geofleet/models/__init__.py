"""Data models for geofleet records."""

from geofleet.models._base import FleetBaseModel, UtcTimestamp, parse_timestamp
from geofleet.models.alert import Alert, AlertFilter, AlertPriority, AlertType
from geofleet.models.geofence import (
    CircleShape,
    Coordinate,
    DwellRule,
    EntryRule,
    ExitRule,
    Geofence,
    GeofenceRule,
    GeofenceShape,
    PolygonShape,
    TimeViolationRule,
)
from geofleet.models.position import VehiclePosition
from geofleet.models.speed import DailyViolationCount, SpeedStats, SpeedViolation, TopViolator
from geofleet.models.trip import LocationPoint, RouteEvent, RouteEventType, Trip
from geofleet.models.vehicle import HistoryEntry, Membership, Vehicle, VehicleState, VehicleStatus

__all__ = [
    "Alert",
    "AlertFilter",
    "AlertPriority",
    "AlertType",
    "CircleShape",
    "Coordinate",
    "DailyViolationCount",
    "DwellRule",
    "EntryRule",
    "ExitRule",
    "FleetBaseModel",
    "Geofence",
    "GeofenceRule",
    "GeofenceShape",
    "HistoryEntry",
    "LocationPoint",
    "Membership",
    "PolygonShape",
    "RouteEvent",
    "RouteEventType",
    "SpeedStats",
    "SpeedViolation",
    "TimeViolationRule",
    "TopViolator",
    "Trip",
    "UtcTimestamp",
    "Vehicle",
    "VehiclePosition",
    "VehicleState",
    "VehicleStatus",
    "parse_timestamp",
]
