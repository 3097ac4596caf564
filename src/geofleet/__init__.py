"""geofleet - Async telemetry and geofence engine for vehicle fleets."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("geofleet")
except PackageNotFoundError:
    __version__ = "0+local"
from geofleet.config import EngineConfig, MqttConfig, SupabaseConfig
from geofleet.engine import IngestResult, TelemetryEngine
from geofleet.exceptions import (
    GeofleetConfigError,
    GeofleetError,
    InvalidGeofenceError,
    InvalidPositionError,
    PersistenceError,
    UnknownAlertError,
    UnknownGeofenceError,
    UnknownVehicleError,
)
from geofleet.models import (
    Alert,
    AlertFilter,
    AlertPriority,
    AlertType,
    Geofence,
    Membership,
    RouteEvent,
    RouteEventType,
    SpeedStats,
    SpeedViolation,
    Trip,
    Vehicle,
    VehiclePosition,
    VehicleState,
    VehicleStatus,
)
from geofleet.state.policy import IngestOutcome

__all__ = [
    "__version__",
    "Alert",
    "AlertFilter",
    "AlertPriority",
    "AlertType",
    "EngineConfig",
    "Geofence",
    "GeofleetConfigError",
    "GeofleetError",
    "IngestOutcome",
    "IngestResult",
    "InvalidGeofenceError",
    "InvalidPositionError",
    "Membership",
    "MqttConfig",
    "PersistenceError",
    "RouteEvent",
    "RouteEventType",
    "SpeedStats",
    "SpeedViolation",
    "SupabaseConfig",
    "TelemetryEngine",
    "Trip",
    "UnknownAlertError",
    "UnknownGeofenceError",
    "UnknownVehicleError",
    "Vehicle",
    "VehiclePosition",
    "VehicleState",
    "VehicleStatus",
]
