"""Custom exception hierarchy for geofleet."""

from __future__ import annotations

from typing import Any


class GeofleetError(Exception):
    """Base exception for all geofleet errors."""


class GeofleetConfigError(GeofleetError):
    """Invalid or missing configuration."""


class InvalidPositionError(GeofleetError):
    """Position report is malformed or out of range.

    The engine never retries these; the caller decides whether to drop
    the report or fix and resubmit it.
    """

    def __init__(
        self,
        message: str,
        *,
        field: str = "",
        value: Any = None,
        vehicle_id: str | None = None,
    ) -> None:
        self.field = field
        self.value = value
        self.vehicle_id = vehicle_id
        super().__init__(message)


class UnknownVehicleError(GeofleetError):
    """Reference to a vehicle the engine has never seen."""

    def __init__(self, vehicle_id: str) -> None:
        self.vehicle_id = vehicle_id
        super().__init__(f"Unknown vehicle: {vehicle_id}")


class UnknownGeofenceError(GeofleetError):
    """Reference to a geofence that is not in the index."""

    def __init__(self, geofence_id: str) -> None:
        self.geofence_id = geofence_id
        super().__init__(f"Unknown geofence: {geofence_id}")


class UnknownAlertError(GeofleetError):
    """Reference to an alert id that is not in the sink."""

    def __init__(self, alert_id: str) -> None:
        self.alert_id = alert_id
        super().__init__(f"Unknown alert: {alert_id}")


class InvalidGeofenceError(GeofleetError):
    """Geofence shape or rule violates its invariants."""


class PersistenceError(GeofleetError):
    """Durable-store write failed (network, non-2xx, invalid response).

    Raised by persistence backends.  The persistence queue catches it and
    retries with exponential backoff; evaluation of new positions is never
    blocked by it.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        table: str = "",
    ) -> None:
        self.status_code = status_code
        self.table = table
        super().__init__(message)
