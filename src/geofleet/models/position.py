"""Vehicle position report model."""

from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, Field, field_validator

from geofleet.models._base import FleetBaseModel, UtcTimestamp


class VehiclePosition(FleetBaseModel):
    """A single position report from a vehicle.

    Immutable once ingested.  Range checks (latitude, longitude, speed,
    clock skew) are applied by :func:`geofleet.ingestion.validate.validate_position`
    so that the engine can reject with
    :class:`~geofleet.exceptions.InvalidPositionError`.

    Parameters
    ----------
    vehicle_id : str
        Reporting vehicle.
    latitude : float
        Latitude in degrees.
    longitude : float
        Longitude in degrees.
    speed : float
        Ground speed in km/h.
    heading : float
        Course over ground in degrees.
    accuracy : float or None
        Horizontal accuracy in metres.
    timestamp : datetime
        Fix time, aware UTC.
    ignition : bool or None
        Ignition state if the tracker reports it.
    """

    vehicle_id: str = Field(validation_alias=AliasChoices("vehicleId", "vehicle_id", "deviceId", "id"))
    latitude: float = Field(validation_alias=AliasChoices("latitude", "lat"))
    longitude: float = Field(validation_alias=AliasChoices("longitude", "lng", "lon"))
    speed: float = Field(default=0.0, validation_alias=AliasChoices("speed", "currentSpeed", "current_speed"))
    heading: float = Field(default=0.0, validation_alias=AliasChoices("heading", "direction", "course"))
    accuracy: float | None = None
    timestamp: UtcTimestamp = Field(validation_alias=AliasChoices("timestamp", "time", "lastUpdate", "last_update"))
    ignition: bool | None = None

    @field_validator("vehicle_id", mode="before")
    @classmethod
    def _normalize_vehicle_id(cls, value: Any) -> str:
        text = str(value).strip()
        if not text:
            raise ValueError("vehicle_id must be non-empty")
        return text

    @field_validator("ignition", mode="before")
    @classmethod
    def _coerce_ignition(cls, value: Any) -> Any:
        if isinstance(value, str):
            normalized = value.strip().lower()
            if normalized in {"on", "1", "true"}:
                return True
            if normalized in {"off", "0", "false"}:
                return False
        return value

    def same_fix(self, other: VehiclePosition) -> bool:
        """Whether *other* reports the same fix (identical location, speed and time)."""
        return (
            self.timestamp == other.timestamp
            and self.latitude == other.latitude
            and self.longitude == other.longitude
            and self.speed == other.speed
        )
