"""Geofence shapes and rules.

Shapes and rules are closed tagged variants: pydantic discriminated unions
keyed by ``type``.  Code that consumes them uses ``match`` over the concrete
classes so that a new variant cannot be silently ignored.
"""

from __future__ import annotations

from datetime import time
from typing import Annotated, Any, Literal

from pydantic import Field, field_validator, model_validator

from geofleet.models._base import FleetBaseModel, UtcTimestamp


class Coordinate(FleetBaseModel):
    latitude: float = Field(ge=-90.0, le=90.0)
    longitude: float = Field(ge=-180.0, le=180.0)


class CircleShape(FleetBaseModel):
    type: Literal["circle"] = "circle"
    center: Coordinate
    radius: float = Field(gt=0)
    """Radius in metres."""


class PolygonShape(FleetBaseModel):
    type: Literal["polygon"] = "polygon"
    points: list[Coordinate] = Field(min_length=3)

    @property
    def vertices(self) -> list[tuple[float, float]]:
        return [(p.latitude, p.longitude) for p in self.points]


GeofenceShape = Annotated[CircleShape | PolygonShape, Field(discriminator="type")]


def _parse_time_of_day(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return time.fromisoformat(value.strip())
        except ValueError as exc:
            raise ValueError(f"invalid time of day: {value!r}") from exc
    return value


class EntryRule(FleetBaseModel):
    type: Literal["entry"] = "entry"
    enabled: bool = True


class ExitRule(FleetBaseModel):
    type: Literal["exit"] = "exit"
    enabled: bool = True


class DwellRule(FleetBaseModel):
    type: Literal["dwell"] = "dwell"
    enabled: bool = True
    dwell_time_minutes: float

    @field_validator("dwell_time_minutes")
    @classmethod
    def _positive_dwell(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("dwell rules require dwellTimeMinutes > 0")
        return value

    @property
    def dwell_seconds(self) -> float:
        return self.dwell_time_minutes * 60.0


class TimeViolationRule(FleetBaseModel):
    """Presence inside the geofence during a recurring daily window.

    ``start_time``/``end_time`` are wall-clock times in the engine's
    configured zone.  ``tolerance_seconds`` is a grace period: presence has
    to last that long before it is flagged, and the flag may still land up
    to that long past ``end_time``.
    """

    type: Literal["time_violation"] = "time_violation"
    enabled: bool = True
    start_time: time
    end_time: time
    tolerance_seconds: float = Field(default=0.0, ge=0)

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def _parse_times(cls, value: Any) -> Any:
        return _parse_time_of_day(value)

    @model_validator(mode="after")
    def _check_window(self) -> TimeViolationRule:
        if self.start_time >= self.end_time:
            raise ValueError("time_violation rules require startTime < endTime")
        return self


GeofenceRule = Annotated[
    EntryRule | ExitRule | DwellRule | TimeViolationRule,
    Field(discriminator="type"),
]


class Geofence(FleetBaseModel):
    """A named region with rules.

    Accepts either a nested ``shape`` or the flat row layout used by the
    geofences table (``type`` + ``center``/``radius`` or ``points``).
    """

    id: str
    name: str = ""
    description: str | None = None
    shape: GeofenceShape
    active: bool = True
    vehicle_ids: list[str] = Field(default_factory=list)
    rules: list[GeofenceRule] = Field(default_factory=list)
    last_triggered: UtcTimestamp | None = None
    color: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _lift_flat_shape(cls, values: Any) -> Any:
        if not isinstance(values, dict) or "shape" in values:
            return values
        shape_type = values.get("type")
        if shape_type not in ("circle", "polygon"):
            return values
        lifted = {k: v for k, v in values.items() if k not in ("type", "center", "radius", "points")}
        if shape_type == "circle":
            lifted["shape"] = {"type": "circle", "center": values.get("center"), "radius": values.get("radius")}
        else:
            lifted["shape"] = {"type": "polygon", "points": values.get("points")}
        return lifted

    def applies_to(self, vehicle_id: str) -> bool:
        return self.active and (not self.vehicle_ids or vehicle_id in self.vehicle_ids)

    @property
    def display_name(self) -> str:
        return self.name or self.id
