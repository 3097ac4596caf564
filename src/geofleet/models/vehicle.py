"""Vehicle registry record and live vehicle state."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from geofleet._constants import DEFAULT_SPEED_LIMIT_KMH
from geofleet.models._base import FleetBaseModel
from geofleet.models.position import VehiclePosition


class VehicleStatus(StrEnum):
    MOVING = "moving"
    STOPPED = "stopped"
    IDLE = "idle"
    OFFLINE = "offline"


class Membership(StrEnum):
    """Cached relationship between a vehicle and one geofence."""

    INSIDE = "inside"
    OUTSIDE = "outside"
    UNKNOWN = "unknown"


class Vehicle(FleetBaseModel):
    """Vehicle as registered by the management surface."""

    id: str
    name: str = ""
    license_plate: str | None = None
    model: str | None = None
    speed_limit: int = Field(default=DEFAULT_SPEED_LIMIT_KMH, gt=0)

    @property
    def display_name(self) -> str:
        return self.name or self.id


class HistoryEntry(FleetBaseModel):
    """One recorded position, flagged when it arrived out of order."""

    position: VehiclePosition
    out_of_order: bool = False


class VehicleState(BaseModel):
    """Live state of one vehicle.

    Owned by :class:`~geofleet.state.tracker.VehicleStateTracker`; callers
    only ever receive deep copies.
    """

    model_config = ConfigDict(extra="forbid", populate_by_name=True, alias_generator=to_camel)

    vehicle_id: str
    name: str = ""
    status: VehicleStatus = VehicleStatus.OFFLINE
    ignition: bool = False
    last_position: VehiclePosition | None = None
    last_update: datetime | None = None
    history: list[HistoryEntry] = Field(default_factory=list)
    membership: dict[str, Membership] = Field(default_factory=dict)
    speed_limit: int = DEFAULT_SPEED_LIMIT_KMH

    def membership_of(self, geofence_id: str) -> Membership:
        return self.membership.get(geofence_id, Membership.UNKNOWN)
