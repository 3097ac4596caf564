"""Deterministic vehicle status policy.

Pure functions only: the tracker decides *when* to apply them, this module
decides *what* the answer is.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from geofleet.models.position import VehiclePosition
from geofleet.models.vehicle import VehicleStatus


class IngestOutcome(StrEnum):
    ACCEPTED = "accepted"
    OUT_OF_ORDER = "out_of_order"
    DUPLICATE = "duplicate"


def classify_order(last_timestamp: datetime | None, incoming: datetime) -> IngestOutcome:
    """Place *incoming* relative to the last accepted timestamp of a vehicle."""
    if last_timestamp is None or incoming > last_timestamp:
        return IngestOutcome.ACCEPTED
    if incoming == last_timestamp:
        return IngestOutcome.DUPLICATE
    return IngestOutcome.OUT_OF_ORDER


def resolve_ignition(position: VehiclePosition, previous: bool, moving_threshold_kmh: float) -> bool:
    """Reported ignition wins; motion implies ignition on; otherwise keep the last known value."""
    if position.ignition is not None:
        return position.ignition
    if position.speed > moving_threshold_kmh:
        return True
    return previous


def derive_status(
    previous: VehicleStatus,
    *,
    speed: float,
    ignition: bool,
    moving_threshold_kmh: float,
) -> VehicleStatus:
    """Next status after a position.

    | from        | event                              | to      |
    |-------------|------------------------------------|---------|
    | any         | speed > threshold                  | moving  |
    | any         | ignition off                       | stopped |
    | moving/idle | speed <= threshold, ignition on    | idle    |
    | offline     | speed <= threshold, ignition on    | idle    |
    | stopped     | speed <= threshold, ignition on    | stopped |
    """
    if speed > moving_threshold_kmh:
        return VehicleStatus.MOVING
    if not ignition:
        return VehicleStatus.STOPPED
    if previous == VehicleStatus.STOPPED:
        return VehicleStatus.STOPPED
    return VehicleStatus.IDLE


def is_offline(last_update: datetime | None, now: datetime, offline_timeout_s: float) -> bool:
    if last_update is None:
        return False
    return (now - last_update).total_seconds() >= offline_timeout_s
