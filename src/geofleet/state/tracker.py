"""Per-vehicle live state.

This is the only component allowed to mutate :class:`VehicleState`.  The
engine serializes calls per vehicle; callers outside the engine only ever
see deep copies through :meth:`VehicleStateTracker.snapshot`.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Mapping
from datetime import datetime

from geofleet._constants import (
    DEFAULT_HISTORY_SIZE,
    DEFAULT_MOVING_THRESHOLD_KMH,
    DEFAULT_OFFLINE_TIMEOUT_S,
    DEFAULT_SPEED_LIMIT_KMH,
)
from geofleet.exceptions import UnknownVehicleError
from geofleet.models.position import VehiclePosition
from geofleet.models.vehicle import HistoryEntry, Membership, Vehicle, VehicleState, VehicleStatus
from geofleet.state.policy import (
    IngestOutcome,
    classify_order,
    derive_status,
    is_offline,
    resolve_ignition,
)

_logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class StateChange:
    """What a single position did to a vehicle's state."""

    vehicle_id: str
    outcome: IngestOutcome
    previous_status: VehicleStatus
    status: VehicleStatus
    position: VehiclePosition
    previous_position: VehiclePosition | None = None


class VehicleStateTracker:
    """In-memory table of vehicle id -> :class:`VehicleState`.

    Deterministic: the same sequence of positions and sweeps always yields
    the same states.
    """

    def __init__(
        self,
        *,
        moving_threshold_kmh: float = DEFAULT_MOVING_THRESHOLD_KMH,
        offline_timeout_s: float = DEFAULT_OFFLINE_TIMEOUT_S,
        history_size: int = DEFAULT_HISTORY_SIZE,
        default_speed_limit_kmh: int = DEFAULT_SPEED_LIMIT_KMH,
        strict: bool = False,
    ) -> None:
        self._moving_threshold = moving_threshold_kmh
        self._offline_timeout_s = offline_timeout_s
        self._history_size = history_size
        self._default_speed_limit = default_speed_limit_kmh
        self._strict = strict
        self._vehicles: dict[str, Vehicle] = {}
        self._states: dict[str, VehicleState] = {}

    def __contains__(self, vehicle_id: object) -> bool:
        return vehicle_id in self._states

    def register(self, vehicle: Vehicle) -> VehicleState:
        """Register or update a vehicle. Existing live state is kept."""
        self._vehicles[vehicle.id] = vehicle
        state = self._states.get(vehicle.id)
        if state is None:
            state = VehicleState(vehicle_id=vehicle.id)
            self._states[vehicle.id] = state
        state.name = vehicle.display_name
        state.speed_limit = vehicle.speed_limit
        return state

    def vehicle(self, vehicle_id: str) -> Vehicle:
        """Registry record of *vehicle_id*."""
        try:
            return self._vehicles[vehicle_id]
        except KeyError:
            raise UnknownVehicleError(vehicle_id) from None

    def _state(self, vehicle_id: str) -> VehicleState:
        state = self._states.get(vehicle_id)
        if state is not None:
            return state
        if self._strict:
            raise UnknownVehicleError(vehicle_id)
        _logger.info("Auto-registering vehicle %s (speed limit %s km/h)", vehicle_id, self._default_speed_limit)
        return self.register(Vehicle(id=vehicle_id, speed_limit=self._default_speed_limit))

    def ensure_registered(self, vehicle_id: str) -> VehicleState:
        """Live state of *vehicle_id*, auto-registering it unless strict.

        Raises
        ------
        UnknownVehicleError
            In strict mode, for a vehicle that was never registered.
        """
        return self._state(vehicle_id)

    def get(self, vehicle_id: str) -> VehicleState:
        """Live state of *vehicle_id*. Mutating the result mutates the tracker."""
        state = self._states.get(vehicle_id)
        if state is None:
            raise UnknownVehicleError(vehicle_id)
        return state

    def snapshot(self, vehicle_id: str) -> VehicleState:
        """Deep copy of the state of *vehicle_id*."""
        return self.get(vehicle_id).model_copy(deep=True)

    def vehicle_ids(self) -> list[str]:
        return sorted(self._states)

    def apply(self, position: VehiclePosition) -> StateChange:
        """Apply one validated position.

        Raises
        ------
        UnknownVehicleError
            In strict mode, before anything is mutated.
        """
        state = self._state(position.vehicle_id)
        previous_status = state.status
        previous_position = state.last_position
        last_ts = previous_position.timestamp if previous_position is not None else None
        outcome = classify_order(last_ts, position.timestamp)

        if outcome == IngestOutcome.DUPLICATE:
            assert previous_position is not None
            if previous_position.same_fix(position):
                _logger.debug("Duplicate position vehicle=%s ts=%s ignored", position.vehicle_id, position.timestamp)
            else:
                _logger.warning(
                    "Conflicting position for vehicle=%s at ts=%s ignored (first report wins)",
                    position.vehicle_id,
                    position.timestamp.isoformat(),
                )
            return StateChange(
                vehicle_id=position.vehicle_id,
                outcome=outcome,
                previous_status=previous_status,
                status=previous_status,
                position=position,
                previous_position=previous_position,
            )

        if outcome == IngestOutcome.OUT_OF_ORDER:
            _logger.warning(
                "Out-of-order position vehicle=%s ts=%s (last=%s); recorded in history only",
                position.vehicle_id,
                position.timestamp.isoformat(),
                last_ts.isoformat() if last_ts else None,
            )
            self._append_history(state, HistoryEntry(position=position, out_of_order=True))
            return StateChange(
                vehicle_id=position.vehicle_id,
                outcome=outcome,
                previous_status=previous_status,
                status=previous_status,
                position=position,
                previous_position=previous_position,
            )

        state.ignition = resolve_ignition(position, state.ignition, self._moving_threshold)
        state.status = derive_status(
            previous_status,
            speed=position.speed,
            ignition=state.ignition,
            moving_threshold_kmh=self._moving_threshold,
        )
        state.last_position = position
        state.last_update = position.timestamp
        self._append_history(state, HistoryEntry(position=position))

        if state.status != previous_status:
            _logger.debug("Vehicle %s status %s -> %s", position.vehicle_id, previous_status, state.status)

        return StateChange(
            vehicle_id=position.vehicle_id,
            outcome=outcome,
            previous_status=previous_status,
            status=state.status,
            position=position,
            previous_position=previous_position,
        )

    def _append_history(self, state: VehicleState, entry: HistoryEntry) -> None:
        state.history.append(entry)
        overflow = len(state.history) - self._history_size
        if overflow > 0:
            del state.history[:overflow]

    def set_membership(self, vehicle_id: str, membership: Mapping[str, Membership]) -> None:
        """Replace the cached geofence membership of *vehicle_id*."""
        self.get(vehicle_id).membership = dict(membership)

    def forget_geofence(self, geofence_id: str) -> None:
        """Drop cached membership for a removed geofence from every vehicle."""
        for state in self._states.values():
            state.membership.pop(geofence_id, None)

    def sweep(self, now: datetime) -> list[str]:
        """Mark silent vehicles offline.

        Returns the ids of vehicles that transitioned to ``offline`` in this
        sweep.
        """
        went_offline: list[str] = []
        for vehicle_id, state in self._states.items():
            if state.status == VehicleStatus.OFFLINE:
                continue
            if is_offline(state.last_update, now, self._offline_timeout_s):
                _logger.info("Vehicle %s offline (last update %s)", vehicle_id, state.last_update)
                state.status = VehicleStatus.OFFLINE
                went_offline.append(vehicle_id)
        return went_offline
