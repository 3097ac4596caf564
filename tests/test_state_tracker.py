from __future__ import annotations

import itertools
from datetime import UTC, datetime, timedelta

import pytest

from geofleet.exceptions import UnknownVehicleError
from geofleet.models.position import VehiclePosition
from geofleet.models.vehicle import Membership, Vehicle, VehicleStatus
from geofleet.state.policy import IngestOutcome, classify_order, derive_status
from geofleet.state.tracker import VehicleStateTracker

T0 = datetime(2026, 3, 2, 8, 0, tzinfo=UTC)

# (from, to) pairs reachable through the status table.
ALLOWED = {
    (VehicleStatus.OFFLINE, VehicleStatus.MOVING),
    (VehicleStatus.OFFLINE, VehicleStatus.IDLE),
    (VehicleStatus.OFFLINE, VehicleStatus.STOPPED),
    (VehicleStatus.MOVING, VehicleStatus.IDLE),
    (VehicleStatus.IDLE, VehicleStatus.IDLE),
    *((s, VehicleStatus.MOVING) for s in VehicleStatus),
    *((s, VehicleStatus.STOPPED) for s in VehicleStatus),
    *((s, VehicleStatus.OFFLINE) for s in VehicleStatus),
}


def _pos(minute: float, speed: float = 0.0, ignition: bool | None = None, vehicle_id: str = "V1") -> VehiclePosition:
    return VehiclePosition(
        vehicle_id=vehicle_id,
        latitude=52.0,
        longitude=4.0,
        speed=speed,
        timestamp=T0 + timedelta(minutes=minute),
        ignition=ignition,
    )


def test_classify_order() -> None:
    assert classify_order(None, T0) == IngestOutcome.ACCEPTED
    assert classify_order(T0, T0 + timedelta(seconds=1)) == IngestOutcome.ACCEPTED
    assert classify_order(T0, T0) == IngestOutcome.DUPLICATE
    assert classify_order(T0, T0 - timedelta(seconds=1)) == IngestOutcome.OUT_OF_ORDER


@pytest.mark.parametrize(
    ("previous", "speed", "ignition", "expected"),
    [
        (VehicleStatus.OFFLINE, 50, True, VehicleStatus.MOVING),
        (VehicleStatus.STOPPED, 50, False, VehicleStatus.MOVING),
        (VehicleStatus.MOVING, 2, True, VehicleStatus.IDLE),
        (VehicleStatus.IDLE, 0, True, VehicleStatus.IDLE),
        (VehicleStatus.MOVING, 0, False, VehicleStatus.STOPPED),
        (VehicleStatus.STOPPED, 0, True, VehicleStatus.STOPPED),
        (VehicleStatus.OFFLINE, 0, True, VehicleStatus.IDLE),
        (VehicleStatus.OFFLINE, 0, False, VehicleStatus.STOPPED),
        (VehicleStatus.MOVING, 5, True, VehicleStatus.IDLE),
    ],
)
def test_derive_status_table(previous: VehicleStatus, speed: float, ignition: bool, expected: VehicleStatus) -> None:
    assert derive_status(previous, speed=speed, ignition=ignition, moving_threshold_kmh=5.0) == expected


def test_all_position_sequences_follow_transition_table() -> None:
    samples = [(0.0, None), (0.0, True), (0.0, False), (40.0, None), (3.0, True)]
    for sequence in itertools.product(samples, repeat=4):
        tracker = VehicleStateTracker()
        status = VehicleStatus.OFFLINE
        for minute, (speed, ignition) in enumerate(sequence):
            change = tracker.apply(_pos(minute, speed, ignition))
            assert (status, change.status) in ALLOWED or status == change.status
            status = change.status
        tracker.sweep(T0 + timedelta(hours=1))
        assert tracker.get("V1").status == VehicleStatus.OFFLINE


def test_auto_registers_unknown_vehicle_with_default_limit() -> None:
    tracker = VehicleStateTracker(default_speed_limit_kmh=90)
    tracker.apply(_pos(0, 20))
    state = tracker.get("V1")
    assert state.speed_limit == 90
    assert state.status == VehicleStatus.MOVING
    assert state.ignition is True


def test_strict_mode_rejects_unknown_vehicle_without_mutation() -> None:
    tracker = VehicleStateTracker(strict=True)
    with pytest.raises(UnknownVehicleError):
        tracker.apply(_pos(0, 20))
    assert tracker.vehicle_ids() == []


def test_register_keeps_live_state() -> None:
    tracker = VehicleStateTracker()
    tracker.register(Vehicle(id="V1", name="Van", speed_limit=60))
    tracker.apply(_pos(0, 20))
    tracker.register(Vehicle(id="V1", name="Van 1", speed_limit=70))
    state = tracker.get("V1")
    assert state.name == "Van 1"
    assert state.speed_limit == 70
    assert state.last_position is not None


def test_duplicate_is_ignored() -> None:
    tracker = VehicleStateTracker()
    tracker.apply(_pos(0, 20))
    change = tracker.apply(_pos(0, 20))
    assert change.outcome == IngestOutcome.DUPLICATE
    assert len(tracker.get("V1").history) == 1


def test_conflicting_duplicate_keeps_first_report() -> None:
    tracker = VehicleStateTracker()
    tracker.apply(_pos(0, 20))
    change = tracker.apply(_pos(0, 0, ignition=False))
    assert change.outcome == IngestOutcome.DUPLICATE
    state = tracker.get("V1")
    assert state.status == VehicleStatus.MOVING
    assert state.last_position is not None and state.last_position.speed == 20


def test_out_of_order_goes_to_history_only() -> None:
    tracker = VehicleStateTracker()
    tracker.apply(_pos(5, 30))
    change = tracker.apply(_pos(2, 0, ignition=False))
    assert change.outcome == IngestOutcome.OUT_OF_ORDER
    state = tracker.get("V1")
    assert state.status == VehicleStatus.MOVING
    assert state.last_update == T0 + timedelta(minutes=5)
    assert [e.out_of_order for e in state.history] == [False, True]


def test_history_is_bounded() -> None:
    tracker = VehicleStateTracker(history_size=3)
    for minute in range(5):
        tracker.apply(_pos(minute, 20))
    history = tracker.get("V1").history
    assert [e.position.timestamp for e in history] == [T0 + timedelta(minutes=m) for m in (2, 3, 4)]


def test_sweep_marks_silent_vehicles_offline_once() -> None:
    tracker = VehicleStateTracker(offline_timeout_s=300)
    tracker.apply(_pos(0, 20, vehicle_id="A"))
    tracker.apply(_pos(4, 20, vehicle_id="B"))
    now = T0 + timedelta(minutes=5)
    assert tracker.sweep(now) == ["A"]
    assert tracker.sweep(now) == []
    assert tracker.get("A").status == VehicleStatus.OFFLINE
    assert tracker.get("B").status == VehicleStatus.MOVING


def test_offline_vehicle_re_evaluates_on_new_position() -> None:
    tracker = VehicleStateTracker(offline_timeout_s=300)
    tracker.apply(_pos(0, 20))
    tracker.sweep(T0 + timedelta(minutes=10))
    change = tracker.apply(_pos(11, 0))
    assert change.previous_status == VehicleStatus.OFFLINE
    assert change.status == VehicleStatus.IDLE


def test_snapshot_is_a_deep_copy() -> None:
    tracker = VehicleStateTracker()
    tracker.apply(_pos(0, 20))
    tracker.set_membership("V1", {"g1": Membership.INSIDE})
    snap = tracker.snapshot("V1")
    snap.membership["g1"] = Membership.OUTSIDE
    snap.history.clear()
    state = tracker.get("V1")
    assert state.membership_of("g1") == Membership.INSIDE
    assert len(state.history) == 1


def test_get_unknown_vehicle_raises() -> None:
    with pytest.raises(UnknownVehicleError):
        VehicleStateTracker().get("nope")


def test_forget_geofence_drops_membership() -> None:
    tracker = VehicleStateTracker()
    tracker.apply(_pos(0))
    tracker.set_membership("V1", {"g1": Membership.INSIDE, "g2": Membership.OUTSIDE})
    tracker.forget_geofence("g1")
    assert tracker.get("V1").membership == {"g2": Membership.OUTSIDE}
