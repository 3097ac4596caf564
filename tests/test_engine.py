from __future__ import annotations

import asyncio
import dataclasses
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from geofleet import (
    AlertType,
    EngineConfig,
    IngestOutcome,
    InvalidPositionError,
    RouteEventType,
    TelemetryEngine,
    UnknownGeofenceError,
    UnknownVehicleError,
    VehiclePosition,
    VehicleStatus,
)
from geofleet._geo import destination_point
from geofleet.alerts.sink import AlertChange
from geofleet.persistence.base import OpKind, PersistenceOp

T0 = datetime(2026, 3, 2, 8, 0, tzinfo=UTC)
NOW = T0 + timedelta(days=1)

DEPOT = {
    "id": "depot",
    "name": "Depot",
    "type": "circle",
    "center": {"latitude": 0, "longitude": 0},
    "radius": 100,
    "rules": [{"type": "entry", "enabled": True}, {"type": "exit", "enabled": True}],
}


@dataclasses.dataclass
class _RecordingBackend:
    ops: list[PersistenceOp] = dataclasses.field(default_factory=list)

    async def write(self, op: PersistenceOp) -> None:
        self.ops.append(op)

    def kinds(self) -> list[OpKind]:
        return [op.kind for op in self.ops]


def _engine(backend: _RecordingBackend | None = None, **config: Any) -> TelemetryEngine:
    return TelemetryEngine(
        EngineConfig(**config),
        vehicles=[{"id": "V1", "name": "Van 1", "speedLimit": 80}],
        geofences=[DEPOT],
        backend=backend,
        clock=lambda: NOW,
    )


def _at(minute: int, distance_m: float = 1000.0, *, speed: float = 10, vehicle_id: str = "V1") -> VehiclePosition:
    lat, lon = destination_point(0.0, 0.0, 90.0, distance_m)
    return VehiclePosition(
        vehicle_id=vehicle_id,
        latitude=lat,
        longitude=lon,
        speed=speed,
        timestamp=T0 + timedelta(minutes=minute),
    )


@pytest.mark.asyncio
async def test_entry_exit_alerts_and_route_events() -> None:
    backend = _RecordingBackend()
    async with _engine(backend) as engine:
        results = [await engine.ingest(_at(i, d)) for i, d in enumerate([150, 80, 50, 120])]
        assert [[a.type for a in r.alerts] for r in results] == [
            [],
            [AlertType.GEOFENCE_ENTRY],
            [],
            [AlertType.GEOFENCE_EXIT],
        ]
        assert engine.get_geofence("depot").last_triggered == T0 + timedelta(minutes=3)
        assert engine.unread_count() == 2

    (trip,) = engine.get_trips("V1")
    assert [e.type for e in trip.events] == [
        RouteEventType.DEPARTURE,
        RouteEventType.GEOFENCE_ENTRY,
        RouteEventType.GEOFENCE_EXIT,
        RouteEventType.ARRIVAL,
    ]
    assert backend.kinds().count(OpKind.INSERT_ALERT) == 2
    assert backend.kinds().count(OpKind.UPDATE_GEOFENCE_TRIGGERED) == 2
    assert backend.kinds()[-1] == OpKind.INSERT_TRIP


@pytest.mark.asyncio
async def test_reingesting_a_position_is_idempotent() -> None:
    engine = _engine()
    await engine.ingest(_at(0, 150))
    first = await engine.ingest(_at(1, 50))
    again = await engine.ingest(_at(1, 50))

    assert first.accepted and len(first.alerts) == 1
    assert again.outcome == IngestOutcome.DUPLICATE
    assert again.alerts == ()
    assert len(engine.list_alerts()) == 1
    assert len(engine.get_vehicle_state("V1").history) == 2


@pytest.mark.asyncio
async def test_out_of_order_position_goes_to_history_only() -> None:
    engine = _engine()
    await engine.ingest(_at(5, 150))
    late = await engine.ingest(_at(1, 50))
    assert late.outcome == IngestOutcome.OUT_OF_ORDER
    state = engine.get_vehicle_state("V1")
    assert state.last_position is not None
    assert state.last_position.timestamp == T0 + timedelta(minutes=5)
    assert state.history[-1].out_of_order is True
    assert engine.list_alerts() == []


@pytest.mark.asyncio
async def test_speed_scenario_through_engine() -> None:
    backend = _RecordingBackend()
    async with _engine(backend) as engine:
        results = [await engine.ingest(_at(i, speed=s)) for i, s in enumerate([70, 90, 95, 60])]

    speed_alerts = [a for r in results for a in r.alerts if a.type == AlertType.SPEED]
    assert len(speed_alerts) == 1
    assert speed_alerts[0].speed == 90
    assert results[3].speed_violation is not None
    assert results[3].speed_violation.speed == 95

    (violation,) = engine.get_speed_violations()
    assert violation.excess_speed == 15
    stats = engine.get_speed_stats()
    assert stats.total_violations == 1
    assert stats.top_violators[0].vehicle_name == "Van 1"
    assert OpKind.INSERT_SPEED_VIOLATION in backend.kinds()


@pytest.mark.asyncio
async def test_dwell_alert_fires_once_per_visit() -> None:
    engine = _engine()
    engine.upsert_geofence(
        {
            "id": "yard",
            "name": "Yard",
            "type": "circle",
            "center": {"latitude": 0, "longitude": 0},
            "radius": 100,
            "rules": [{"type": "dwell", "enabled": True, "dwellTimeMinutes": 5}],
        }
    )
    await engine.ingest(_at(0, 150))
    for minute in range(1, 10):
        await engine.ingest(_at(minute, 20, speed=0))

    dwell = engine.list_alerts(type=AlertType.GEOFENCE_DWELL)
    assert len(dwell) == 1
    assert dwell[0].geofence_id == "yard"
    assert dwell[0].timestamp == T0 + timedelta(minutes=6)


@pytest.mark.asyncio
async def test_invalid_position_mutates_nothing() -> None:
    engine = _engine()
    with pytest.raises(InvalidPositionError):
        await engine.ingest({"vehicleId": "V9", "latitude": 95, "longitude": 0, "timestamp": T0.isoformat()})
    with pytest.raises(InvalidPositionError):
        await engine.ingest({"vehicleId": "V1", "latitude": 0, "longitude": 0, "timestamp": "yesterday"})
    with pytest.raises(InvalidPositionError):
        await engine.ingest(_at(0).model_copy(update={"timestamp": NOW + timedelta(hours=1)}))
    assert engine.vehicle_ids() == ["V1"]
    assert engine.get_vehicle_state("V1").last_position is None


@pytest.mark.asyncio
async def test_unknown_vehicle_auto_registers_unless_strict() -> None:
    lenient = _engine()
    result = await lenient.ingest(_at(0, vehicle_id="V2"))
    assert result.accepted
    assert lenient.vehicle_ids() == ["V1", "V2"]

    strict = _engine(strict_vehicles=True)
    with pytest.raises(UnknownVehicleError):
        await strict.ingest(_at(0, vehicle_id="V2"))
    assert strict.vehicle_ids() == ["V1"]


@pytest.mark.asyncio
async def test_batch_reports_errors_in_place() -> None:
    engine = _engine()
    results = await engine.ingest_batch(
        [
            _at(0).to_wire(),
            {"vehicleId": "V1", "latitude": 0, "longitude": 200, "timestamp": T0.isoformat()},
            _at(1).to_wire(),
        ]
    )
    assert [type(r).__name__ for r in results] == ["IngestResult", "InvalidPositionError", "IngestResult"]


@pytest.mark.asyncio
async def test_sweep_marks_offline_and_closes_speed_interval() -> None:
    backend = _RecordingBackend()
    async with _engine(backend) as engine:
        await engine.ingest(_at(0, speed=120))
        assert engine.sweep_offline(T0 + timedelta(minutes=2)) == []
        assert engine.sweep_offline(T0 + timedelta(minutes=6)) == ["V1"]
        assert engine.get_vehicle_state("V1").status == VehicleStatus.OFFLINE
        assert engine.sweep_offline(T0 + timedelta(minutes=7)) == []

        (violation,) = engine.get_speed_violations(vehicle_id="V1")
        assert violation.duration == 0

        back = await engine.ingest(_at(8, speed=0))
        assert back.status == VehicleStatus.IDLE

    assert backend.kinds().count(OpKind.INSERT_SPEED_VIOLATION) == 1


@pytest.mark.asyncio
async def test_trip_closes_after_parking() -> None:
    backend = _RecordingBackend()
    async with _engine(backend) as engine:
        closed = []
        for minute, speed in enumerate([30, 30, 30] + [0] * 11):
            closed.extend((await engine.ingest(_at(minute, speed=speed))).closed_trips)
        assert len(closed) == 1
        assert engine.get_trips("V1") == closed
        assert engine.get_trips("V1", start_time=T0 + timedelta(hours=1)) == []

    assert backend.kinds().count(OpKind.INSERT_TRIP) == 1


@pytest.mark.asyncio
async def test_get_trips_unknown_vehicle() -> None:
    with pytest.raises(UnknownVehicleError):
        _engine().get_trips("nope")


@pytest.mark.asyncio
async def test_replay_trips_rebuilds_history() -> None:
    backend = _RecordingBackend()
    async with _engine(backend) as engine:
        positions = [_at(m, speed=s).to_wire() for m, s in enumerate([30, 30, 30] + [0] * 11)]
        trips = engine.replay_trips("V1", reversed(positions))
        assert len(trips) == 1
        assert engine.get_trips("V1") == trips
    assert backend.kinds() == [OpKind.INSERT_TRIP]


@pytest.mark.asyncio
async def test_alert_management_is_persisted() -> None:
    backend = _RecordingBackend()
    changes: list[AlertChange] = []
    engine = TelemetryEngine(
        vehicles=[{"id": "V1"}],
        geofences=[DEPOT],
        backend=backend,
        on_alert_change=lambda change, _alert: changes.append(change),
        clock=lambda: NOW,
    )
    async with engine:
        for i, d in enumerate([150, 50, 150, 50]):
            await engine.ingest(_at(i, d))
        alerts = engine.list_alerts()
        assert len(alerts) == 3
        engine.mark_read(alerts[0].id)
        assert engine.get_alert(alerts[0].id).read is True
        assert engine.mark_all_read() == 2
        assert engine.clear_read() == 3
        assert engine.list_alerts() == []

    management = {OpKind.MARK_ALERT_READ, OpKind.MARK_ALL_ALERTS_READ, OpKind.CLEAR_READ_ALERTS}
    assert [k for k in backend.kinds() if k in management] == [
        OpKind.MARK_ALERT_READ,
        OpKind.MARK_ALL_ALERTS_READ,
        OpKind.CLEAR_READ_ALERTS,
    ]
    assert changes.count(AlertChange.CREATED) == 3
    assert AlertChange.ALL_READ in changes


@pytest.mark.asyncio
async def test_removed_geofence_stops_alerting() -> None:
    engine = _engine()
    await engine.ingest(_at(0, 150))
    removed = engine.remove_geofence("depot")
    assert removed.id == "depot"
    result = await engine.ingest(_at(1, 50))
    assert result.alerts == ()
    assert "depot" not in engine.get_vehicle_state("V1").membership
    with pytest.raises(UnknownGeofenceError):
        engine.get_geofence("depot")
    assert engine.list_geofences() == []


@pytest.mark.asyncio
async def test_geofence_restricted_to_other_vehicles_is_ignored() -> None:
    engine = _engine()
    engine.upsert_geofence({**DEPOT, "vehicleIds": ["V2"]})
    await engine.ingest(_at(0, 150))
    assert (await engine.ingest(_at(1, 50))).alerts == ()


@pytest.mark.asyncio
async def test_concurrent_vehicles_are_independent() -> None:
    engine = _engine()
    vehicles = [f"V{n}" for n in range(1, 6)]

    async def drive(vehicle_id: str) -> None:
        for i, d in enumerate([150, 50, 150]):
            await engine.ingest(_at(i, d, vehicle_id=vehicle_id))

    await asyncio.gather(*(drive(v) for v in vehicles))
    for vehicle_id in vehicles:
        types = [a.type for a in engine.list_alerts(vehicle_id=vehicle_id)]
        assert types == [AlertType.GEOFENCE_EXIT, AlertType.GEOFENCE_ENTRY]


@pytest.mark.asyncio
async def test_speed_violations_split_across_silence_without_sweep() -> None:
    engine = _engine()
    results = [
        await engine.ingest(_at(minute, speed=speed))
        for minute, speed in ((0, 90), (60, 95), (61, 60))
    ]

    speed_alerts = [a for r in results for a in r.alerts if a.type == AlertType.SPEED]
    assert [a.speed for a in speed_alerts] == [90, 95]
    violations = engine.get_speed_violations(vehicle_id="V1")
    assert [(v.speed, v.duration) for v in violations] == [(95, 0), (90, 0)]
    assert engine.get_speed_stats().total_violations == 2


@pytest.mark.asyncio
async def test_replay_trips_registers_unknown_vehicle() -> None:
    engine = TelemetryEngine(clock=lambda: NOW)
    positions = [_at(m, speed=s, vehicle_id="V7") for m, s in enumerate([30, 30, 30] + [0] * 11)]
    trips = engine.replay_trips("V7", positions)
    assert len(trips) == 1
    assert engine.get_trips("V7") == trips
    assert "V7" in engine.vehicle_ids()


@pytest.mark.asyncio
async def test_replay_trips_strict_rejects_unknown_vehicle() -> None:
    engine = _engine(strict_vehicles=True)
    with pytest.raises(UnknownVehicleError):
        engine.replay_trips("V7", [_at(0, speed=30, vehicle_id="V7")])
    assert engine.vehicle_ids() == ["V1"]


@pytest.mark.asyncio
async def test_replaying_twice_persists_the_same_trip_rows() -> None:
    backend = _RecordingBackend()
    positions = [_at(m, speed=s).to_wire() for m, s in enumerate([30, 30, 30] + [0] * 11)]
    async with _engine(backend) as engine:
        first = engine.replay_trips("V1", positions)
        second = engine.replay_trips("V1", positions)

    assert [t.id for t in first] == [t.id for t in second]
    written = [op.payload for op in backend.ops if op.kind == OpKind.INSERT_TRIP]
    assert len({t.id for t in written}) == 1
    assert len({e.id for t in written for e in t.events}) == len(first[0].events)


@pytest.mark.asyncio
async def test_live_and_replayed_trip_share_an_id() -> None:
    positions = [_at(m, speed=s) for m, s in enumerate([30, 30, 30] + [0] * 11)]
    live = _engine()
    closed = []
    for position in positions:
        closed.extend((await live.ingest(position)).closed_trips)
    replayed = _engine().replay_trips("V1", positions)
    assert [t.id for t in closed] == [t.id for t in replayed]


@pytest.mark.asyncio
async def test_sweep_keeps_dedupe_of_open_speed_interval() -> None:
    engine = _engine()
    await engine.ingest(_at(0, speed=120))
    engine.sweep_offline(T0 + timedelta(minutes=2))
    later = await engine.ingest(_at(3, speed=125))
    assert later.alerts == ()
    assert len(engine.list_alerts(type=AlertType.SPEED)) == 1
