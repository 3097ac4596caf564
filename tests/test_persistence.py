from __future__ import annotations

import asyncio
import dataclasses
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from aiohttp import test_utils, web

from geofleet.config import SupabaseConfig
from geofleet.exceptions import PersistenceError
from geofleet.models.alert import Alert, AlertPriority, AlertType
from geofleet.models.speed import SpeedViolation
from geofleet.models.trip import LocationPoint, RouteEvent, RouteEventType, Trip
from geofleet.persistence.base import OpKind, PersistenceOp
from geofleet.persistence.queue import PersistenceQueue, backoff_delay
from geofleet.persistence.supabase import (
    SupabaseBackend,
    alert_row,
    speed_violation_row,
    trip_row,
)

T0 = datetime(2026, 3, 2, 8, 0, tzinfo=UTC)


@dataclasses.dataclass
class _FlakyBackend:
    """Fails the first ``failures`` writes, then records every op."""

    failures: int = 0
    written: list[PersistenceOp] = dataclasses.field(default_factory=list)
    calls: int = 0

    async def write(self, op: PersistenceOp) -> None:
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise PersistenceError("unavailable", status_code=503, table="alerts")
        self.written.append(op)


def _alert() -> Alert:
    return Alert(
        type=AlertType.SPEED,
        priority=AlertPriority.CRITICAL,
        vehicle_id="V1",
        vehicle_name="Van 1",
        message="fast",
        timestamp=T0,
        speed=101.6,
        speed_limit=80,
    )


def _trip() -> Trip:
    points = [
        LocationPoint(latitude=0, longitude=0, speed=30, timestamp=T0),
        LocationPoint(latitude=0, longitude=0.01, speed=0, timestamp=T0 + timedelta(minutes=2)),
    ]
    return Trip(
        vehicle_id="V1",
        start_time=T0,
        end_time=T0 + timedelta(minutes=2),
        total_distance=1111.9,
        travel_time=120,
        average_speed=33.36,
        max_speed=30,
        points=points,
        events=[RouteEvent(type=RouteEventType.DEPARTURE, latitude=0, longitude=0, timestamp=T0)],
    )


def test_backoff_delay_doubles_and_caps() -> None:
    assert [backoff_delay(n, 0.5, 3.0) for n in range(1, 6)] == [0.5, 1.0, 2.0, 3.0, 3.0]


@pytest.mark.asyncio
async def test_queue_retries_with_backoff_until_written() -> None:
    delays: list[float] = []

    async def fake_sleep(delay: float) -> None:
        delays.append(delay)

    backend = _FlakyBackend(failures=3)
    queue = PersistenceQueue(backend, backoff_base_s=0.5, backoff_max_s=10, sleep=fake_sleep)
    queue.start()
    op = PersistenceOp.insert_alert(_alert())
    queue.submit(op)
    await asyncio.wait_for(queue.join(), timeout=1)
    await queue.stop()

    assert backend.written == [op]
    assert delays == [0.5, 1.0, 2.0]
    assert queue.failures == 3
    assert queue.written == 1


@pytest.mark.asyncio
async def test_queue_preserves_order() -> None:
    backend = _FlakyBackend(failures=1)
    queue = PersistenceQueue(backend, backoff_base_s=0.001, backoff_max_s=0.001)
    queue.start()
    ops = [PersistenceOp.mark_alert_read(str(n)) for n in range(5)]
    for op in ops:
        queue.submit(op)
    await asyncio.wait_for(queue.join(), timeout=1)
    await queue.stop()
    assert backend.written == ops


def test_queue_drops_oldest_when_full() -> None:
    queue = PersistenceQueue(_FlakyBackend(), capacity=2)
    for n in range(4):
        queue.submit(PersistenceOp.mark_alert_read(str(n)))
    assert len(queue) == 2
    assert queue.dropped == 2


@pytest.mark.asyncio
async def test_submit_before_start_is_written_after_start() -> None:
    backend = _FlakyBackend()
    queue = PersistenceQueue(backend)
    queue.submit(PersistenceOp.clear_read_alerts())
    queue.start()
    await asyncio.wait_for(queue.join(), timeout=1)
    await queue.stop()
    assert [op.kind for op in backend.written] == [OpKind.CLEAR_READ_ALERTS]


@pytest.mark.asyncio
async def test_stop_gives_up_on_unreachable_backend() -> None:
    backend = _FlakyBackend(failures=1_000_000)
    queue = PersistenceQueue(backend, backoff_base_s=0.001, backoff_max_s=0.001)
    queue.start()
    queue.submit(PersistenceOp.clear_read_alerts())
    await queue.stop(drain_timeout=0.05)
    assert not queue.is_running
    assert len(queue) == 1


def test_rows_use_table_columns() -> None:
    row = alert_row(_alert())
    assert row["vehicle_id"] == "V1"
    assert row["speed"] == 102
    assert row["speed_limit"] == 80
    assert row["timestamp"] == "2026-03-02T08:00:00+00:00"
    assert "dedupe_key" not in row

    trip = trip_row(_trip())
    assert trip["total_distance"] == 1112
    assert trip["average_speed"] == 33
    assert trip["stops_count"] == 0

    violation = SpeedViolation(
        vehicle_id="V1",
        vehicle_name="Van 1",
        speed=95,
        speed_limit=80,
        excess_speed=15,
        timestamp=T0,
        latitude=1,
        longitude=2,
        duration=60,
    )
    assert speed_violation_row(violation)["excess_speed"] == 15


class _FakePostgrest:
    def __init__(self) -> None:
        self.requests: list[dict[str, Any]] = []
        self.fail_status: int | None = None
        self.app = web.Application()
        self.app.router.add_route("*", "/rest/v1/{table}", self._handle)

    async def _handle(self, request: web.Request) -> web.Response:
        body = await request.json() if request.can_read_body else None
        self.requests.append(
            {
                "method": request.method,
                "table": request.match_info["table"],
                "query": dict(request.query),
                "headers": dict(request.headers),
                "body": body,
            }
        )
        if self.fail_status is not None:
            return web.Response(status=self.fail_status, text="boom")
        return web.Response(status=201 if request.method == "POST" else 204)


@pytest.mark.asyncio
async def test_supabase_backend_writes_trip_with_children() -> None:
    fake = _FakePostgrest()
    async with test_utils.TestServer(fake.app) as server:
        config = SupabaseConfig(url=str(server.make_url("")), api_key="secret-key")
        async with SupabaseBackend(config) as backend:
            trip = _trip()
            await backend.write(PersistenceOp.insert_trip(trip))

    calls = [(r["method"], r["table"]) for r in fake.requests]
    assert calls == [
        ("POST", "trips"),
        ("DELETE", "location_points"),
        ("POST", "location_points"),
        ("POST", "route_events"),
    ]
    first = fake.requests[0]
    assert first["headers"]["apikey"] == "secret-key"
    assert first["headers"]["Authorization"] == "Bearer secret-key"
    assert "merge-duplicates" in first["headers"]["Prefer"]
    assert first["body"]["id"] == trip.id
    assert fake.requests[1]["query"] == {"trip_id": f"eq.{trip.id}"}
    assert [p["trip_id"] for p in fake.requests[2]["body"]] == [trip.id, trip.id]


@pytest.mark.asyncio
async def test_supabase_backend_alert_operations() -> None:
    fake = _FakePostgrest()
    async with test_utils.TestServer(fake.app) as server:
        config = SupabaseConfig(url=str(server.make_url("")), api_key="k")
        async with SupabaseBackend(config) as backend:
            await backend.write(PersistenceOp.mark_alert_read("a1"))
            await backend.write(PersistenceOp.mark_all_alerts_read())
            await backend.write(PersistenceOp.clear_read_alerts())
            await backend.write(PersistenceOp.update_geofence_triggered("g1", T0))

    assert [(r["method"], r["table"], r["query"]) for r in fake.requests] == [
        ("PATCH", "alerts", {"id": "eq.a1"}),
        ("PATCH", "alerts", {"read": "eq.false"}),
        ("DELETE", "alerts", {"read": "eq.true"}),
        ("PATCH", "geofences", {"id": "eq.g1"}),
    ]
    assert fake.requests[3]["body"] == {"last_triggered": "2026-03-02T08:00:00+00:00"}


@pytest.mark.asyncio
async def test_supabase_backend_raises_persistence_error_on_http_failure() -> None:
    fake = _FakePostgrest()
    fake.fail_status = 500
    async with test_utils.TestServer(fake.app) as server:
        config = SupabaseConfig(url=str(server.make_url("")), api_key="k")
        async with SupabaseBackend(config) as backend:
            with pytest.raises(PersistenceError) as excinfo:
                await backend.write(PersistenceOp.insert_alert(_alert()))
    assert excinfo.value.status_code == 500
    assert excinfo.value.table == "alerts"


@pytest.mark.asyncio
async def test_supabase_backend_raises_persistence_error_when_unreachable() -> None:
    config = SupabaseConfig(url="http://127.0.0.1:9", api_key="k", timeout=2)
    async with SupabaseBackend(config) as backend:
        with pytest.raises(PersistenceError):
            await backend.write(PersistenceOp.clear_read_alerts())
