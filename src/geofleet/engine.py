"""Telemetry & geofence engine facade."""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, datetime
from typing import Any

from geofleet.alerts.sink import AlertListener, AlertSink
from geofleet.config import EngineConfig
from geofleet.evaluation.geofence_rules import RuleEvaluator
from geofleet.evaluation.speed import SpeedMonitor, violation_route_event
from geofleet.exceptions import GeofleetError, UnknownVehicleError
from geofleet.geofence.index import GeofenceIndex
from geofleet.ingestion.mqtt import PositionFeed
from geofleet.ingestion.normalize import position_from_payload
from geofleet.ingestion.validate import validate_position
from geofleet.models.alert import Alert, AlertFilter
from geofleet.models.geofence import Geofence
from geofleet.models.position import VehiclePosition
from geofleet.models.speed import SpeedStats, SpeedViolation
from geofleet.models.trip import Trip
from geofleet.models.vehicle import Vehicle, VehicleState, VehicleStatus
from geofleet.persistence.base import PersistenceBackend, PersistenceOp
from geofleet.persistence.queue import PersistenceQueue
from geofleet.persistence.supabase import SupabaseBackend
from geofleet.state.policy import IngestOutcome
from geofleet.state.tracker import VehicleStateTracker
from geofleet.stats import speed_stats
from geofleet.trips.segmenter import TripSegmenter

_logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclasses.dataclass(frozen=True)
class IngestResult:
    """Outcome of admitting one position."""

    vehicle_id: str
    outcome: IngestOutcome
    status: VehicleStatus
    alerts: tuple[Alert, ...] = ()
    closed_trips: tuple[Trip, ...] = ()
    speed_violation: SpeedViolation | None = None

    @property
    def accepted(self) -> bool:
        return self.outcome == IngestOutcome.ACCEPTED


class TelemetryEngine:
    """Turns vehicle position reports into state, alerts, violations and trips.

    Usage::

        async with TelemetryEngine(EngineConfig.from_env()) as engine:
            engine.upsert_geofence(depot)
            result = await engine.ingest(payload)

    Positions of one vehicle are processed strictly one at a time; different
    vehicles never share mutable state.  Durable writes go through a bounded
    background queue and never block ingest.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        vehicles: Iterable[Vehicle | Mapping[str, Any]] = (),
        geofences: Iterable[Geofence | Mapping[str, Any]] = (),
        backend: PersistenceBackend | None = None,
        on_alert_change: AlertListener | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._config = config or EngineConfig()
        self._clock = clock
        cfg = self._config

        self._tracker = VehicleStateTracker(
            moving_threshold_kmh=cfg.moving_threshold_kmh,
            offline_timeout_s=cfg.offline_timeout_s,
            history_size=cfg.history_size,
            default_speed_limit_kmh=cfg.default_speed_limit_kmh,
            strict=cfg.strict_vehicles,
        )
        self._geofences = GeofenceIndex(geofences)
        self._evaluator = RuleEvaluator(tz=cfg.tzinfo)
        self._speed = SpeedMonitor(
            critical_excess_ratio=cfg.critical_excess_ratio,
            offline_timeout_s=cfg.offline_timeout_s,
        )
        self._alerts = AlertSink(on_change=on_alert_change)
        self._trips = TripSegmenter(
            moving_threshold_kmh=cfg.moving_threshold_kmh,
            trip_gap_threshold_s=cfg.trip_gap_threshold_s,
            min_stop_duration_s=cfg.min_stop_duration_s,
        )

        self._owned_backend: SupabaseBackend | None = None
        if backend is None and cfg.supabase is not None:
            self._owned_backend = SupabaseBackend(cfg.supabase)
            backend = self._owned_backend
        self._queue: PersistenceQueue | None = None
        if backend is not None:
            self._queue = PersistenceQueue(
                backend,
                capacity=cfg.persistence_queue_capacity,
                backoff_base_s=cfg.persistence_backoff_base_s,
                backoff_max_s=cfg.persistence_backoff_max_s,
            )

        self._locks: dict[str, asyncio.Lock] = {}
        self._sweep_task: asyncio.Task[None] | None = None
        self._feed: PositionFeed | None = None
        self._feed_tasks: set[asyncio.Task[Any]] = set()

        for vehicle in vehicles:
            self.register_vehicle(vehicle)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> TelemetryEngine:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def start(self) -> None:
        """Start the offline sweep, the persistence worker and the MQTT feed."""
        loop = asyncio.get_running_loop()
        if self._queue is not None:
            self._queue.start()
        if self._sweep_task is None:
            self._sweep_task = loop.create_task(self._sweep_loop(), name="geofleet-offline-sweep")
        if self._config.mqtt is not None and self._feed is None:
            self._feed = PositionFeed(config=self._config.mqtt, loop=loop, on_position=self._on_feed_position)
            self._feed.start()

    async def close(self) -> None:
        """Stop background work, finalize open trips and drain persistence best-effort."""
        if self._feed is not None:
            self._feed.stop()
            self._feed = None
        if self._feed_tasks:
            await asyncio.gather(*self._feed_tasks, return_exceptions=True)
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweep_task
            self._sweep_task = None

        for vehicle_id in self._tracker.vehicle_ids():
            self._close_speed_interval(vehicle_id)
        for trip in self._trips.finish_all():
            self._persist(PersistenceOp.insert_trip(trip))

        if self._queue is not None:
            await self._queue.stop()
        if self._owned_backend is not None:
            await self._owned_backend.close()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.sweep_interval_s)
            try:
                self.sweep_offline()
            except GeofleetError:
                _logger.exception("Offline sweep failed")

    # ------------------------------------------------------------------
    # Ingest
    # ------------------------------------------------------------------

    def _lock(self, vehicle_id: str) -> asyncio.Lock:
        lock = self._locks.get(vehicle_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[vehicle_id] = lock
        return lock

    async def ingest(self, position: VehiclePosition | Mapping[str, Any]) -> IngestResult:
        """Admit one position.

        Raises
        ------
        InvalidPositionError
            Malformed or out-of-range position. Nothing is mutated.
        UnknownVehicleError
            Unregistered vehicle while ``strict_vehicles`` is set. Nothing is mutated.
        """
        if not isinstance(position, VehiclePosition):
            position = position_from_payload(position)
        validate_position(position, now=self._clock(), max_future_skew_s=self._config.max_future_skew_s)
        async with self._lock(position.vehicle_id):
            return self._process(position)

    async def ingest_batch(
        self, positions: Iterable[VehiclePosition | Mapping[str, Any]]
    ) -> list[IngestResult | GeofleetError]:
        """Admit positions in order. A rejected element yields its error in place of a result."""
        results: list[IngestResult | GeofleetError] = []
        for position in positions:
            try:
                results.append(await self.ingest(position))
            except GeofleetError as exc:
                _logger.debug("Batch element rejected: %s", exc)
                results.append(exc)
        return results

    def _process(self, position: VehiclePosition) -> IngestResult:
        change = self._tracker.apply(position)
        vehicle_id = change.vehicle_id
        if change.outcome != IngestOutcome.ACCEPTED:
            return IngestResult(vehicle_id=vehicle_id, outcome=change.outcome, status=change.status)

        state = self._tracker.get(vehicle_id)
        vehicle_name = state.name or vehicle_id
        alerts: list[Alert] = []

        evaluation = self._evaluator.evaluate(state, position, self._geofences.applicable(vehicle_id))
        self._tracker.set_membership(vehicle_id, evaluation.membership)
        for alert in evaluation.alerts:
            stored = self._emit(alert)
            if stored is not None:
                alerts.append(stored)

        observation = self._speed.observe(position, vehicle_name=vehicle_name, speed_limit=state.speed_limit)
        if observation.alert is not None:
            stored = self._emit(observation.alert)
            if stored is not None:
                alerts.append(stored)
        if observation.violation is not None:
            self._persist(PersistenceOp.insert_speed_violation(observation.violation))
            # Belongs to the trip that was open while it lasted, which this
            # sample may close.
            self._trips.attach_event(vehicle_id, violation_route_event(observation.violation))

        closed = self._trips.observe(position)
        for event in evaluation.route_events:
            self._trips.attach_event(vehicle_id, event)
        for trip in closed:
            self._persist(PersistenceOp.insert_trip(trip))

        return IngestResult(
            vehicle_id=vehicle_id,
            outcome=change.outcome,
            status=change.status,
            alerts=tuple(alerts),
            closed_trips=tuple(closed),
            speed_violation=observation.violation,
        )

    def _emit(self, alert: Alert) -> Alert | None:
        stored = self._alerts.create(alert)
        if stored is None:
            return None
        self._persist(PersistenceOp.insert_alert(stored))
        if stored.geofence_id is not None:
            triggered = self._geofences.mark_triggered(stored.geofence_id, stored.timestamp)
            if triggered is not None and triggered.last_triggered is not None:
                self._persist(PersistenceOp.update_geofence_triggered(triggered.id, triggered.last_triggered))
        return stored

    def _on_feed_position(self, position: VehiclePosition) -> None:
        task = asyncio.get_running_loop().create_task(self._ingest_from_feed(position))
        self._feed_tasks.add(task)
        task.add_done_callback(self._feed_tasks.discard)

    async def _ingest_from_feed(self, position: VehiclePosition) -> None:
        try:
            await self.ingest(position)
        except GeofleetError as exc:
            _logger.warning("Rejected feed position for vehicle %s: %s", position.vehicle_id, exc)

    # ------------------------------------------------------------------
    # Offline sweep and trips
    # ------------------------------------------------------------------

    def _close_speed_interval(self, vehicle_id: str) -> None:
        violation = self._speed.close(vehicle_id)
        if violation is None:
            return
        self._persist(PersistenceOp.insert_speed_violation(violation))
        self._trips.attach_event(vehicle_id, violation_route_event(violation))

    def sweep_offline(self, now: datetime | None = None) -> list[str]:
        """Mark silent vehicles offline and close their open intervals and trips.

        Also forgets alert dedupe keys that no open interval can reproduce.
        Returns the ids of vehicles that went offline.
        """
        now = now or self._clock()
        went_offline = self._tracker.sweep(now)
        for vehicle_id in went_offline:
            self._close_speed_interval(vehicle_id)
        for trip in self._trips.sweep(now):
            self._persist(PersistenceOp.insert_trip(trip))
        open_starts = [t for t in (self._evaluator.oldest_open_start(), self._speed.oldest_open_start()) if t]
        self._alerts.forget_dedupe_before(min([now, *open_starts]))
        return went_offline

    def replay_trips(
        self, vehicle_id: str, positions: Iterable[VehiclePosition | Mapping[str, Any]]
    ) -> list[Trip]:
        """Rebuild a vehicle's trips from stored positions (restart recovery).

        Trip ids derive from the vehicle and start time, so replaying the same
        positions again rewrites the same rows.  An unregistered vehicle is
        auto-registered unless ``strict_vehicles`` is set.
        """
        parsed = [p if isinstance(p, VehiclePosition) else position_from_payload(p) for p in positions]
        self._tracker.ensure_registered(vehicle_id)
        trips = self._trips.replay(vehicle_id, parsed)
        for trip in trips:
            self._persist(PersistenceOp.insert_trip(trip))
        return trips

    def get_trips(
        self,
        vehicle_id: str,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
    ) -> list[Trip]:
        """Finalized trips of *vehicle_id* within the window, newest first."""
        if vehicle_id not in self._tracker:
            raise UnknownVehicleError(vehicle_id)
        return self._trips.trips(vehicle_id, start_time, end_time)

    # ------------------------------------------------------------------
    # Vehicles and geofences
    # ------------------------------------------------------------------

    def register_vehicle(self, vehicle: Vehicle | Mapping[str, Any]) -> VehicleState:
        if not isinstance(vehicle, Vehicle):
            vehicle = Vehicle.model_validate(dict(vehicle))
        self._tracker.register(vehicle)
        return self._tracker.snapshot(vehicle.id)

    def get_vehicle_state(self, vehicle_id: str) -> VehicleState:
        """Deep copy of the live state of *vehicle_id*."""
        return self._tracker.snapshot(vehicle_id)

    def vehicle_ids(self) -> list[str]:
        return self._tracker.vehicle_ids()

    def upsert_geofence(self, geofence: Geofence | Mapping[str, Any]) -> Geofence:
        return self._geofences.upsert(geofence)

    def remove_geofence(self, geofence_id: str) -> Geofence:
        removed = self._geofences.remove(geofence_id)
        self._tracker.forget_geofence(geofence_id)
        self._evaluator.forget_geofence(geofence_id)
        return removed

    def get_geofence(self, geofence_id: str) -> Geofence:
        return self._geofences.get(geofence_id)

    def list_geofences(self) -> list[Geofence]:
        return self._geofences.list()

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    def list_alerts(self, alert_filter: AlertFilter | None = None, **criteria: Any) -> list[Alert]:
        """Alerts newest first; pass an :class:`AlertFilter` or its fields as keywords."""
        if alert_filter is None and criteria:
            alert_filter = AlertFilter(**criteria)
        return self._alerts.list(alert_filter)

    def get_alert(self, alert_id: str) -> Alert:
        return self._alerts.get(alert_id)

    def unread_count(self) -> int:
        return self._alerts.unread_count()

    def mark_read(self, alert_id: str) -> Alert:
        alert = self._alerts.mark_read(alert_id)
        self._persist(PersistenceOp.mark_alert_read(alert_id))
        return alert

    def mark_all_read(self) -> int:
        count = self._alerts.mark_all_read()
        if count:
            self._persist(PersistenceOp.mark_all_alerts_read())
        return count

    def clear_read(self) -> int:
        count = self._alerts.clear_read()
        if count:
            self._persist(PersistenceOp.clear_read_alerts())
        return count

    # ------------------------------------------------------------------
    # Speed
    # ------------------------------------------------------------------

    def get_speed_violations(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        *,
        vehicle_id: str | None = None,
    ) -> list[SpeedViolation]:
        return self._speed.violations(start, end, vehicle_id=vehicle_id)

    def get_speed_stats(self, start_time: datetime | None = None, end_time: datetime | None = None) -> SpeedStats:
        return speed_stats(self._speed.violations(), start_time, end_time)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    @property
    def persistence(self) -> PersistenceQueue | None:
        return self._queue

    def _persist(self, op: PersistenceOp) -> None:
        if self._queue is not None:
            self._queue.submit(op)
