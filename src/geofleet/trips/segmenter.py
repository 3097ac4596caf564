"""Trip segmentation.

Groups each vehicle's accepted positions into trips.  A trip opens on the
first moving sample while no trip is open and closes once the vehicle has
been stationary, or silent, for at least the gap threshold.  The closing
stop is not part of the trip: the trip ends where that stop began.

Trip boundaries depend only on the position sequence, so
:meth:`TripSegmenter.replay` rebuilds the same trips after a restart.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from collections.abc import Iterable
from datetime import datetime

from geofleet._constants import (
    DEFAULT_MIN_STOP_DURATION_S,
    DEFAULT_MOVING_THRESHOLD_KMH,
    DEFAULT_TRIP_GAP_THRESHOLD_S,
)
from geofleet.models.position import VehiclePosition
from geofleet.models.trip import LocationPoint, RouteEvent, Trip
from geofleet.trips.aggregates import build_trip

_logger = logging.getLogger(__name__)


@dataclasses.dataclass
class OpenTrip:
    vehicle_id: str
    points: list[LocationPoint] = dataclasses.field(default_factory=list)
    events: list[RouteEvent] = dataclasses.field(default_factory=list)
    still_index: int | None = None
    """Index of the first point of the current stationary run."""

    @property
    def last_timestamp(self) -> datetime:
        return self.points[-1].timestamp

    @property
    def still_since(self) -> datetime | None:
        if self.still_index is None:
            return None
        return self.points[self.still_index].timestamp


class TripSegmenter:
    def __init__(
        self,
        *,
        moving_threshold_kmh: float = DEFAULT_MOVING_THRESHOLD_KMH,
        trip_gap_threshold_s: float = DEFAULT_TRIP_GAP_THRESHOLD_S,
        min_stop_duration_s: float = DEFAULT_MIN_STOP_DURATION_S,
    ) -> None:
        self._moving_threshold = moving_threshold_kmh
        self._gap_s = trip_gap_threshold_s
        self._min_stop_s = min_stop_duration_s
        self._open: dict[str, OpenTrip] = {}
        self._lock = threading.Lock()
        self._finished: dict[str, list[Trip]] = {}

    def open_trip(self, vehicle_id: str) -> OpenTrip | None:
        return self._open.get(vehicle_id)

    def _is_stationary(self, speed: float) -> bool:
        return speed <= self._moving_threshold

    def observe(self, position: VehiclePosition) -> list[Trip]:
        """Feed one accepted position. Returns trips closed by it."""
        closed: list[Trip] = []
        vehicle_id = position.vehicle_id
        current = self._open.get(vehicle_id)

        if current is not None:
            silence = (position.timestamp - current.last_timestamp).total_seconds()
            if silence >= self._gap_s:
                _logger.debug("Vehicle %s silent for %.0fs; closing trip", vehicle_id, silence)
                closed.extend(self._close(vehicle_id))
                current = None

        stationary = self._is_stationary(position.speed)
        point = LocationPoint.from_position(position)

        if current is None:
            if not stationary:
                self._open[vehicle_id] = OpenTrip(vehicle_id=vehicle_id, points=[point])
                _logger.debug("Trip opened vehicle=%s at %s", vehicle_id, position.timestamp.isoformat())
            return closed

        current.points.append(point)
        if not stationary:
            current.still_index = None
            return closed

        if current.still_index is None:
            current.still_index = len(current.points) - 1
        elif current.still_since is not None and (
            (position.timestamp - current.still_since).total_seconds() >= self._gap_s
        ):
            closed.extend(self._close(vehicle_id))
        return closed

    def attach_event(self, vehicle_id: str, event: RouteEvent) -> bool:
        """Attach an evaluator event (speed violation, geofence transition) to the open trip."""
        current = self._open.get(vehicle_id)
        if current is None or event.timestamp < current.points[0].timestamp:
            _logger.debug("No open trip for vehicle %s; dropping %s event", vehicle_id, event.type)
            return False
        current.events.append(event)
        return True

    def sweep(self, now: datetime) -> list[Trip]:
        """Close trips of vehicles silent for at least the gap threshold."""
        closed: list[Trip] = []
        for vehicle_id, current in list(self._open.items()):
            if (now - current.last_timestamp).total_seconds() >= self._gap_s:
                closed.extend(self._close(vehicle_id))
        return closed

    def finish(self, vehicle_id: str) -> list[Trip]:
        """Close the open trip of *vehicle_id*, if any."""
        return self._close(vehicle_id)

    def finish_all(self) -> list[Trip]:
        """Close every open trip (ingestion ended)."""
        closed: list[Trip] = []
        for vehicle_id in list(self._open):
            closed.extend(self._close(vehicle_id))
        return closed

    def _close(self, vehicle_id: str) -> list[Trip]:
        current = self._open.pop(vehicle_id, None)
        if current is None:
            return []
        points = current.points
        if current.still_index is not None:
            # Trim the terminal stop; its first point is where the trip ends.
            points = points[: current.still_index + 1]
        if len(points) < 2:
            _logger.debug("Discarding single-point trip for vehicle %s", vehicle_id)
            return []
        end = points[-1].timestamp
        trip = build_trip(
            vehicle_id,
            points,
            moving_threshold_kmh=self._moving_threshold,
            min_stop_duration_s=self._min_stop_s,
            events=[e for e in current.events if e.timestamp <= end],
        )
        with self._lock:
            self._finished.setdefault(vehicle_id, []).append(trip)
        _logger.info(
            "Trip closed vehicle=%s %s -> %s distance=%.0fm stops=%d",
            vehicle_id,
            trip.start_time.isoformat(),
            trip.end_time.isoformat(),
            trip.total_distance,
            trip.stops_count,
        )
        return [trip]

    def replay(self, vehicle_id: str, positions: Iterable[VehiclePosition]) -> list[Trip]:
        """Rebuild the trips of *vehicle_id* from stored positions.

        Discards the vehicle's in-memory trips (open and finished), feeds the
        positions in timestamp order (duplicate timestamps keep the first)
        and closes the trailing trip.  Returns the rebuilt trips, oldest
        first.
        """
        ordered = sorted(
            (p for p in positions if p.vehicle_id == vehicle_id),
            key=lambda p: p.timestamp,
        )
        self._open.pop(vehicle_id, None)
        with self._lock:
            self._finished.pop(vehicle_id, None)

        rebuilt: list[Trip] = []
        last_ts: datetime | None = None
        for position in ordered:
            if last_ts is not None and position.timestamp == last_ts:
                continue
            last_ts = position.timestamp
            rebuilt.extend(self.observe(position))
        rebuilt.extend(self.finish(vehicle_id))
        _logger.debug("Replayed %d positions for vehicle %s into %d trips", len(ordered), vehicle_id, len(rebuilt))
        return rebuilt

    def trips(
        self,
        vehicle_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Trip]:
        """Finalized trips within [start, end], newest first."""
        with self._lock:
            if vehicle_id is None:
                candidates = [t for trips in self._finished.values() for t in trips]
            else:
                candidates = list(self._finished.get(vehicle_id, ()))
        selected = [
            t
            for t in candidates
            if (start is None or t.start_time >= start) and (end is None or t.end_time <= end)
        ]
        selected.sort(key=lambda t: t.start_time, reverse=True)
        return selected
