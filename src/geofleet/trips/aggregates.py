"""Trip finalization: aggregates and structural route events."""

from __future__ import annotations

import uuid
from collections.abc import Sequence
from datetime import datetime

from geofleet._geo import haversine_m
from geofleet.models.trip import LocationPoint, RouteEvent, RouteEventType, Trip


# Trip and structural event ids are a function of vehicle id and start time.
_TRIP_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_DNS, "trips.geofleet")


def trip_id(vehicle_id: str, start_time: datetime) -> str:
    return str(uuid.uuid5(_TRIP_NAMESPACE, f"{vehicle_id}|{start_time.isoformat()}"))


def _event_at(
    trip: str,
    point: LocationPoint,
    event_type: RouteEventType,
    *,
    duration: float | None = None,
) -> RouteEvent:
    return RouteEvent(
        id=str(uuid.uuid5(_TRIP_NAMESPACE, f"{trip}|{event_type}|{point.timestamp.isoformat()}")),
        type=event_type,
        latitude=point.latitude,
        longitude=point.longitude,
        timestamp=point.timestamp,
        speed=point.speed,
        duration=duration,
    )


def build_trip(
    vehicle_id: str,
    points: Sequence[LocationPoint],
    *,
    moving_threshold_kmh: float,
    min_stop_duration_s: float,
    events: Sequence[RouteEvent] = (),
) -> Trip:
    """Finalize an ordered point sequence into a :class:`Trip`.

    Each segment between consecutive points counts as travel when its first
    point is above the moving threshold, as stopped time otherwise, so
    ``travel_time + stopped_time`` always equals the trip duration.
    Consecutive stationary segments form a stop; stops lasting at least
    *min_stop_duration_s* are counted and become ``stop`` route events.
    """
    if not points:
        raise ValueError("a trip needs at least one point")
    tid = trip_id(vehicle_id, points[0].timestamp)

    total_distance = 0.0
    travel_time = 0.0
    stopped_time = 0.0
    stop_events: list[RouteEvent] = []
    stop_start: LocationPoint | None = None
    stop_duration = 0.0

    def close_stop() -> None:
        nonlocal stop_start, stop_duration
        if stop_start is not None and stop_duration >= min_stop_duration_s:
            stop_events.append(_event_at(tid, stop_start, RouteEventType.STOP, duration=stop_duration))
        stop_start = None
        stop_duration = 0.0

    for previous, current in zip(points, points[1:], strict=False):
        total_distance += haversine_m(previous.latitude, previous.longitude, current.latitude, current.longitude)
        elapsed = (current.timestamp - previous.timestamp).total_seconds()
        if previous.speed > moving_threshold_kmh:
            travel_time += elapsed
            close_stop()
        else:
            stopped_time += elapsed
            if stop_start is None:
                stop_start = previous
            stop_duration += elapsed
    close_stop()

    ordered_events = sorted(
        [*events, *stop_events],
        key=lambda e: e.timestamp,
    )
    route = [
        _event_at(tid, points[0], RouteEventType.DEPARTURE),
        *ordered_events,
        _event_at(tid, points[-1], RouteEventType.ARRIVAL),
    ]

    return Trip(
        id=tid,
        vehicle_id=vehicle_id,
        start_time=points[0].timestamp,
        end_time=points[-1].timestamp,
        total_distance=total_distance,
        travel_time=travel_time,
        stopped_time=stopped_time,
        average_speed=(total_distance / travel_time) * 3.6 if travel_time > 0 else 0.0,
        max_speed=max(p.speed for p in points),
        stops_count=len(stop_events),
        points=list(points),
        events=route,
    )
