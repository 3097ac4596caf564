"""Speed limit monitoring and the speed-violation ledger."""

from __future__ import annotations

import dataclasses
import logging
import threading
from datetime import datetime

from geofleet._constants import DEFAULT_CRITICAL_EXCESS_RATIO, DEFAULT_OFFLINE_TIMEOUT_S
from geofleet.evaluation.intervals import SpeedInterval, interval_key
from geofleet.models.alert import Alert, AlertPriority, AlertType
from geofleet.models.position import VehiclePosition
from geofleet.models.speed import SpeedViolation
from geofleet.models.trip import RouteEvent, RouteEventType

_logger = logging.getLogger(__name__)


def speed_priority(speed: float, speed_limit: int, critical_excess_ratio: float) -> AlertPriority:
    """``critical`` when the excess is above ``ratio * limit``, else ``warning``."""
    if speed - speed_limit > speed_limit * critical_excess_ratio:
        return AlertPriority.CRITICAL
    return AlertPriority.WARNING


@dataclasses.dataclass(frozen=True)
class SpeedObservation:
    alert: Alert | None = None
    violation: SpeedViolation | None = None


def violation_route_event(violation: SpeedViolation) -> RouteEvent:
    return RouteEvent(
        type=RouteEventType.SPEED_VIOLATION,
        latitude=violation.latitude,
        longitude=violation.longitude,
        timestamp=violation.timestamp,
        duration=violation.duration,
        speed=violation.speed,
        speed_limit=violation.speed_limit,
    )


class SpeedMonitor:
    """Tracks open violation intervals and records closed ones.

    One interval per vehicle.  An interval opens on the first sample above
    the limit (emitting the ``speed`` alert), is extended by every further
    over-limit sample and closes on the first sample at or below the limit,
    or when the vehicle goes offline.  A sample arriving after a silence of
    at least *offline_timeout_s* closes the old interval before it is
    evaluated, whether or not the offline sweep ran in between.

    Closed violations stay in memory for the life of the monitor; they back
    :meth:`violations` and the speed statistics.
    """

    def __init__(
        self,
        *,
        critical_excess_ratio: float = DEFAULT_CRITICAL_EXCESS_RATIO,
        offline_timeout_s: float = DEFAULT_OFFLINE_TIMEOUT_S,
    ) -> None:
        self._critical_excess_ratio = critical_excess_ratio
        self._offline_timeout_s = offline_timeout_s
        self._open: dict[str, SpeedInterval] = {}
        self._lock = threading.Lock()
        self._violations: list[SpeedViolation] = []

    def open_interval(self, vehicle_id: str) -> SpeedInterval | None:
        return self._open.get(vehicle_id)

    def oldest_open_start(self) -> datetime | None:
        starts = [interval.started_at for interval in list(self._open.values())]
        return min(starts, default=None)

    def observe(self, position: VehiclePosition, *, vehicle_name: str, speed_limit: int) -> SpeedObservation:
        vehicle_id = position.vehicle_id
        interval = self._open.get(vehicle_id)
        stale: SpeedViolation | None = None
        silence = (position.timestamp - interval.last_over_at).total_seconds() if interval is not None else 0.0
        if silence >= self._offline_timeout_s:
            _logger.debug("Speed violation of vehicle %s ended by reporting silence", vehicle_id)
            stale = self.close(vehicle_id)
            interval = None

        if position.speed <= speed_limit:
            if interval is None:
                return SpeedObservation(violation=stale)
            return SpeedObservation(violation=self.close(vehicle_id))

        if interval is not None:
            interval.extend(position)
            return SpeedObservation()

        interval = SpeedInterval.open(position, vehicle_name=vehicle_name, speed_limit=speed_limit)
        self._open[vehicle_id] = interval
        _logger.debug(
            "Speed violation opened vehicle=%s speed=%.1f limit=%s",
            vehicle_id,
            position.speed,
            speed_limit,
        )
        alert = Alert(
            type=AlertType.SPEED,
            priority=speed_priority(position.speed, speed_limit, self._critical_excess_ratio),
            vehicle_id=vehicle_id,
            vehicle_name=vehicle_name,
            message=f"{vehicle_name} exceeded the speed limit: {position.speed:.0f} km/h (limit {speed_limit} km/h)",
            timestamp=position.timestamp,
            latitude=position.latitude,
            longitude=position.longitude,
            speed=position.speed,
            speed_limit=speed_limit,
            dedupe_key=interval_key(vehicle_id, "speed", 0, interval.started_at),
        )
        return SpeedObservation(alert=alert, violation=stale)

    def close(self, vehicle_id: str) -> SpeedViolation | None:
        """Close the open interval of *vehicle_id*, if any, and record it."""
        interval = self._open.pop(vehicle_id, None)
        if interval is None:
            return None
        violation = SpeedViolation(
            vehicle_id=interval.vehicle_id,
            vehicle_name=interval.vehicle_name,
            speed=interval.max_speed,
            speed_limit=interval.speed_limit,
            excess_speed=interval.excess,
            timestamp=interval.started_at,
            latitude=interval.latitude,
            longitude=interval.longitude,
            duration=interval.duration,
        )
        with self._lock:
            self._violations.append(violation)
        _logger.debug(
            "Speed violation closed vehicle=%s max=%.1f excess=%.1f duration=%.0fs",
            vehicle_id,
            violation.speed,
            violation.excess_speed,
            violation.duration,
        )
        return violation

    def violations(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        *,
        vehicle_id: str | None = None,
    ) -> list[SpeedViolation]:
        """Recorded violations with ``start <= timestamp <= end``, newest first."""
        with self._lock:
            records = list(self._violations)
        selected = [
            v
            for v in records
            if (vehicle_id is None or v.vehicle_id == vehicle_id)
            and (start is None or v.timestamp >= start)
            and (end is None or v.timestamp <= end)
        ]
        selected.sort(key=lambda v: v.timestamp, reverse=True)
        return selected
