"""Geofence rule evaluation.

For every accepted position the evaluator compares fresh containment
against the membership cached in :class:`VehicleState` and produces the
alerts, the new membership map and the route events for the open trip.
It never mutates vehicle state itself; the engine hands the results to the
tracker, the alert sink and the trip segmenter.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Iterable
from datetime import datetime, timedelta, tzinfo

from geofleet.evaluation.intervals import InsideInterval, interval_key
from geofleet.geofence.index import contains
from geofleet.models.alert import Alert, AlertPriority, AlertType
from geofleet.models.geofence import DwellRule, EntryRule, ExitRule, Geofence, TimeViolationRule
from geofleet.models.position import VehiclePosition
from geofleet.models.trip import RouteEvent, RouteEventType
from geofleet.models.vehicle import Membership, VehicleState

_logger = logging.getLogger(__name__)

ALERT_PRIORITIES: dict[AlertType, AlertPriority] = {
    AlertType.GEOFENCE_ENTRY: AlertPriority.INFO,
    AlertType.GEOFENCE_EXIT: AlertPriority.WARNING,
    AlertType.GEOFENCE_DWELL: AlertPriority.WARNING,
    AlertType.GEOFENCE_TIME_VIOLATION: AlertPriority.CRITICAL,
}


@dataclasses.dataclass
class GeofenceEvaluation:
    """Output of one evaluation pass."""

    membership: dict[str, Membership] = dataclasses.field(default_factory=dict)
    alerts: list[Alert] = dataclasses.field(default_factory=list)
    route_events: list[RouteEvent] = dataclasses.field(default_factory=list)


class RuleEvaluator:
    """Stateful per (vehicle, geofence) evaluator of entry/exit/dwell/time rules."""

    def __init__(self, *, tz: tzinfo) -> None:
        self._tz = tz
        self._intervals: dict[str, dict[str, InsideInterval]] = {}

    def open_interval(self, vehicle_id: str, geofence_id: str) -> InsideInterval | None:
        return self._intervals.get(vehicle_id, {}).get(geofence_id)

    def forget_geofence(self, geofence_id: str) -> None:
        for intervals in self._intervals.values():
            intervals.pop(geofence_id, None)

    def oldest_open_start(self) -> datetime | None:
        starts = [i.started_at for intervals in self._intervals.values() for i in intervals.values()]
        return min(starts, default=None)

    def evaluate(
        self,
        state: VehicleState,
        position: VehiclePosition,
        geofences: Iterable[Geofence],
    ) -> GeofenceEvaluation:
        """Evaluate *position* against the applicable *geofences*.

        *state* must still carry the membership from before this position.
        Geofences no longer applicable to the vehicle drop out of the
        returned membership and their intervals close without alerts.
        """
        result = GeofenceEvaluation()
        intervals = self._intervals.setdefault(state.vehicle_id, {})
        seen: set[str] = set()

        for geofence in geofences:
            seen.add(geofence.id)
            inside = contains(geofence, position.latitude, position.longitude)
            previous = state.membership_of(geofence.id)
            result.membership[geofence.id] = Membership.INSIDE if inside else Membership.OUTSIDE

            if previous == Membership.UNKNOWN:
                if inside:
                    intervals[geofence.id] = InsideInterval(geofence.id, position.timestamp)
                    _logger.debug(
                        "Vehicle %s first seen inside geofence %s; membership established",
                        state.vehicle_id,
                        geofence.id,
                    )
            elif previous == Membership.OUTSIDE and inside:
                interval = InsideInterval(geofence.id, position.timestamp)
                intervals[geofence.id] = interval
                self._transition(state, position, geofence, interval, AlertType.GEOFENCE_ENTRY, result)
            elif previous == Membership.INSIDE and not inside:
                interval = intervals.pop(geofence.id, None) or InsideInterval(geofence.id, position.timestamp)
                self._transition(state, position, geofence, interval, AlertType.GEOFENCE_EXIT, result)

            if inside:
                interval = intervals.get(geofence.id)
                if interval is None:
                    interval = InsideInterval(geofence.id, position.timestamp)
                    intervals[geofence.id] = interval
                self._continuous_rules(state, position, geofence, interval, result)

        for geofence_id in set(intervals) - seen:
            _logger.debug("Geofence %s no longer applies to vehicle %s", geofence_id, state.vehicle_id)
            del intervals[geofence_id]

        return result

    def _transition(
        self,
        state: VehicleState,
        position: VehiclePosition,
        geofence: Geofence,
        interval: InsideInterval,
        alert_type: AlertType,
        result: GeofenceEvaluation,
    ) -> None:
        entering = alert_type == AlertType.GEOFENCE_ENTRY
        result.route_events.append(
            RouteEvent(
                type=RouteEventType.GEOFENCE_ENTRY if entering else RouteEventType.GEOFENCE_EXIT,
                latitude=position.latitude,
                longitude=position.longitude,
                timestamp=position.timestamp,
                speed=position.speed,
                geofence_name=geofence.display_name,
            )
        )
        rule_class = EntryRule if entering else ExitRule
        verb = "entered" if entering else "exited"
        for index, rule in enumerate(geofence.rules):
            if not isinstance(rule, rule_class) or not rule.enabled:
                continue
            result.alerts.append(
                self._alert(
                    state,
                    position,
                    geofence,
                    alert_type,
                    f"{state.name or state.vehicle_id} {verb} {geofence.display_name}",
                    interval_key(state.vehicle_id, f"{geofence.id}:{alert_type}", index, interval.started_at),
                )
            )

    def _continuous_rules(
        self,
        state: VehicleState,
        position: VehiclePosition,
        geofence: Geofence,
        interval: InsideInterval,
        result: GeofenceEvaluation,
    ) -> None:
        vehicle_name = state.name or state.vehicle_id
        for index, rule in enumerate(geofence.rules):
            if not rule.enabled or index in interval.fired:
                continue
            match rule:
                case DwellRule():
                    if interval.inside_for(position.timestamp) < rule.dwell_seconds:
                        continue
                    message = (
                        f"{vehicle_name} has been inside {geofence.display_name} "
                        f"for {rule.dwell_time_minutes:g} minutes"
                    )
                    alert_type = AlertType.GEOFENCE_DWELL
                case TimeViolationRule():
                    if not self._time_violation_due(rule, index, interval, position.timestamp):
                        continue
                    message = (
                        f"{vehicle_name} inside {geofence.display_name} during restricted hours "
                        f"{rule.start_time:%H:%M}-{rule.end_time:%H:%M}"
                    )
                    alert_type = AlertType.GEOFENCE_TIME_VIOLATION
                case EntryRule() | ExitRule():
                    continue
            interval.fired.add(index)
            result.alerts.append(
                self._alert(
                    state,
                    position,
                    geofence,
                    alert_type,
                    message,
                    interval_key(state.vehicle_id, f"{geofence.id}:{alert_type}", index, interval.started_at),
                )
            )

    def _time_violation_due(
        self,
        rule: TimeViolationRule,
        index: int,
        interval: InsideInterval,
        timestamp: datetime,
    ) -> bool:
        local = timestamp.astimezone(self._tz)
        pending_since = interval.pending.get(index)
        if pending_since is not None and local >= self._deadline(rule, pending_since):
            # The window plus grace ran out before presence lasted long enough.
            del interval.pending[index]
            pending_since = None

        if pending_since is None:
            if not rule.start_time <= local.time() < rule.end_time:
                return False
            interval.pending[index] = timestamp
            pending_since = timestamp

        return (timestamp - pending_since).total_seconds() >= rule.tolerance_seconds

    def _deadline(self, rule: TimeViolationRule, pending_since: datetime) -> datetime:
        """Latest local time at which a violation that started at *pending_since* may be flagged."""
        local_day = pending_since.astimezone(self._tz).date()
        end = datetime.combine(local_day, rule.end_time, tzinfo=self._tz)
        return end + timedelta(seconds=rule.tolerance_seconds)

    def _alert(
        self,
        state: VehicleState,
        position: VehiclePosition,
        geofence: Geofence,
        alert_type: AlertType,
        message: str,
        dedupe_key: str,
    ) -> Alert:
        return Alert(
            type=alert_type,
            priority=ALERT_PRIORITIES[alert_type],
            vehicle_id=state.vehicle_id,
            vehicle_name=state.name or state.vehicle_id,
            message=message,
            timestamp=position.timestamp,
            latitude=position.latitude,
            longitude=position.longitude,
            speed=position.speed,
            geofence_id=geofence.id,
            geofence_name=geofence.display_name,
            dedupe_key=dedupe_key,
        )
