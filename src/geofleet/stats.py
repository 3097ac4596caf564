"""Aggregated speed-violation statistics."""

from __future__ import annotations

from collections import Counter, defaultdict
from collections.abc import Iterable
from datetime import datetime

from geofleet._constants import TOP_VIOLATORS_LIMIT
from geofleet.models.speed import DailyViolationCount, SpeedStats, SpeedViolation, TopViolator


def speed_stats(
    violations: Iterable[SpeedViolation],
    start: datetime | None = None,
    end: datetime | None = None,
    *,
    top: int = TOP_VIOLATORS_LIMIT,
) -> SpeedStats:
    """Summarize violations with ``start <= timestamp <= end``.

    ``violations_by_day`` is keyed by UTC date and sorted ascending;
    ``top_violators`` is ordered by violation count, most first.
    """
    selected = [
        v
        for v in violations
        if (start is None or v.timestamp >= start) and (end is None or v.timestamp <= end)
    ]
    if not selected:
        return SpeedStats()

    by_day = Counter(v.timestamp.date() for v in selected)
    by_vehicle: dict[str, list[SpeedViolation]] = defaultdict(list)
    for v in selected:
        by_vehicle[v.vehicle_id].append(v)

    violators = [
        TopViolator(
            vehicle_id=vehicle_id,
            vehicle_name=records[-1].vehicle_name,
            total_violations=len(records),
            average_excess_speed=sum(r.excess_speed for r in records) / len(records),
            last_violation=max(r.timestamp for r in records),
        )
        for vehicle_id, records in by_vehicle.items()
    ]
    violators.sort(key=lambda t: (-t.total_violations, t.vehicle_id))

    return SpeedStats(
        total_violations=len(selected),
        vehicles_with_violations=len(by_vehicle),
        average_excess_speed=sum(v.excess_speed for v in selected) / len(selected),
        violations_by_day=[DailyViolationCount(day=day, count=count) for day, count in sorted(by_day.items())],
        top_violators=violators[:top],
    )
