"""Range and clock-skew validation for position reports."""

from __future__ import annotations

import math
from datetime import datetime, timedelta

from geofleet.exceptions import InvalidPositionError
from geofleet.models.position import VehiclePosition


def validate_position(position: VehiclePosition, *, now: datetime, max_future_skew_s: float) -> VehiclePosition:
    """Reject positions with out-of-range values.

    Checks ``latitude`` in [-90, 90], ``longitude`` in [-180, 180],
    ``speed >= 0`` and that ``timestamp`` is at most *max_future_skew_s*
    ahead of *now*.  Returns the position unchanged when valid.
    """

    vid = position.vehicle_id
    checks: tuple[tuple[str, float, float, float], ...] = (
        ("latitude", position.latitude, -90.0, 90.0),
        ("longitude", position.longitude, -180.0, 180.0),
    )
    for field, value, low, high in checks:
        if not math.isfinite(value) or not low <= value <= high:
            raise InvalidPositionError(
                f"{field} must be between {low} and {high}, got {value}",
                field=field,
                value=value,
                vehicle_id=vid,
            )

    if not math.isfinite(position.speed) or position.speed < 0:
        raise InvalidPositionError(
            f"speed must be >= 0, got {position.speed}",
            field="speed",
            value=position.speed,
            vehicle_id=vid,
        )

    latest_allowed = now + timedelta(seconds=max_future_skew_s)
    if position.timestamp > latest_allowed:
        raise InvalidPositionError(
            f"timestamp {position.timestamp.isoformat()} is more than {max_future_skew_s:.0f}s ahead of now",
            field="timestamp",
            value=position.timestamp,
            vehicle_id=vid,
        )
    return position
