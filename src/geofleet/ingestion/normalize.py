"""Normalization helpers.

Centralizes tolerant parsing of raw position payloads so that the state
layer only ever sees typed :class:`~geofleet.models.position.VehiclePosition`
records.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from geofleet.exceptions import InvalidPositionError
from geofleet.models.position import VehiclePosition


def safe_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text if text else None


def _unwrap(payload: Mapping[str, Any]) -> dict[str, Any]:
    """Flatten the ``{"data": {...}}`` envelope some trackers send."""
    merged = dict(payload)
    nested = payload.get("data")
    if isinstance(nested, Mapping):
        merged.pop("data")
        merged.update(nested)
    return merged


def position_from_payload(payload: Mapping[str, Any], *, vehicle_id: str | None = None) -> VehiclePosition:
    """Parse a raw position payload.

    Parameters
    ----------
    payload
        Mapping in the wire format ``{vehicleId, latitude, longitude, speed,
        heading, accuracy, timestamp}``; common aliases are accepted.
    vehicle_id
        Fallback vehicle id when the payload does not carry one (e.g. it was
        taken from an MQTT topic).

    Raises
    ------
    InvalidPositionError
        If a required field is missing or cannot be parsed.
    """

    if not isinstance(payload, Mapping):
        raise InvalidPositionError(f"position payload must be an object, got {type(payload).__name__}")

    data = _unwrap(payload)
    if vehicle_id is not None and not any(data.get(k) for k in ("vehicleId", "vehicle_id", "deviceId", "id")):
        data["vehicleId"] = vehicle_id

    try:
        return VehiclePosition.model_validate(data)
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        loc = first.get("loc") or ("",)
        field = str(loc[0])
        raise InvalidPositionError(
            f"invalid position payload: {field or 'payload'}: {first.get('msg', 'validation failed')}",
            field=field,
            value=first.get("input"),
            vehicle_id=safe_str(data.get("vehicleId") or data.get("vehicle_id")),
        ) from exc
