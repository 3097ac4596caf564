"""Base model and timestamp type for geofleet records.

Every record inherits from :class:`FleetBaseModel` which provides:

* ``alias_generator=to_camel`` so the camelCase wire names
  (``vehicleId``, ``dwellTimeMinutes``) map to snake_case fields.
* A ``model_validator(mode="before")`` that strips sentinel values
  (``""``, ``"--"``, NaN) so the field default is used instead.

Timestamps use :data:`UtcTimestamp`, which accepts epoch seconds, epoch
milliseconds, ISO-8601 strings or datetimes and always yields an aware
UTC datetime.
"""

from __future__ import annotations

import math
from datetime import UTC, datetime
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, model_validator
from pydantic.alias_generators import to_camel

from geofleet._constants import MS_TIMESTAMP_THRESHOLD

# Sentinel strings upstream feeds use for "not available".
_SENTINELS = frozenset({"", "--", "NaN", "nan", "null"})


def parse_timestamp(value: Any) -> datetime | None:
    """Convert an epoch (seconds **or** milliseconds), ISO string or datetime to aware UTC.

    Returns ``None`` when the value is ``None``.  Raises :class:`ValueError`
    for anything else that cannot be interpreted as a point in time.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)
    if isinstance(value, bool):
        raise ValueError(f"not a timestamp: {value!r}")
    if isinstance(value, str):
        text = value.strip()
        try:
            value = float(text)
        except ValueError:
            try:
                parsed = datetime.fromisoformat(text)
            except ValueError as exc:
                raise ValueError(f"not a timestamp: {value!r}") from exc
            return parse_timestamp(parsed)
    if isinstance(value, (int, float)):
        if math.isnan(value) or value <= 0:
            raise ValueError(f"not a timestamp: {value!r}")
        ts = float(value)
        if ts > MS_TIMESTAMP_THRESHOLD:
            ts /= 1000.0
        return datetime.fromtimestamp(ts, tz=UTC)
    raise ValueError(f"not a timestamp: {value!r}")


UtcTimestamp = Annotated[datetime, BeforeValidator(parse_timestamp)]
"""Annotated type that coerces epochs and ISO strings to UTC datetimes."""


def clean_sentinels(values: dict[str, Any]) -> dict[str, Any]:
    """Drop ``None``, sentinel strings and NaN floats from *values*."""
    cleaned: dict[str, Any] = {}
    for key, value in values.items():
        if value is None:
            continue
        if isinstance(value, str) and value.strip() in _SENTINELS:
            continue
        if isinstance(value, float) and math.isnan(value):
            continue
        cleaned[key] = value
    return cleaned


class FleetBaseModel(BaseModel):
    """Base for immutable geofleet records."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    @model_validator(mode="before")
    @classmethod
    def _clean_values(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            return values
        return clean_sentinels(values)

    def to_wire(self) -> dict[str, Any]:
        """JSON-compatible dict using the camelCase wire names."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
