"""Canonical geofence set and containment queries.

Reads are lock-free against an immutable snapshot; writes (rare) build a new
snapshot under a lock and swap it in.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Mapping
from datetime import datetime
from types import MappingProxyType
from typing import Any

from pydantic import ValidationError

from geofleet._geo import haversine_m, point_in_polygon
from geofleet.exceptions import InvalidGeofenceError, UnknownGeofenceError
from geofleet.models.geofence import CircleShape, Geofence, PolygonShape
from geofleet.models.position import VehiclePosition
from geofleet.models.vehicle import Membership

_logger = logging.getLogger(__name__)


def contains(geofence: Geofence, latitude: float, longitude: float) -> bool:
    """Whether (latitude, longitude) lies inside *geofence*. Boundaries are inside."""
    match geofence.shape:
        case CircleShape(center=center, radius=radius):
            return haversine_m(center.latitude, center.longitude, latitude, longitude) <= radius
        case PolygonShape() as polygon:
            return point_in_polygon(latitude, longitude, polygon.vertices)


def coerce_geofence(value: Geofence | Mapping[str, Any]) -> Geofence:
    """Accept a model or a raw mapping in the wire/table layout."""
    if isinstance(value, Geofence):
        return value
    try:
        return Geofence.model_validate(dict(value))
    except ValidationError as exc:
        raise InvalidGeofenceError(f"invalid geofence {value.get('id', '<no id>')!r}: {exc}") from exc


class GeofenceIndex:
    """Copy-on-write map of geofence id -> :class:`Geofence`."""

    def __init__(self, geofences: Iterable[Geofence | Mapping[str, Any]] = ()) -> None:
        self._lock = threading.Lock()
        initial = {g.id: g for g in (coerce_geofence(item) for item in geofences)}
        self._snapshot: Mapping[str, Geofence] = MappingProxyType(initial)

    def __len__(self) -> int:
        return len(self._snapshot)

    def __contains__(self, geofence_id: object) -> bool:
        return geofence_id in self._snapshot

    def snapshot(self) -> Mapping[str, Geofence]:
        """Current immutable view. Safe to iterate while writers run."""
        return self._snapshot

    def get(self, geofence_id: str) -> Geofence:
        try:
            return self._snapshot[geofence_id]
        except KeyError:
            raise UnknownGeofenceError(geofence_id) from None

    def list(self) -> list[Geofence]:
        return sorted(self._snapshot.values(), key=lambda g: (g.name, g.id))

    def applicable(self, vehicle_id: str) -> list[Geofence]:
        """Active geofences assigned to *vehicle_id* (or to every vehicle)."""
        return [g for g in self._snapshot.values() if g.applies_to(vehicle_id)]

    def query(self, position: VehiclePosition, geofence_id: str) -> Membership:
        geofence = self.get(geofence_id)
        if contains(geofence, position.latitude, position.longitude):
            return Membership.INSIDE
        return Membership.OUTSIDE

    def upsert(self, geofence: Geofence | Mapping[str, Any]) -> Geofence:
        """Insert or replace a geofence.

        Raises
        ------
        InvalidGeofenceError
            If a raw mapping fails shape or rule validation.
        """
        model = coerce_geofence(geofence)
        with self._lock:
            updated = dict(self._snapshot)
            updated[model.id] = model
            self._snapshot = MappingProxyType(updated)
        _logger.debug("Geofence %s upserted (%s, %d rules)", model.id, model.shape.type, len(model.rules))
        return model

    def remove(self, geofence_id: str) -> Geofence:
        with self._lock:
            if geofence_id not in self._snapshot:
                raise UnknownGeofenceError(geofence_id)
            updated = dict(self._snapshot)
            removed = updated.pop(geofence_id)
            self._snapshot = MappingProxyType(updated)
        _logger.debug("Geofence %s removed", geofence_id)
        return removed

    def mark_triggered(self, geofence_id: str, timestamp: datetime) -> Geofence | None:
        """Advance ``last_triggered``; never moves it backwards.

        Returns the updated geofence, or ``None`` when nothing changed (the
        geofence was removed meanwhile or already carries a later time).
        """
        with self._lock:
            current = self._snapshot.get(geofence_id)
            if current is None:
                return None
            if current.last_triggered is not None and current.last_triggered >= timestamp:
                return None
            updated_geofence = current.model_copy(update={"last_triggered": timestamp})
            updated = dict(self._snapshot)
            updated[geofence_id] = updated_geofence
            self._snapshot = MappingProxyType(updated)
        return updated_geofence
