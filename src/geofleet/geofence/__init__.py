"""Geofence index: the canonical geofence set and containment tests."""

from geofleet.geofence.index import GeofenceIndex, coerce_geofence, contains

__all__ = ["GeofenceIndex", "coerce_geofence", "contains"]
