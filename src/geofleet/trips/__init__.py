"""Trip segmentation and aggregates."""

from geofleet.trips.aggregates import build_trip, trip_id
from geofleet.trips.segmenter import OpenTrip, TripSegmenter

__all__ = ["OpenTrip", "TripSegmenter", "build_trip", "trip_id"]
