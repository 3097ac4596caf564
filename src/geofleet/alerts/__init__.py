"""Alert sink."""

from geofleet.alerts.sink import AlertChange, AlertSink

__all__ = ["AlertChange", "AlertSink"]
