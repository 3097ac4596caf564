"""Ingestion layer.

Adapters that receive position reports (direct calls, MQTT) and turn them
into validated :class:`~geofleet.models.position.VehiclePosition` records.
"""

from geofleet.ingestion.normalize import position_from_payload
from geofleet.ingestion.validate import validate_position

__all__ = ["position_from_payload", "validate_position"]
