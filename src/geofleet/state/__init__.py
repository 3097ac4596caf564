"""State layer.

Single source of truth for per-vehicle status, last position, history and
cached geofence membership.
"""

from geofleet.state.policy import IngestOutcome, derive_status
from geofleet.state.tracker import StateChange, VehicleStateTracker

__all__ = ["IngestOutcome", "StateChange", "VehicleStateTracker", "derive_status"]
