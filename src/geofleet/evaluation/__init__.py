"""Rule evaluation: geofence rules and the speed limit rule."""

from geofleet.evaluation.geofence_rules import GeofenceEvaluation, RuleEvaluator
from geofleet.evaluation.speed import SpeedMonitor, SpeedObservation, speed_priority

__all__ = ["GeofenceEvaluation", "RuleEvaluator", "SpeedMonitor", "SpeedObservation", "speed_priority"]
