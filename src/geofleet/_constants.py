"""Internal constants shared across the library."""

#: Mean Earth radius in metres used by all great-circle calculations.
EARTH_RADIUS_M = 6_371_000.0

#: km/h at or below which a vehicle is considered stationary.
DEFAULT_MOVING_THRESHOLD_KMH = 5.0
DEFAULT_OFFLINE_TIMEOUT_S = 5 * 60.0
DEFAULT_SWEEP_INTERVAL_S = 30.0
DEFAULT_TRIP_GAP_THRESHOLD_S = 10 * 60.0
DEFAULT_MIN_STOP_DURATION_S = 2 * 60.0
DEFAULT_MAX_FUTURE_SKEW_S = 60.0
DEFAULT_HISTORY_SIZE = 50

# Mirrors the ``speed_limit`` column default of the vehicles table.
DEFAULT_SPEED_LIMIT_KMH = 80

# Speed alerts become critical above this fraction of the limit.
DEFAULT_CRITICAL_EXCESS_RATIO = 0.2

DEFAULT_PERSISTENCE_QUEUE_CAPACITY = 1000
DEFAULT_PERSISTENCE_BACKOFF_BASE_S = 0.5
DEFAULT_PERSISTENCE_BACKOFF_MAX_S = 30.0

DEFAULT_MQTT_TOPIC = "fleet/+/position"
DEFAULT_MQTT_PORT = 1883

TOP_VIOLATORS_LIMIT = 10

# Threshold to distinguish epoch seconds from milliseconds.
MS_TIMESTAMP_THRESHOLD = 1e11
