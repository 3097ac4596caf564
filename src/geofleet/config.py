"""Engine configuration for geofleet."""

from __future__ import annotations

import dataclasses
import os
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from geofleet._constants import (
    DEFAULT_CRITICAL_EXCESS_RATIO,
    DEFAULT_HISTORY_SIZE,
    DEFAULT_MAX_FUTURE_SKEW_S,
    DEFAULT_MIN_STOP_DURATION_S,
    DEFAULT_MOVING_THRESHOLD_KMH,
    DEFAULT_MQTT_PORT,
    DEFAULT_MQTT_TOPIC,
    DEFAULT_OFFLINE_TIMEOUT_S,
    DEFAULT_PERSISTENCE_BACKOFF_BASE_S,
    DEFAULT_PERSISTENCE_BACKOFF_MAX_S,
    DEFAULT_PERSISTENCE_QUEUE_CAPACITY,
    DEFAULT_SPEED_LIMIT_KMH,
    DEFAULT_SWEEP_INTERVAL_S,
    DEFAULT_TRIP_GAP_THRESHOLD_S,
)
from geofleet.exceptions import GeofleetConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


@dataclasses.dataclass(frozen=True)
class SupabaseConfig:
    """Connection details for the hosted Postgres REST endpoint.

    Parameters
    ----------
    url : str
        Project URL, e.g. ``https://abc.supabase.co``.
    api_key : str
        Service or anon key sent as ``apikey`` and bearer token.
    schema : str
        Postgres schema exposed through PostgREST.
    timeout : float
        Per-request timeout in seconds.
    """

    url: str
    api_key: str
    schema: str = "public"
    timeout: float = 10.0

    @property
    def rest_url(self) -> str:
        return f"{self.url.rstrip('/')}/rest/v1"


@dataclasses.dataclass(frozen=True)
class MqttConfig:
    """Broker settings for the MQTT position feed."""

    host: str
    port: int = DEFAULT_MQTT_PORT
    topic: str = DEFAULT_MQTT_TOPIC
    username: str | None = None
    password: str | None = None
    client_id: str = "geofleet-engine"
    keepalive: int = 60
    tls: bool = False


@dataclasses.dataclass(frozen=True)
class EngineConfig:
    """Engine configuration.

    Parameters
    ----------
    moving_threshold_kmh : float
        Speeds strictly above this are ``moving``.
    offline_timeout_s : float
        Silence after which the offline sweep marks a vehicle ``offline``.
    sweep_interval_s : float
        How often the background offline sweep runs.
    trip_gap_threshold_s : float
        Stationary (or silent) time that closes a trip.
    min_stop_duration_s : float
        Minimum stop length counted in ``stopsCount``.
    max_future_skew_s : float
        How far ahead of the wall clock a position timestamp may be.
    history_size : int
        Number of recent positions kept in each ``VehicleState``.
    default_speed_limit_kmh : int
        Speed limit for vehicles registered without one.
    critical_excess_ratio : float
        Excess above ``limit * ratio`` makes a speed alert critical.
    time_zone : str
        IANA zone in which ``time_violation`` windows are interpreted.
    strict_vehicles : bool
        Reject positions for unregistered vehicles with
        :class:`~geofleet.exceptions.UnknownVehicleError` instead of
        auto-registering them.
    persistence_queue_capacity : int
        Bounded size of the in-memory persistence retry queue.
    persistence_backoff_base_s : float
        First retry delay; doubles per failed attempt.
    persistence_backoff_max_s : float
        Retry delay cap.
    supabase : SupabaseConfig or None
        Enables durable persistence of alerts, trips and violations.
    mqtt : MqttConfig or None
        Enables the MQTT position feed.
    """

    moving_threshold_kmh: float = DEFAULT_MOVING_THRESHOLD_KMH
    offline_timeout_s: float = DEFAULT_OFFLINE_TIMEOUT_S
    sweep_interval_s: float = DEFAULT_SWEEP_INTERVAL_S
    trip_gap_threshold_s: float = DEFAULT_TRIP_GAP_THRESHOLD_S
    min_stop_duration_s: float = DEFAULT_MIN_STOP_DURATION_S
    max_future_skew_s: float = DEFAULT_MAX_FUTURE_SKEW_S
    history_size: int = DEFAULT_HISTORY_SIZE
    default_speed_limit_kmh: int = DEFAULT_SPEED_LIMIT_KMH
    critical_excess_ratio: float = DEFAULT_CRITICAL_EXCESS_RATIO
    time_zone: str = "UTC"
    strict_vehicles: bool = False
    persistence_queue_capacity: int = DEFAULT_PERSISTENCE_QUEUE_CAPACITY
    persistence_backoff_base_s: float = DEFAULT_PERSISTENCE_BACKOFF_BASE_S
    persistence_backoff_max_s: float = DEFAULT_PERSISTENCE_BACKOFF_MAX_S
    supabase: SupabaseConfig | None = None
    mqtt: MqttConfig | None = None

    def __post_init__(self) -> None:
        for name in (
            "offline_timeout_s",
            "sweep_interval_s",
            "trip_gap_threshold_s",
            "persistence_backoff_base_s",
            "persistence_backoff_max_s",
        ):
            if getattr(self, name) <= 0:
                raise GeofleetConfigError(f"{name} must be positive, got {getattr(self, name)}")
        for name in ("moving_threshold_kmh", "min_stop_duration_s", "max_future_skew_s", "critical_excess_ratio"):
            if getattr(self, name) < 0:
                raise GeofleetConfigError(f"{name} must not be negative, got {getattr(self, name)}")
        if self.history_size < 1:
            raise GeofleetConfigError(f"history_size must be at least 1, got {self.history_size}")
        if self.persistence_queue_capacity < 1:
            raise GeofleetConfigError(
                f"persistence_queue_capacity must be at least 1, got {self.persistence_queue_capacity}"
            )
        if self.default_speed_limit_kmh <= 0:
            raise GeofleetConfigError(f"default_speed_limit_kmh must be positive, got {self.default_speed_limit_kmh}")
        try:
            ZoneInfo(self.time_zone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise GeofleetConfigError(f"Unknown time zone: {self.time_zone!r}") from exc

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.time_zone)

    @classmethod
    def from_env(cls, **overrides: Any) -> EngineConfig:
        """Create configuration from environment variables.

        Reads optional ``GEOFLEET_*`` variables for the engine thresholds,
        ``GEOFLEET_SUPABASE_URL``/``GEOFLEET_SUPABASE_KEY`` for persistence
        and ``GEOFLEET_MQTT_*`` for the position feed. Explicit keyword
        arguments override environment values.

        Parameters
        ----------
        **overrides
            Explicit field values that take precedence over env vars.

        Returns
        -------
        EngineConfig
            Populated configuration.
        """
        env = os.environ

        _ENV_FLOAT_MAP = {
            "GEOFLEET_MOVING_THRESHOLD_KMH": "moving_threshold_kmh",
            "GEOFLEET_OFFLINE_TIMEOUT_S": "offline_timeout_s",
            "GEOFLEET_SWEEP_INTERVAL_S": "sweep_interval_s",
            "GEOFLEET_TRIP_GAP_THRESHOLD_S": "trip_gap_threshold_s",
            "GEOFLEET_MIN_STOP_DURATION_S": "min_stop_duration_s",
            "GEOFLEET_MAX_FUTURE_SKEW_S": "max_future_skew_s",
            "GEOFLEET_CRITICAL_EXCESS_RATIO": "critical_excess_ratio",
            "GEOFLEET_PERSISTENCE_BACKOFF_BASE_S": "persistence_backoff_base_s",
            "GEOFLEET_PERSISTENCE_BACKOFF_MAX_S": "persistence_backoff_max_s",
        }
        _ENV_INT_MAP = {
            "GEOFLEET_HISTORY_SIZE": "history_size",
            "GEOFLEET_DEFAULT_SPEED_LIMIT_KMH": "default_speed_limit_kmh",
            "GEOFLEET_PERSISTENCE_QUEUE_CAPACITY": "persistence_queue_capacity",
        }

        config_kwargs: dict[str, Any] = {}
        try:
            for env_key, field_name in _ENV_FLOAT_MAP.items():
                val = env.get(env_key)
                if val is not None and field_name not in overrides:
                    config_kwargs[field_name] = float(val)
            for env_key, field_name in _ENV_INT_MAP.items():
                val = env.get(env_key)
                if val is not None and field_name not in overrides:
                    config_kwargs[field_name] = int(val)
        except ValueError as exc:
            raise GeofleetConfigError(f"Invalid numeric environment value: {exc}") from exc

        tz_env = env.get("GEOFLEET_TIME_ZONE")
        if tz_env is not None and "time_zone" not in overrides:
            config_kwargs["time_zone"] = tz_env

        if "strict_vehicles" not in overrides:
            config_kwargs["strict_vehicles"] = _env_bool(env.get("GEOFLEET_STRICT_VEHICLES"), False)

        if "supabase" not in overrides:
            url = env.get("GEOFLEET_SUPABASE_URL")
            key = env.get("GEOFLEET_SUPABASE_KEY")
            if url and key:
                config_kwargs["supabase"] = SupabaseConfig(
                    url=url,
                    api_key=key,
                    schema=env.get("GEOFLEET_SUPABASE_SCHEMA", "public"),
                )
            elif url or key:
                raise GeofleetConfigError("GEOFLEET_SUPABASE_URL and GEOFLEET_SUPABASE_KEY must be set together")

        if "mqtt" not in overrides:
            host = env.get("GEOFLEET_MQTT_HOST")
            if host:
                mqtt_kwargs: dict[str, Any] = {"host": host}
                port_env = env.get("GEOFLEET_MQTT_PORT")
                if port_env is not None:
                    mqtt_kwargs["port"] = int(port_env)
                for env_key, field_name in (
                    ("GEOFLEET_MQTT_TOPIC", "topic"),
                    ("GEOFLEET_MQTT_USERNAME", "username"),
                    ("GEOFLEET_MQTT_PASSWORD", "password"),
                    ("GEOFLEET_MQTT_CLIENT_ID", "client_id"),
                ):
                    val = env.get(env_key)
                    if val is not None:
                        mqtt_kwargs[field_name] = val
                mqtt_kwargs["tls"] = _env_bool(env.get("GEOFLEET_MQTT_TLS"), False)
                config_kwargs["mqtt"] = MqttConfig(**mqtt_kwargs)

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
