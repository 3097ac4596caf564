"""Supabase (PostgREST) persistence backend.

Rows follow the dashboard's snake_case tables (``alerts``, ``trips``,
``location_points``, ``route_events``, ``speed_violations``,
``geofences``).  Inserts are upserts on ``id`` so that a retried operation
never duplicates a row.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

import aiohttp

from geofleet._redact import redact_for_log
from geofleet.config import SupabaseConfig
from geofleet.exceptions import PersistenceError
from geofleet.models.alert import Alert
from geofleet.models.speed import SpeedViolation
from geofleet.models.trip import Trip
from geofleet.persistence.base import OpKind, PersistenceOp

_logger = logging.getLogger(__name__)

_UPSERT = "resolution=merge-duplicates,return=minimal"
_MINIMAL = "return=minimal"


def _iso(value: Any) -> str:
    return value.isoformat()


def alert_row(alert: Alert) -> dict[str, Any]:
    return {
        "id": alert.id,
        "type": str(alert.type),
        "priority": str(alert.priority),
        "vehicle_id": alert.vehicle_id,
        "vehicle_name": alert.vehicle_name,
        "message": alert.message,
        "timestamp": _iso(alert.timestamp),
        "read": alert.read,
        "latitude": alert.latitude,
        "longitude": alert.longitude,
        "speed": round(alert.speed) if alert.speed is not None else None,
        "speed_limit": alert.speed_limit,
        "geofence_name": alert.geofence_name,
    }


def trip_row(trip: Trip) -> dict[str, Any]:
    return {
        "id": trip.id,
        "vehicle_id": trip.vehicle_id,
        "start_time": _iso(trip.start_time),
        "end_time": _iso(trip.end_time),
        "total_distance": round(trip.total_distance),
        "travel_time": round(trip.travel_time),
        "stopped_time": round(trip.stopped_time),
        "average_speed": round(trip.average_speed),
        "max_speed": round(trip.max_speed),
        "stops_count": trip.stops_count,
    }


def location_point_rows(trip: Trip) -> list[dict[str, Any]]:
    return [
        {
            "trip_id": trip.id,
            "latitude": p.latitude,
            "longitude": p.longitude,
            "speed": round(p.speed),
            "heading": round(p.heading),
            "timestamp": _iso(p.timestamp),
            "accuracy": p.accuracy,
        }
        for p in trip.points
    ]


def route_event_rows(trip: Trip) -> list[dict[str, Any]]:
    return [
        {
            "id": e.id,
            "trip_id": trip.id,
            "type": str(e.type),
            "latitude": e.latitude,
            "longitude": e.longitude,
            "timestamp": _iso(e.timestamp),
            "duration": round(e.duration) if e.duration is not None else None,
            "speed": round(e.speed) if e.speed is not None else None,
            "speed_limit": e.speed_limit,
            "geofence_name": e.geofence_name,
            "address": e.address,
        }
        for e in trip.events
    ]


def speed_violation_row(violation: SpeedViolation) -> dict[str, Any]:
    return {
        "id": violation.id,
        "vehicle_id": violation.vehicle_id,
        "vehicle_name": violation.vehicle_name,
        "speed": round(violation.speed),
        "speed_limit": violation.speed_limit,
        "excess_speed": round(violation.excess_speed),
        "timestamp": _iso(violation.timestamp),
        "latitude": violation.latitude,
        "longitude": violation.longitude,
        "duration": round(violation.duration),
    }


class SupabaseBackend:
    """aiohttp client writing persistence operations through PostgREST.

    Pass an existing ``aiohttp.ClientSession`` to share a connection pool;
    otherwise one is created lazily and closed by :meth:`close`.
    """

    def __init__(self, config: SupabaseConfig, *, session: aiohttp.ClientSession | None = None) -> None:
        self._config = config
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> SupabaseBackend:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def _http(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self._config.timeout))
            self._owns_session = True
        return self._session

    def _headers(self, prefer: str) -> dict[str, str]:
        headers = {
            "apikey": self._config.api_key,
            "Authorization": f"Bearer {self._config.api_key}",
            "Content-Type": "application/json",
            "Prefer": prefer,
        }
        if self._config.schema != "public":
            headers["Content-Profile"] = self._config.schema
            headers["Accept-Profile"] = self._config.schema
        return headers

    async def _request(
        self,
        method: str,
        table: str,
        *,
        params: Mapping[str, str] | None = None,
        json: Any = None,
        prefer: str = _MINIMAL,
    ) -> None:
        url = f"{self._config.rest_url}/{table}"
        headers = self._headers(prefer)
        _logger.debug("%s %s params=%s headers=%s", method, url, params, redact_for_log(headers))
        try:
            async with self._http().request(method, url, params=params, json=json, headers=headers) as resp:
                if resp.status >= 300:
                    text = await resp.text()
                    raise PersistenceError(
                        f"HTTP {resp.status} from {table}: {text[:200]}",
                        status_code=resp.status,
                        table=table,
                    )
        except PersistenceError:
            raise
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise PersistenceError(f"Request to {table} failed: {exc}", table=table) from exc

    async def write(self, op: PersistenceOp) -> None:
        match op.kind:
            case OpKind.INSERT_ALERT:
                await self._request("POST", "alerts", json=alert_row(op.payload), prefer=_UPSERT)
            case OpKind.MARK_ALERT_READ:
                await self._request("PATCH", "alerts", params={"id": f"eq.{op.payload}"}, json={"read": True})
            case OpKind.MARK_ALL_ALERTS_READ:
                await self._request("PATCH", "alerts", params={"read": "eq.false"}, json={"read": True})
            case OpKind.CLEAR_READ_ALERTS:
                await self._request("DELETE", "alerts", params={"read": "eq.true"})
            case OpKind.INSERT_TRIP:
                await self._write_trip(op.payload)
            case OpKind.INSERT_SPEED_VIOLATION:
                await self._request(
                    "POST", "speed_violations", json=speed_violation_row(op.payload), prefer=_UPSERT
                )
            case OpKind.UPDATE_GEOFENCE_TRIGGERED:
                geofence_id, timestamp = op.payload
                await self._request(
                    "PATCH",
                    "geofences",
                    params={"id": f"eq.{geofence_id}"},
                    json={"last_triggered": _iso(timestamp)},
                )

    async def _write_trip(self, trip: Trip) -> None:
        await self._request("POST", "trips", json=trip_row(trip), prefer=_UPSERT)
        # Location points carry no id of their own; replace them wholesale so
        # a retried trip never doubles its points.
        await self._request("DELETE", "location_points", params={"trip_id": f"eq.{trip.id}"})
        if trip.points:
            await self._request("POST", "location_points", json=location_point_rows(trip))
        if trip.events:
            await self._request("POST", "route_events", json=route_event_rows(trip), prefer=_UPSERT)
