"""Append-only, deduplicated alert log."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime
from enum import StrEnum

from geofleet.exceptions import UnknownAlertError
from geofleet.models.alert import Alert, AlertFilter, alert_sort_key

_logger = logging.getLogger(__name__)


class AlertChange(StrEnum):
    CREATED = "created"
    READ = "read"
    ALL_READ = "all_read"
    READ_CLEARED = "read_cleared"


AlertListener = Callable[[AlertChange, Alert | None], None]


class AlertSink:
    """Thread-safe alert store keyed by id.

    Alerts carrying a ``dedupe_key`` that was already seen are not stored
    again.  The only mutation after creation is flipping ``read``.

    Dedupe keys outlive their alerts (``clear_read`` keeps them) until
    :meth:`forget_dedupe_before` drops the ones whose interval can no
    longer produce an alert.
    """

    def __init__(self, *, on_change: AlertListener | None = None) -> None:
        self._lock = threading.Lock()
        self._alerts: dict[str, Alert] = {}
        self._dedupe: dict[str, datetime] = {}
        self._on_change = on_change

    def __len__(self) -> int:
        return len(self._alerts)

    def _notify(self, change: AlertChange, alert: Alert | None) -> None:
        if self._on_change is not None:
            self._on_change(change, alert)

    def create(self, alert: Alert) -> Alert | None:
        """Store *alert*.

        Returns the stored alert, or ``None`` if it was a duplicate of an
        alert raised earlier for the same interval.
        """
        with self._lock:
            if alert.dedupe_key is not None and alert.dedupe_key in self._dedupe:
                _logger.debug("Duplicate alert suppressed key=%s", alert.dedupe_key)
                return None
            if alert.id in self._alerts:
                raise ValueError(f"alert id {alert.id} already stored")
            self._alerts[alert.id] = alert
            if alert.dedupe_key is not None:
                self._dedupe[alert.dedupe_key] = alert.timestamp
        _logger.info("Alert %s [%s] %s", alert.type, alert.priority, alert.message)
        self._notify(AlertChange.CREATED, alert)
        return alert

    def get(self, alert_id: str) -> Alert:
        try:
            return self._alerts[alert_id]
        except KeyError:
            raise UnknownAlertError(alert_id) from None

    def list(self, alert_filter: AlertFilter | None = None) -> list[Alert]:
        """Matching alerts, newest first."""
        with self._lock:
            alerts = list(self._alerts.values())
        if alert_filter is not None:
            alerts = [a for a in alerts if alert_filter.matches(a)]
        alerts.sort(key=alert_sort_key, reverse=True)
        if alert_filter is not None and alert_filter.limit is not None:
            alerts = alerts[: alert_filter.limit]
        return alerts

    def unread_count(self) -> int:
        with self._lock:
            return sum(1 for a in self._alerts.values() if not a.read)

    def mark_read(self, alert_id: str) -> Alert:
        with self._lock:
            current = self._alerts.get(alert_id)
            if current is None:
                raise UnknownAlertError(alert_id)
            if current.read:
                return current
            updated = current.model_copy(update={"read": True})
            self._alerts[alert_id] = updated
        self._notify(AlertChange.READ, updated)
        return updated

    def mark_all_read(self) -> int:
        """Mark every unread alert read. Returns how many changed."""
        with self._lock:
            unread = [a for a in self._alerts.values() if not a.read]
            for alert in unread:
                self._alerts[alert.id] = alert.model_copy(update={"read": True})
        if unread:
            self._notify(AlertChange.ALL_READ, None)
        return len(unread)

    def clear_read(self) -> int:
        """Delete every read alert. Returns how many were removed.

        Dedupe keys are kept so an interval that already alerted cannot
        alert again after its alert was cleared.
        """
        with self._lock:
            read_ids = [alert_id for alert_id, a in self._alerts.items() if a.read]
            for alert_id in read_ids:
                del self._alerts[alert_id]
        if read_ids:
            self._notify(AlertChange.READ_CLEARED, None)
        return len(read_ids)

    def forget_dedupe_before(self, cutoff: datetime) -> int:
        """Drop dedupe keys of alerts raised before *cutoff*. Returns how many were dropped.

        Safe once every interval still open started at or after *cutoff*:
        a closed interval never produces another alert.
        """
        with self._lock:
            stale = [key for key, raised_at in self._dedupe.items() if raised_at < cutoff]
            for key in stale:
                del self._dedupe[key]
        if stale:
            _logger.debug("Forgot %d dedupe keys older than %s", len(stale), cutoff.isoformat())
        return len(stale)
