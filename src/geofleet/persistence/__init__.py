"""Durable persistence of alerts, trips and speed violations."""

from geofleet.persistence.base import OpKind, PersistenceBackend, PersistenceOp
from geofleet.persistence.queue import PersistenceQueue, backoff_delay
from geofleet.persistence.supabase import SupabaseBackend

__all__ = [
    "OpKind",
    "PersistenceBackend",
    "PersistenceOp",
    "PersistenceQueue",
    "SupabaseBackend",
    "backoff_delay",
]
