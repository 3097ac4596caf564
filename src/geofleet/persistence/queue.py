"""Bounded retry queue between the engine and a persistence backend.

``submit`` never blocks and never raises: ingest throughput must not depend
on the durable store.  A single worker task writes operations in order,
retrying failures with exponential backoff.  When the queue is full the
oldest operation is dropped.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable

from geofleet._constants import (
    DEFAULT_PERSISTENCE_BACKOFF_BASE_S,
    DEFAULT_PERSISTENCE_BACKOFF_MAX_S,
    DEFAULT_PERSISTENCE_QUEUE_CAPACITY,
)
from geofleet.exceptions import PersistenceError
from geofleet.persistence.base import PersistenceBackend, PersistenceOp

_logger = logging.getLogger(__name__)


def backoff_delay(attempt: int, base_s: float, max_s: float) -> float:
    """Delay before retry number *attempt* (1-based)."""
    return min(base_s * 2 ** (attempt - 1), max_s)


class PersistenceQueue:
    def __init__(
        self,
        backend: PersistenceBackend,
        *,
        capacity: int = DEFAULT_PERSISTENCE_QUEUE_CAPACITY,
        backoff_base_s: float = DEFAULT_PERSISTENCE_BACKOFF_BASE_S,
        backoff_max_s: float = DEFAULT_PERSISTENCE_BACKOFF_MAX_S,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self._backend = backend
        self._capacity = capacity
        self._backoff_base_s = backoff_base_s
        self._backoff_max_s = backoff_max_s
        self._sleep = sleep
        self._pending: deque[PersistenceOp] = deque()
        self._wakeup: asyncio.Event | None = None
        self._idle: asyncio.Event | None = None
        self._task: asyncio.Task[None] | None = None
        self.written = 0
        self.dropped = 0
        self.failures = 0

    def __len__(self) -> int:
        return len(self._pending)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def submit(self, op: PersistenceOp) -> None:
        if len(self._pending) >= self._capacity:
            lost = self._pending.popleft()
            self.dropped += 1
            _logger.warning("Persistence queue full (%d); dropping oldest %s", self._capacity, lost.kind)
        self._pending.append(op)
        if self._wakeup is not None:
            self._wakeup.set()
        if self._idle is not None:
            self._idle.clear()

    def start(self) -> None:
        """Start the worker on the running loop."""
        if self.is_running:
            return
        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        if self._pending:
            self._wakeup.set()
        else:
            self._idle.set()
        self._task = asyncio.get_running_loop().create_task(self._run(), name="geofleet-persistence")
        _logger.debug("Persistence worker started")

    async def stop(self, *, drain_timeout: float | None = 5.0) -> None:
        """Stop the worker, first trying to drain pending operations."""
        task = self._task
        if task is None:
            return
        if drain_timeout and self._pending:
            try:
                await asyncio.wait_for(self.join(), timeout=drain_timeout)
            except TimeoutError:
                _logger.warning("Persistence queue stopped with %d operations pending", len(self._pending))
        self._task = None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        _logger.debug("Persistence worker stopped")

    async def join(self) -> None:
        """Wait until every pending operation has been written."""
        if self._idle is None:
            raise RuntimeError("persistence queue is not running")
        await self._idle.wait()

    async def _run(self) -> None:
        assert self._wakeup is not None and self._idle is not None
        attempt = 0
        while True:
            if not self._pending:
                self._idle.set()
                self._wakeup.clear()
                await self._wakeup.wait()
                continue

            op = self._pending[0]
            try:
                await self._backend.write(op)
            except PersistenceError as exc:
                attempt += 1
                self.failures += 1
                delay = backoff_delay(attempt, self._backoff_base_s, self._backoff_max_s)
                _logger.warning(
                    "Persisting %s failed (attempt %d): %s; retrying in %.1fs",
                    op.kind,
                    attempt,
                    exc,
                    delay,
                )
                await self._sleep(delay)
                continue
            except Exception:
                _logger.exception("Unexpected error persisting %s; operation dropped", op.kind)
                self.dropped += 1
            else:
                self.written += 1
            attempt = 0
            # The head may have been dropped by ``submit`` while being written.
            if self._pending and self._pending[0] is op:
                self._pending.popleft()
