"""Deduplicating work queue keyed by tier name.

Semantics follow the controller work queue pattern:
- a key is queued at most once, however many events name it
- a key is handed to at most one worker at a time; if it is added again while
  being processed it is re-queued once the worker calls ``done()``
- failed keys are re-added after an exponential, per-key backoff
"""

from __future__ import annotations

import asyncio
import logging

logger = logging.getLogger(__name__)


class WorkQueue:
    """Asyncio work queue. Must be used from a single event loop."""

    def __init__(self, base_delay_seconds: float = 5.0, max_delay_seconds: float = 300.0) -> None:
        if base_delay_seconds <= 0:
            raise ValueError("base_delay_seconds must be positive")
        if max_delay_seconds < base_delay_seconds:
            raise ValueError("max_delay_seconds must not be lower than base_delay_seconds")
        self._base_delay = base_delay_seconds
        self._max_delay = max_delay_seconds

        # None is the shutdown sentinel
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._queued: set[str] = set()
        self._processing: set[str] = set()
        self._dirty: set[str] = set()
        self._failures: dict[str, int] = {}
        self._timers: set[asyncio.TimerHandle] = set()
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._queued)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def add(self, key: str) -> None:
        """Queue ``key`` unless it is already queued."""
        if self._shutting_down or key in self._queued:
            return
        if key in self._processing:
            self._dirty.add(key)
            return
        self._queued.add(key)
        self._queue.put_nowait(key)

    def add_after(self, key: str, delay_seconds: float) -> None:
        """Queue ``key`` once ``delay_seconds`` have passed."""
        if self._shutting_down:
            return
        if delay_seconds <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()
        handle: asyncio.TimerHandle | None = None

        def fire() -> None:
            if handle is not None:
                self._timers.discard(handle)
            self.add(key)

        handle = loop.call_later(delay_seconds, fire)
        self._timers.add(handle)

    def add_rate_limited(self, key: str) -> float:
        """Re-queue a failed key after its backoff delay and return the delay."""
        failures = self._failures.get(key, 0) + 1
        self._failures[key] = failures
        delay = min(self._base_delay * 2 ** (failures - 1), self._max_delay)
        self.add_after(key, delay)
        logger.debug(
            "Requeued after failure",
            extra={"key": key, "failures": failures, "delay_seconds": delay},
        )
        return delay

    def forget(self, key: str) -> None:
        """Reset the backoff of ``key`` after a successful pass."""
        self._failures.pop(key, None)

    def failures(self, key: str) -> int:
        return self._failures.get(key, 0)

    async def get(self) -> str | None:
        """Wait for the next key; None once the queue is shut down."""
        key = await self._queue.get()
        if key is None or self._shutting_down:
            # Pass the sentinel on to the next waiting worker
            self._queue.put_nowait(None)
            return None
        self._queued.discard(key)
        self._processing.add(key)
        return key

    def done(self, key: str) -> None:
        """Mark ``key`` as processed, re-queueing it if it was added meanwhile."""
        self._processing.discard(key)
        if key in self._dirty:
            self._dirty.discard(key)
            self.add(key)

    def shut_down(self) -> None:
        """Stop handing out keys and drop pending delayed adds."""
        if self._shutting_down:
            return
        self._shutting_down = True
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()
        self._queue.put_nowait(None)
