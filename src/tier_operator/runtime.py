"""Operator runtime: event source, work queue and reconcile workers.

Change events are mapped to tier keys and queued; a fixed set of workers
drains the queue. A periodic resync re-queues every tier so a lost event
delays a rollout by at most one resync interval.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Protocol

from .config import Config
from .events import ChangeEvent, EventRouter
from .reconciler import ReconcileOutcome, ReconcileStatus, TierReconciler
from .store import StoreError, TierStore
from .workqueue import WorkQueue

logger = logging.getLogger(__name__)


class EventSource(Protocol):
    """Delivers change events on the event loop until stopped."""

    def start(self, emit: Callable[[ChangeEvent], None]) -> None: ...

    def stop(self) -> None: ...


class Operator:
    """Wires the event source, work queue and reconciler together."""

    def __init__(
        self,
        config: Config,
        reconciler: TierReconciler,
        store: TierStore,
        event_source: EventSource | None = None,
    ) -> None:
        self._config = config
        self._reconciler = reconciler
        self._store = store
        self._event_source = event_source
        self._queue = WorkQueue(
            base_delay_seconds=config.requeue_base_seconds,
            max_delay_seconds=config.requeue_max_seconds,
        )
        self._router = EventRouter(self._queue.add)
        self._shutdown_event = asyncio.Event()
        self._outcomes: list[ReconcileOutcome] = []

    @property
    def queue(self) -> WorkQueue:
        return self._queue

    @property
    def outcomes(self) -> list[ReconcileOutcome]:
        """Outcomes of every reconcile call so far, oldest first."""
        return self._outcomes

    def handle_event(self, event: ChangeEvent) -> None:
        self._router.handle(event)

    async def run(self) -> None:
        """Run until shutdown() is called.

        In-flight passes stop before their next create once shutdown is
        requested; run() returns after every worker has exited.
        """
        logger.info(
            "Starting operator",
            extra={
                "namespace": self._config.namespace,
                "member_clusters": list(self._config.member_clusters),
                "max_pool_size": self._config.max_pool_size,
                "page_size": self._config.page_size,
                "workers": self._config.workers,
                "dry_run": self._config.dry_run,
            },
        )

        workers = [
            asyncio.create_task(self._worker(i), name=f"reconcile-worker-{i}")
            for i in range(self._config.workers)
        ]
        resync_task = asyncio.create_task(self._resync_loop(), name="resync")
        if self._event_source is not None:
            self._event_source.start(self.handle_event)

        try:
            await self._shutdown_event.wait()
        finally:
            self._queue.shut_down()
            if self._event_source is not None:
                self._event_source.stop()
            resync_task.cancel()
            await asyncio.gather(resync_task, *workers, return_exceptions=True)

        logger.info("Operator shutdown complete")

    def shutdown(self) -> None:
        """Signal the operator to stop."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()
        self._queue.shut_down()

    async def resync(self) -> int:
        """Queue every tier once and return how many were queued."""
        try:
            names = await self._store.list_tier_names()
        except StoreError as e:
            logger.warning("Resync failed to list tiers", extra={"error": str(e)})
            return 0
        for name in names:
            self._queue.add(name)
        logger.debug("Resync queued tiers", extra={"tiers": names})
        return len(names)

    async def _resync_loop(self) -> None:
        # The first resync doubles as the startup list
        await self.resync()
        interval = self._config.resync_interval_seconds
        if interval == 0:
            return
        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
            except TimeoutError:
                await self.resync()

    async def _worker(self, index: int) -> None:
        while True:
            key = await self._queue.get()
            if key is None:
                logger.debug("Worker stopping", extra={"worker": index})
                return
            try:
                outcome = await self._reconciler.reconcile(key, self._shutdown_event)
            except Exception:
                # Unexpected failure; retry with backoff rather than lose the key
                logger.exception("Reconcile raised unexpectedly", extra={"tier": key})
                self._queue.add_rate_limited(key)
            else:
                self._outcomes.append(outcome)
                if outcome.status is ReconcileStatus.REQUEUE:
                    self._queue.add_rate_limited(key)
                else:
                    self._queue.forget(key)
            finally:
                self._queue.done(key)
