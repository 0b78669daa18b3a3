"""Reconcile entry point for one NSTemplateTier.

Loads the tier, runs one admission pass and maps the outcome to the
tri-state result the runtime acts on:

- DONE: nothing to do until the next change event
- REQUEUE: transient failure, retry the whole pass after a backoff
- FATAL: the tier is malformed; surfaced and not retried until it changes
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .config import Config
from .models import MalformedTierError
from .scheduler import AdmissionScheduler, PassResult
from .store import NotFoundError, StoreError, TierStore

logger = logging.getLogger(__name__)


class ReconcileStatus(str, Enum):
    """Outcome of a reconcile call."""

    DONE = "Done"
    REQUEUE = "Requeue"
    FATAL = "FatalConfigError"


@dataclass
class ReconcileOutcome:
    """Outcome of one reconcile call for one tier."""

    tier_name: str
    status: ReconcileStatus
    result: PassResult | None = None
    error: Exception | None = None

    @property
    def success(self) -> bool:
        return self.status is ReconcileStatus.DONE


class TierReconciler:
    """Runs admission passes, at most one at a time per tier.

    Passes for different tiers may run concurrently; capacity is tracked per
    tier so they need no coordination.
    """

    def __init__(
        self,
        config: Config,
        store: TierStore,
        member_clusters: Callable[[], Sequence[str]] | None = None,
    ) -> None:
        """Initialize reconciler with configuration.

        Args:
            config: Validated operator configuration.
            store: Store holding tiers, records and update requests.
            member_clusters: Returns the target clusters in scan order;
                defaults to the configured member clusters.
        """
        self._config = config
        self._store = store
        self._member_clusters = member_clusters or (lambda: config.member_clusters)
        self._scheduler = AdmissionScheduler(
            store,
            namespace=config.namespace,
            max_pool_size=config.max_pool_size,
            page_size=config.page_size,
            dry_run=config.dry_run,
        )
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @property
    def config(self) -> Config:
        """Get the reconciler configuration."""
        return self._config

    @asynccontextmanager
    async def _tier_lock(self, tier_name: str) -> AsyncIterator[None]:
        """Hold the tier's lock; it is dropped once no pass holds or awaits it."""
        lock = self._locks.setdefault(tier_name, asyncio.Lock())
        self._lock_users[tier_name] = self._lock_users.get(tier_name, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[tier_name] -= 1
            if not self._lock_users[tier_name]:
                del self._lock_users[tier_name]
                del self._locks[tier_name]

    async def reconcile(
        self, tier_name: str, stop_event: asyncio.Event | None = None
    ) -> ReconcileOutcome:
        """Reconcile one tier.

        Args:
            tier_name: Name of the tier, the key of the triggering event.
            stop_event: Set on shutdown to end the pass before its next create.
        """
        async with self._tier_lock(tier_name):
            outcome = await self._reconcile_locked(tier_name, stop_event)
        self._log_outcome(outcome)
        return outcome

    async def _reconcile_locked(
        self, tier_name: str, stop_event: asyncio.Event | None
    ) -> ReconcileOutcome:
        try:
            tier = await self._store.get_tier(tier_name)
        except NotFoundError:
            # Tier was deleted; its requests are cleaned up by their executor
            logger.info("NSTemplateTier not found, nothing to do", extra={"tier": tier_name})
            return ReconcileOutcome(tier_name=tier_name, status=ReconcileStatus.DONE)
        except MalformedTierError as e:
            return ReconcileOutcome(tier_name=tier_name, status=ReconcileStatus.FATAL, error=e)
        except StoreError as e:
            return ReconcileOutcome(tier_name=tier_name, status=ReconcileStatus.REQUEUE, error=e)

        try:
            result = await self._scheduler.run_pass(tier, self._member_clusters(), stop_event)
        except StoreError as e:
            return ReconcileOutcome(tier_name=tier_name, status=ReconcileStatus.REQUEUE, error=e)

        return ReconcileOutcome(tier_name=tier_name, status=ReconcileStatus.DONE, result=result)

    def _log_outcome(self, outcome: ReconcileOutcome) -> None:
        """Log reconcile outcome with structured data."""
        extra: dict[str, Any] = {"tier": outcome.tier_name, "status": outcome.status.value}

        result = outcome.result
        if result is not None:
            extra.update(
                {
                    "duration_seconds": result.duration_seconds,
                    "tier_hash": result.tier_hash,
                    "capacity_at_start": result.capacity_at_start,
                    "created_count": len(result.created),
                    "already_existing_count": len(result.already_existing),
                    "skipped_in_flight": result.skipped_in_flight,
                    "records_scanned": result.records_scanned,
                    "pages_read": result.pages_read,
                    "capacity_exhausted": result.capacity_exhausted,
                    "cancelled": result.cancelled,
                    "dry_run": result.dry_run,
                }
            )

        if outcome.error is not None:
            extra["error"] = str(outcome.error)
            extra["error_type"] = type(outcome.error).__name__

        match outcome.status:
            case ReconcileStatus.FATAL:
                logger.error("NSTemplateTier is malformed, not retrying", extra=extra)
            case ReconcileStatus.REQUEUE:
                logger.warning("Reconciliation failed, will retry", extra=extra)
            case _:
                logger.info("Reconciliation result", extra=extra)
