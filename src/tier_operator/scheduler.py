"""Admission-controlled rollout of tier changes.

One pass, for one tier:
1. Count the live TemplateUpdateRequests of the tier. A full pool ends the
   pass before a single MasterUserRecord is read.
2. Walk the member clusters in their declared order, paging through the
   records that use the tier on each cluster.
3. Admit a request for every stale record/cluster pair that has none yet,
   until the free capacity is used up, possibly in the middle of a page.

The pass never waits for requests to be executed. Records it did not reach
are picked up by a later pass, triggered when a request is deleted or a
record's labels change.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import UTC, datetime

from .fingerprint import compute_tier_hash
from .models import MasterUserRecord, NSTemplateTier, TemplateUpdateRequest, work_item_name
from .pool import PoolAccountant
from .scanner import RecordScanner
from .staleness import is_stale
from .store import CreateOutcome, TierStore

logger = logging.getLogger(__name__)


def distinct_clusters(clusters: Iterable[str]) -> list[str]:
    """Clusters in declared order, each once."""
    seen: list[str] = []
    for cluster in clusters:
        if cluster and cluster not in seen:
            seen.append(cluster)
    return seen


@dataclass
class PassResult:
    """Result of a single admission pass."""

    tier_name: str
    tier_hash: str = ""
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    dry_run: bool = False

    # Pool at the start of the pass
    capacity_at_start: int = 0
    live_at_start: int = 0
    reclaimable_at_start: int = 0

    # Requests admitted by this pass (planned only, in dry-run mode)
    created: list[str] = field(default_factory=list)
    already_existing: list[str] = field(default_factory=list)

    clusters_scanned: list[str] = field(default_factory=list)
    pages_read: int = 0
    records_scanned: int = 0
    stale_found: int = 0
    skipped_in_flight: int = 0

    capacity_exhausted: bool = False
    cancelled: bool = False

    @property
    def admitted(self) -> int:
        """Requests that count against the pool after this pass."""
        return len(self.created) + len(self.already_existing)

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()


class AdmissionScheduler:
    """Decides which stale records get a TemplateUpdateRequest in this pass.

    Free capacity is threaded through the scan as a plain value. Two passes
    for the same tier must not run at the same time; reconciler.TierReconciler
    serializes them.
    """

    def __init__(
        self,
        store: TierStore,
        *,
        namespace: str,
        max_pool_size: int,
        page_size: int,
        dry_run: bool = False,
    ) -> None:
        self._store = store
        self._namespace = namespace
        self._accountant = PoolAccountant(store, max_pool_size)
        self._scanner = RecordScanner(store, page_size)
        self._dry_run = dry_run

    async def run_pass(
        self,
        tier: NSTemplateTier,
        clusters: Iterable[str],
        stop_event: asyncio.Event | None = None,
    ) -> PassResult:
        """Run one pass for ``tier`` over ``clusters``.

        Args:
            tier: Validated tier to roll out.
            clusters: Member clusters, scanned in this order.
            stop_event: When set, the pass stops before its next create.

        Raises:
            StoreError: On read or write failures. Requests created before the
                failure stay in place.
        """
        tier_hash = compute_tier_hash(tier)
        result = PassResult(tier_name=tier.name, tier_hash=tier_hash, dry_run=self._dry_run)

        pool = await self._accountant.assess(tier.name)
        result.capacity_at_start = pool.remaining
        result.live_at_start = len(pool.live)
        result.reclaimable_at_start = len(pool.reclaimable)

        remaining = pool.remaining
        if remaining == 0:
            logger.info(
                "Update request pool is full, skipping record scan",
                extra={"tier": tier.name, "live": len(pool.live)},
            )
            result.capacity_exhausted = True
            result.end_time = datetime.now(UTC)
            return result

        in_flight = set(pool.names)
        for cluster in distinct_clusters(clusters):
            result.clusters_scanned.append(cluster)
            remaining = await self._admit_cluster(
                tier, tier_hash, cluster, remaining, in_flight, result, stop_event
            )
            if remaining == 0 or result.cancelled:
                break

        result.end_time = datetime.now(UTC)
        return result

    async def _admit_cluster(
        self,
        tier: NSTemplateTier,
        tier_hash: str,
        cluster: str,
        remaining: int,
        in_flight: set[str],
        result: PassResult,
        stop_event: asyncio.Event | None,
    ) -> int:
        """Scan one cluster and return the capacity left afterwards."""
        async with aclosing(self._scanner.pages(cluster, tier.name)) as pages:
            async for page in pages:
                result.pages_read += 1
                for record in page.records:
                    result.records_scanned += 1
                    if not is_stale(record, tier_hash, cluster):
                        continue
                    result.stale_found += 1

                    name = work_item_name(record.name, cluster)
                    if name in in_flight:
                        result.skipped_in_flight += 1
                        continue

                    if stop_event is not None and stop_event.is_set():
                        logger.info(
                            "Shutdown requested, ending pass early",
                            extra={"tier": tier.name, "cluster": cluster},
                        )
                        result.cancelled = True
                        return remaining

                    if not await self._admit(tier, tier_hash, record, cluster, result):
                        continue
                    in_flight.add(name)
                    remaining -= 1
                    if remaining == 0:
                        logger.info(
                            "Update request pool filled, leaving the rest for a later pass",
                            extra={"tier": tier.name, "cluster": cluster},
                        )
                        result.capacity_exhausted = True
                        return 0
        return remaining

    async def _admit(
        self,
        tier: NSTemplateTier,
        tier_hash: str,
        record: MasterUserRecord,
        cluster: str,
        result: PassResult,
    ) -> bool:
        """Create the request for one record; True if it now counts against the pool."""
        item = TemplateUpdateRequest.for_record(tier, record, cluster, tier_hash, self._namespace)

        if self._dry_run:
            logger.info(
                "Dry-run: would create TemplateUpdateRequest",
                extra={"tier": tier.name, "record": record.name, "cluster": cluster},
            )
            result.created.append(item.name)
            return True

        # Any create failure, including 404, ends the pass; earlier creates stay
        outcome = await self._store.create_work_item(item)
        if outcome is CreateOutcome.ALREADY_EXISTS:
            logger.info(
                "TemplateUpdateRequest already exists",
                extra={"tier": tier.name, "work_item": item.name},
            )
            result.already_existing.append(item.name)
        else:
            logger.info(
                "Created TemplateUpdateRequest",
                extra={
                    "tier": tier.name,
                    "work_item": item.name,
                    "record": record.name,
                    "cluster": cluster,
                },
            )
            result.created.append(item.name)
        return True
