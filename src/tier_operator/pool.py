"""Accounting of the TemplateUpdateRequest pool of a tier.

Requests with a deletion timestamp are being torn down by their executor and
no longer count against the pool. The computed capacity is advisory for one
pass: deletions happen concurrently and the next pass sees the new state.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from .models import TemplateUpdateRequest
from .store import TierStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PoolStatus:
    """Live and reclaimable requests of one tier at one point in time."""

    max_pool_size: int
    live: tuple[str, ...] = ()
    reclaimable: tuple[str, ...] = ()

    @property
    def remaining(self) -> int:
        """Requests that may still be admitted."""
        return max(0, self.max_pool_size - len(self.live))

    @property
    def names(self) -> frozenset[str]:
        """Names of every request still present, live or reclaimable."""
        return frozenset(self.live) | frozenset(self.reclaimable)


def assess_pool(work_items: Iterable[TemplateUpdateRequest], max_pool_size: int) -> PoolStatus:
    """Partition requests into live and reclaimable."""
    live: list[str] = []
    reclaimable: list[str] = []
    for item in work_items:
        if item.is_being_deleted:
            reclaimable.append(item.name)
        else:
            live.append(item.name)
    return PoolStatus(
        max_pool_size=max_pool_size,
        live=tuple(sorted(live)),
        reclaimable=tuple(sorted(reclaimable)),
    )


class PoolAccountant:
    """Reads a tier's pool from the store and computes its free capacity."""

    def __init__(self, store: TierStore, max_pool_size: int) -> None:
        if max_pool_size < 1:
            raise ValueError("max_pool_size must be at least 1")
        self._store = store
        self._max_pool_size = max_pool_size

    async def assess(self, tier_name: str) -> PoolStatus:
        work_items = await self._store.list_work_items(tier_name)
        status = assess_pool(work_items, self._max_pool_size)
        logger.debug(
            "Assessed update request pool",
            extra={
                "tier": tier_name,
                "live": len(status.live),
                "reclaimable": len(status.reclaimable),
                "remaining": status.remaining,
            },
        )
        return status
