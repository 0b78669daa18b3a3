"""In-memory TierStore.

Backs ``tierctl plan`` (offline planning against manifests on disk) and the
test suite. Records are paged in name order with keyset cursors, so paging
stays consistent while records are added or removed between pages.
"""

from __future__ import annotations

import copy
import logging
from collections import Counter
from datetime import UTC, datetime
from typing import Any

from .models import (
    TIER_NAME_LABEL_KEY,
    MasterUserRecord,
    NSTemplateTier,
    TemplateUpdateRequest,
    tier_label_key,
)
from .store import CreateOutcome, NotFoundError, RecordPage

logger = logging.getLogger(__name__)


class InMemoryStore:
    """Dictionary-backed store for one namespace.

    Attributes:
        calls: Number of calls per store operation, for read-amplification checks.
    """

    def __init__(self, namespace: str, *, page_cap: int | None = None) -> None:
        """Initialize an empty store.

        Args:
            namespace: Namespace assigned to created work items.
            page_cap: If set, pages never hold more than this many records,
                whatever limit the caller asks for.
        """
        self.namespace = namespace
        self._page_cap = page_cap
        self._tiers: dict[str, dict[str, Any]] = {}
        self._records: dict[str, MasterUserRecord] = {}
        self._work_items: dict[str, TemplateUpdateRequest] = {}
        self.calls: Counter[str] = Counter()

    # -------------------------------------------------------------------------
    # Seeding and inspection
    # -------------------------------------------------------------------------

    def add_tier(self, tier: NSTemplateTier | dict[str, Any]) -> None:
        """Store a tier. Raw manifests are kept as-is and validated on read."""
        manifest = tier.to_manifest() if isinstance(tier, NSTemplateTier) else copy.deepcopy(tier)
        name = manifest.get("metadata", {}).get("name")
        if not name:
            raise ValueError("tier manifest has no metadata.name")
        self._tiers[name] = manifest

    def delete_tier(self, name: str) -> None:
        self._tiers.pop(name, None)

    def add_record(self, record: MasterUserRecord) -> None:
        self._records[record.name] = record.model_copy(deep=True)

    def add_work_item(self, item: TemplateUpdateRequest) -> None:
        self._work_items[item.name] = item.model_copy(deep=True)

    def delete_work_item(self, name: str, *, graceful: bool = False) -> None:
        """Remove a work item, or only mark it as being deleted when ``graceful``."""
        if graceful:
            item = self._work_items.get(name)
            if item is not None and item.metadata.deletion_timestamp is None:
                item.metadata.deletion_timestamp = datetime.now(UTC)
            return
        self._work_items.pop(name, None)

    @property
    def records(self) -> list[MasterUserRecord]:
        return [self._records[name] for name in sorted(self._records)]

    @property
    def work_items(self) -> list[TemplateUpdateRequest]:
        return [self._work_items[name] for name in sorted(self._work_items)]

    # -------------------------------------------------------------------------
    # TierStore
    # -------------------------------------------------------------------------

    async def get_tier(self, name: str) -> NSTemplateTier:
        self.calls["get_tier"] += 1
        manifest = self._tiers.get(name)
        if manifest is None:
            raise NotFoundError(f"NSTemplateTier '{name}' not found")
        return NSTemplateTier.from_manifest(manifest)

    async def list_tier_names(self) -> list[str]:
        self.calls["list_tier_names"] += 1
        return sorted(self._tiers)

    async def list_records(
        self, cluster: str, tier_name: str, limit: int, cursor: str = ""
    ) -> RecordPage:
        self.calls["list_records"] += 1
        if limit < 1:
            raise ValueError("limit must be at least 1")
        if self._page_cap is not None:
            limit = min(limit, self._page_cap)

        label_key = tier_label_key(cluster)
        matching = [
            self._records[name]
            for name in sorted(self._records)
            if name > cursor and self._records[name].labels.get(label_key) == tier_name
        ]
        page = matching[:limit]
        next_cursor = page[-1].name if len(matching) > limit else ""
        return RecordPage(
            records=[record.model_copy(deep=True) for record in page],
            next_cursor=next_cursor,
        )

    async def list_work_items(self, tier_name: str) -> list[TemplateUpdateRequest]:
        self.calls["list_work_items"] += 1
        return [
            item.model_copy(deep=True)
            for item in self.work_items
            if item.labels.get(TIER_NAME_LABEL_KEY) == tier_name
        ]

    async def create_work_item(self, item: TemplateUpdateRequest) -> CreateOutcome:
        self.calls["create_work_item"] += 1
        if item.name in self._work_items:
            return CreateOutcome.ALREADY_EXISTS
        created = item.model_copy(deep=True)
        created.metadata.namespace = created.metadata.namespace or self.namespace
        created.metadata.creation_timestamp = datetime.now(UTC)
        self._work_items[created.name] = created
        logger.debug("Created work item", extra={"work_item": created.name})
        return CreateOutcome.CREATED
