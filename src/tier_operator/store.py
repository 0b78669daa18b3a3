"""Boundary between the rollout scheduler and the object store.

The scheduler never talks to the API server directly; it only needs the five
operations of TierStore. kube.KubernetesStore backs them with the API server,
memory_store.InMemoryStore with plain dictionaries.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from .models import MasterUserRecord, NSTemplateTier, TemplateUpdateRequest


class StoreError(Exception):
    """Transient read or write failure; the whole pass is retried later."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class NotFoundError(StoreError):
    """The requested object does not exist (anymore)."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status=404)


class CreateOutcome(str, Enum):
    """Result of an idempotent create."""

    CREATED = "Created"
    ALREADY_EXISTS = "AlreadyExists"


@dataclass
class RecordPage:
    """One bounded page of records and the cursor to the next page.

    An empty ``next_cursor`` is the only exhaustion signal: a page may hold
    fewer records than requested (or none) while more pages follow.
    """

    records: list[MasterUserRecord] = field(default_factory=list)
    next_cursor: str = ""

    @property
    def is_last(self) -> bool:
        return not self.next_cursor


class TierStore(Protocol):
    """Operations the operator needs from the object store."""

    async def get_tier(self, name: str) -> NSTemplateTier:
        """Load a tier.

        Raises:
            NotFoundError: If the tier does not exist.
            MalformedTierError: If the tier fails validation.
            StoreError: On transient failures.
        """
        ...

    async def list_tier_names(self) -> list[str]:
        """Names of all tiers, used by the periodic resync."""
        ...

    async def list_records(
        self, cluster: str, tier_name: str, limit: int, cursor: str = ""
    ) -> RecordPage:
        """One page of records whose tier label for ``cluster`` is ``tier_name``."""
        ...

    async def list_work_items(self, tier_name: str) -> list[TemplateUpdateRequest]:
        """Every work item labelled with ``tier_name``, including those being deleted."""
        ...

    async def create_work_item(self, item: TemplateUpdateRequest) -> CreateOutcome:
        """Create a work item; an existing one with the same name is not an error.

        Raises:
            StoreError: On any other failure, including a missing namespace.
        """
        ...
