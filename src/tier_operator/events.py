"""Change events and their mapping to tier keys.

A tier is reconciled when:
- the NSTemplateTier itself changes
- a TemplateUpdateRequest of the tier is created, updated or deleted
- a MasterUserRecord's tier or tier-hash labels change

Record edits that leave those labels alone do not trigger anything.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .models import TIER_NAME_LABEL_KEY, TierState, tier_states_from_labels

logger = logging.getLogger(__name__)


class ResourceKind(str, Enum):
    """Kinds the operator watches."""

    TIER = "NSTemplateTier"
    RECORD = "MasterUserRecord"
    WORK_ITEM = "TemplateUpdateRequest"


class EventType(str, Enum):
    """Watch event types."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass(frozen=True)
class ChangeEvent:
    """One watch notification."""

    kind: ResourceKind
    type: EventType
    obj: dict[str, Any]

    @property
    def metadata(self) -> dict[str, Any]:
        metadata = self.obj.get("metadata")
        return metadata if isinstance(metadata, dict) else {}

    @property
    def name(self) -> str:
        return str(self.metadata.get("name") or "")

    @property
    def labels(self) -> dict[str, str]:
        labels = self.metadata.get("labels")
        return labels if isinstance(labels, dict) else {}


class EventRouter:
    """Turns change events into tier keys for the work queue.

    Keeps the last seen tier labels of every record so that only label
    transitions enqueue work.
    """

    def __init__(self, enqueue: Callable[[str], None]) -> None:
        self._enqueue = enqueue
        self._record_states: dict[str, dict[str, TierState]] = {}

    def handle(self, event: ChangeEvent) -> set[str]:
        """Enqueue the tiers affected by ``event`` and return their names."""
        keys = self.tier_keys(event)
        for key in sorted(keys):
            self._enqueue(key)
        if keys:
            logger.debug(
                "Change event enqueued tiers",
                extra={
                    "kind": event.kind.value,
                    "event_type": event.type.value,
                    "object": event.name,
                    "tiers": sorted(keys),
                },
            )
        return keys

    def tier_keys(self, event: ChangeEvent) -> set[str]:
        if not event.name:
            return set()

        match event.kind:
            case ResourceKind.TIER:
                return {event.name}
            case ResourceKind.WORK_ITEM:
                return self._work_item_keys(event)
            case ResourceKind.RECORD:
                return self._record_keys(event)
        return set()

    @staticmethod
    def _work_item_keys(event: ChangeEvent) -> set[str]:
        tier_name = event.labels.get(TIER_NAME_LABEL_KEY)
        if not tier_name:
            spec = event.obj.get("spec")
            tier_name = spec.get("tierName") if isinstance(spec, dict) else None
        return {tier_name} if tier_name else set()

    def _record_keys(self, event: ChangeEvent) -> set[str]:
        previous = self._record_states.get(event.name, {})

        if event.type is EventType.DELETED:
            # A deleted record frees no pool capacity and needs no update
            self._record_states.pop(event.name, None)
            return set()

        current = tier_states_from_labels(event.labels)
        if event.name in self._record_states and current == previous:
            return set()
        self._record_states[event.name] = current

        changed = {
            state.tier_name
            for cluster in current.keys() | previous.keys()
            if current.get(cluster) != previous.get(cluster)
            for state in (current.get(cluster), previous.get(cluster))
            if state is not None and state.tier_name
        }
        return changed
