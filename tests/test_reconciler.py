"""Tests for the reconcile driver."""

from __future__ import annotations

import asyncio
import logging

import pytest
from kube_mock import make_tier, stale_records, tier_manifest

from tier_operator.config import Config
from tier_operator.memory_store import InMemoryStore
from tier_operator.models import NSTemplateTier, TemplateUpdateRequest
from tier_operator.reconciler import ReconcileStatus, TierReconciler
from tier_operator.store import CreateOutcome, StoreError


def make_config(**overrides: object) -> Config:
    values: dict[str, object] = {"member_clusters": ("cluster1",), "max_pool_size": 5}
    values.update(overrides)
    return Config(**values)  # type: ignore[arg-type]


class FailingStore(InMemoryStore):
    """InMemoryStore that fails a chosen operation with StoreError."""

    def __init__(self, fail_on: str) -> None:
        super().__init__("ns")
        self.fail_on = fail_on

    async def get_tier(self, name: str) -> NSTemplateTier:
        if self.fail_on == "get_tier":
            raise StoreError("API server unavailable", status=503)
        return await super().get_tier(name)

    async def list_work_items(self, tier_name: str) -> list[TemplateUpdateRequest]:
        if self.fail_on == "list_work_items":
            raise StoreError("API server unavailable", status=503)
        return await super().list_work_items(tier_name)


class SlowCreateStore(InMemoryStore):
    """InMemoryStore that yields to the event loop inside every create."""

    def __init__(self) -> None:
        super().__init__("ns")
        self.active = 0
        self.max_active = 0

    async def create_work_item(self, item: TemplateUpdateRequest) -> CreateOutcome:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        await asyncio.sleep(0)
        try:
            return await super().create_work_item(item)
        finally:
            self.active -= 1


class TestTierReconciler:
    """Tests for TierReconciler outcomes."""

    @pytest.mark.asyncio
    async def test_success_is_done(self) -> None:
        store = InMemoryStore("ns")
        store.add_tier(make_tier("base"))
        for record in stale_records(3):
            store.add_record(record)

        outcome = await TierReconciler(make_config(), store).reconcile("base")

        assert outcome.status is ReconcileStatus.DONE
        assert outcome.success
        assert outcome.result is not None
        assert len(outcome.result.created) == 3

    @pytest.mark.asyncio
    async def test_missing_tier_is_done(self) -> None:
        """Test that a deleted tier is a terminal no-op."""
        store = InMemoryStore("ns")

        outcome = await TierReconciler(make_config(), store).reconcile("gone")

        assert outcome.status is ReconcileStatus.DONE
        assert outcome.result is None
        assert store.calls["list_work_items"] == 0

    @pytest.mark.asyncio
    async def test_malformed_tier_is_fatal(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test that a tier with an empty template ref is surfaced, not retried."""
        store = InMemoryStore("ns")
        store.add_tier(tier_manifest("broken", namespace_refs=["base-code-1", ""]))

        with caplog.at_level(logging.ERROR):
            outcome = await TierReconciler(make_config(), store).reconcile("broken")

        assert outcome.status is ReconcileStatus.FATAL
        assert not outcome.success
        assert "broken" in str(outcome.error)
        assert "malformed" in caplog.text
        assert store.calls["list_work_items"] == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("fail_on", ["get_tier", "list_work_items"])
    async def test_store_error_requeues(self, fail_on: str) -> None:
        store = FailingStore(fail_on)
        store.add_tier(make_tier("base"))

        outcome = await TierReconciler(make_config(), store).reconcile("base")

        assert outcome.status is ReconcileStatus.REQUEUE
        assert isinstance(outcome.error, StoreError)

    @pytest.mark.asyncio
    async def test_uses_configured_clusters(self) -> None:
        store = InMemoryStore("ns")
        store.add_tier(make_tier("base"))
        for record in stale_records(1, cluster="cluster2"):
            store.add_record(record)

        outcome = await TierReconciler(
            make_config(member_clusters=("cluster1", "cluster2")), store
        ).reconcile("base")

        assert outcome.result is not None
        assert outcome.result.created == ["user000.cluster2"]

    @pytest.mark.asyncio
    async def test_member_clusters_callable_overrides_config(self) -> None:
        store = InMemoryStore("ns")
        store.add_tier(make_tier("base"))
        for record in stale_records(1, cluster="cluster9"):
            store.add_record(record)

        reconciler = TierReconciler(make_config(), store, member_clusters=lambda: ["cluster9"])
        outcome = await reconciler.reconcile("base")

        assert outcome.result is not None
        assert outcome.result.clusters_scanned == ["cluster9"]

    @pytest.mark.asyncio
    async def test_dry_run_config(self) -> None:
        store = InMemoryStore("ns")
        store.add_tier(make_tier("base"))
        for record in stale_records(2):
            store.add_record(record)

        outcome = await TierReconciler(make_config(dry_run=True), store).reconcile("base")

        assert outcome.result is not None
        assert outcome.result.dry_run
        assert store.work_items == []


class TestSingleFlight:
    """Passes for the same tier never overlap."""

    @pytest.mark.asyncio
    async def test_concurrent_passes_respect_pool_size(self) -> None:
        """Test that duplicate triggers cannot overshoot the pool."""
        store = SlowCreateStore()
        store.add_tier(make_tier("base"))
        for record in stale_records(10):
            store.add_record(record)
        reconciler = TierReconciler(make_config(max_pool_size=3), store)

        outcomes = await asyncio.gather(*(reconciler.reconcile("base") for _ in range(3)))

        assert all(o.status is ReconcileStatus.DONE for o in outcomes)
        assert len(store.work_items) == 3
        assert store.max_active == 1

    @pytest.mark.asyncio
    async def test_different_tiers_run_concurrently(self) -> None:
        store = SlowCreateStore()
        store.add_tier(make_tier("base"))
        store.add_tier(make_tier("advanced"))
        for record in stale_records(2, tier_name="base", prefix="b"):
            store.add_record(record)
        for record in stale_records(2, tier_name="advanced", prefix="a"):
            store.add_record(record)
        reconciler = TierReconciler(make_config(), store)

        await asyncio.gather(reconciler.reconcile("base"), reconciler.reconcile("advanced"))

        assert len(store.work_items) == 4
        assert store.max_active == 2

    @pytest.mark.asyncio
    async def test_locks_are_released_after_passes(self) -> None:
        """Test that deleted or finished tiers leave no lock behind."""
        store = SlowCreateStore()
        store.add_tier(make_tier("base"))
        for record in stale_records(4):
            store.add_record(record)
        reconciler = TierReconciler(make_config(), store)

        await asyncio.gather(*(reconciler.reconcile("base") for _ in range(3)))
        await asyncio.gather(*(reconciler.reconcile(f"gone{i}") for i in range(20)))

        assert reconciler._locks == {}
        assert reconciler._lock_users == {}
