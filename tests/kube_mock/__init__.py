"""Kubernetes API Mock for Integration Testing.

This module provides an in-memory stand-in for the parts of the Kubernetes
client the operator uses, plus builders for the custom resources, so the
store, scheduler and runtime can be tested without a cluster.

Key Features:
- In-memory custom objects per plural with label selector filtering
- ``limit``/``_continue`` paging with offset cursors, like the API server
- Error injection for testing failure scenarios
- Builders for NSTemplateTiers, MasterUserRecords and TemplateUpdateRequests

Usage:
    from kube_mock import MockCustomObjectsApi, tier_manifest

    api = MockCustomObjectsApi()
    api.seed("nstemplatetiers", tier_manifest("base"))
    store = KubernetesStore(api, "toolchain-host-operator")
"""

from .api import MockCustomObjectsApi, api_exception
from .builders import (
    DEFAULT_CLUSTER_REF,
    DEFAULT_NAMESPACE_REFS,
    OUTDATED_HASH,
    make_record,
    make_tier,
    make_work_item,
    record_manifest,
    stale_records,
    tier_manifest,
    up_to_date_records,
)

__all__ = [
    "DEFAULT_CLUSTER_REF",
    "DEFAULT_NAMESPACE_REFS",
    "OUTDATED_HASH",
    "MockCustomObjectsApi",
    "api_exception",
    "make_record",
    "make_tier",
    "make_work_item",
    "record_manifest",
    "stale_records",
    "tier_manifest",
    "up_to_date_records",
]
