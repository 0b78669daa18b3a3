"""Pydantic models for the custom resources the operator reads and writes.

These models provide:
1. Type-safe parsing of API server and YAML manifests
2. Validation at the boundary (fail fast, fail loudly)
3. A typed view over the label-encoded tier state of each MasterUserRecord
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime
from typing import Annotated, Any, ClassVar, Self

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .config import (
    API_GROUP,
    API_VERSION,
    LABEL_KEY_PREFIX,
    MAX_LABEL_VALUE_LENGTH,
    MAX_OBJECT_NAME_LENGTH,
)

# =============================================================================
# Label keys
# =============================================================================

TIER_NAME_LABEL_KEY = f"{LABEL_KEY_PREFIX}nstemplatetier"
RECORD_NAME_LABEL_KEY = f"{LABEL_KEY_PREFIX}masteruserrecord"
TARGET_CLUSTER_LABEL_KEY = f"{LABEL_KEY_PREFIX}targetcluster"

TIER_LABEL_SUFFIX = "-templates-tier"
TIER_HASH_LABEL_SUFFIX = "-templates-tier-hash"

# Length of the digest suffix appended to truncated object names
NAME_HASH_SUFFIX_LENGTH = 10


def tier_label_key(cluster: str) -> str:
    """Label holding the name of the tier a record uses on a cluster."""
    return f"{LABEL_KEY_PREFIX}{cluster}{TIER_LABEL_SUFFIX}"


def tier_hash_label_key(cluster: str) -> str:
    """Label holding the fingerprint of the template refs a record was last updated with."""
    return f"{LABEL_KEY_PREFIX}{cluster}{TIER_HASH_LABEL_SUFFIX}"


def _fit(value: str, max_length: int) -> str:
    """Truncate ``value`` to ``max_length``, keeping it unique with a digest of the full value."""
    if len(value) <= max_length:
        return value
    suffix = hashlib.sha256(value.encode("utf-8")).hexdigest()[:NAME_HASH_SUFFIX_LENGTH]
    keep = max_length - NAME_HASH_SUFFIX_LENGTH - 1
    return f"{value[:keep].rstrip('-._')}-{suffix}"


def work_item_name(record_name: str, cluster: str) -> str:
    """Name of the TemplateUpdateRequest tracking one record on one cluster.

    Cluster names are DNS labels and never contain a dot, so everything after
    the last dot is the cluster and two record/cluster pairs never share a
    name. Names over the API server limit are truncated and suffixed with a
    digest of the full name.
    """
    return _fit(f"{record_name}.{cluster}", MAX_OBJECT_NAME_LENGTH)


def label_value(value: str) -> str:
    """``value`` shortened to fit a label value."""
    return _fit(value, MAX_LABEL_VALUE_LENGTH)


@dataclass(frozen=True)
class TierState:
    """Tier name and fingerprint a record carries for one target cluster."""

    cluster: str
    tier_name: str | None = None
    tier_hash: str | None = None


def tier_states_from_labels(labels: dict[str, str] | None) -> dict[str, TierState]:
    """Decode the ``<cluster>-templates-tier[-hash]`` labels into per-cluster states."""
    names: dict[str, str] = {}
    hashes: dict[str, str] = {}
    for key, value in (labels or {}).items():
        if not key.startswith(LABEL_KEY_PREFIX):
            continue
        rest = key[len(LABEL_KEY_PREFIX) :]
        if rest.endswith(TIER_HASH_LABEL_SUFFIX):
            cluster = rest[: -len(TIER_HASH_LABEL_SUFFIX)]
            if cluster:
                hashes[cluster] = value
        elif rest.endswith(TIER_LABEL_SUFFIX):
            cluster = rest[: -len(TIER_LABEL_SUFFIX)]
            if cluster:
                names[cluster] = value

    return {
        cluster: TierState(
            cluster=cluster, tier_name=names.get(cluster), tier_hash=hashes.get(cluster)
        )
        for cluster in sorted(names.keys() | hashes.keys())
    }


# =============================================================================
# Errors
# =============================================================================


class InvalidResourceError(Exception):
    """Raised when a resource manifest fails validation."""

    pass


class MalformedTierError(InvalidResourceError):
    """Raised when an NSTemplateTier is missing a required template reference."""

    pass


def format_validation_error(error: ValidationError) -> str:
    """Format Pydantic validation errors for readability."""
    lines = []
    for item in error.errors():
        loc = ".".join(str(x) for x in item["loc"]) or "<root>"
        lines.append(f"  - {loc}: {item['msg']}")
    return "\n".join(lines)


# =============================================================================
# Common
# =============================================================================


class ObjectMeta(BaseModel):
    """The subset of Kubernetes object metadata the operator relies on."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=MAX_OBJECT_NAME_LENGTH)]
    namespace: str | None = None
    labels: dict[str, str] = Field(default_factory=dict)
    creation_timestamp: datetime | None = Field(None, alias="creationTimestamp")
    deletion_timestamp: datetime | None = Field(None, alias="deletionTimestamp")
    resource_version: str | None = Field(None, alias="resourceVersion")

    @field_validator("labels", mode="before")
    @classmethod
    def none_labels_to_empty(cls, v: Any) -> Any:
        # The API server serializes an object without labels as null
        return {} if v is None else v


class KubeResource(BaseModel):
    """Base for the namespaced custom resources of the toolchain API group."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    kind: ClassVar[str] = ""
    error_class: ClassVar[type[InvalidResourceError]] = InvalidResourceError

    metadata: ObjectMeta

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def labels(self) -> dict[str, str]:
        return self.metadata.labels

    @classmethod
    def from_manifest(cls, obj: dict[str, Any]) -> Self:
        """Validate a manifest (API server object or YAML document).

        Raises:
            InvalidResourceError: Subclass-specific error listing every violation.
        """
        try:
            return cls.model_validate(obj)
        except ValidationError as e:
            metadata = obj.get("metadata") if isinstance(obj, dict) else None
            name = metadata.get("name") if isinstance(metadata, dict) else None
            raise cls.error_class(
                f"Invalid {cls.kind} '{name or '<unnamed>'}':\n{format_validation_error(e)}"
            ) from e

    def to_manifest(self) -> dict[str, Any]:
        """Serialize to the API server representation."""
        body = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        return {"apiVersion": f"{API_GROUP}/{API_VERSION}", "kind": self.kind, **body}


class TemplateRef(BaseModel):
    """Reference to a TierTemplate by name."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    template_ref: Annotated[str, Field(min_length=1, alias="templateRef")]


# =============================================================================
# NSTemplateTier
# =============================================================================


class NSTemplateTierSpec(BaseModel):
    """Ordered namespace template refs plus one cluster-scope template ref."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    namespaces: list[TemplateRef] = Field(default_factory=list)
    cluster_resources: TemplateRef | None = Field(None, alias="clusterResources")

    @model_validator(mode="after")
    def require_templates(self) -> NSTemplateTierSpec:
        if not self.namespaces and self.cluster_resources is None:
            raise ValueError("a tier needs at least one namespace or cluster resources template")
        return self


class NSTemplateTier(KubeResource):
    """A named template bundle, read-only for the operator."""

    kind: ClassVar[str] = "NSTemplateTier"
    error_class: ClassVar[type[InvalidResourceError]] = MalformedTierError

    spec: NSTemplateTierSpec

    @property
    def namespace_refs(self) -> list[str]:
        return [ns.template_ref for ns in self.spec.namespaces]

    @property
    def cluster_resources_ref(self) -> str | None:
        if self.spec.cluster_resources is None:
            return None
        return self.spec.cluster_resources.template_ref


# =============================================================================
# MasterUserRecord
# =============================================================================


class NSTemplateSetNamespace(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    template_ref: str = Field("", alias="templateRef")


class NSTemplateSetSpec(BaseModel):
    """Template refs embedded in a user account, as last provisioned."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    tier_name: str = Field("", alias="tierName")
    namespaces: list[NSTemplateSetNamespace] = Field(default_factory=list)
    cluster_resources: NSTemplateSetNamespace | None = Field(None, alias="clusterResources")


class UserAccountSpecEmbedded(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    ns_template_set: NSTemplateSetSpec | None = Field(None, alias="nsTemplateSet")


class UserAccountEmbedded(BaseModel):
    """A user account provisioned on one member cluster."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    target_cluster: Annotated[str, Field(min_length=1, alias="targetCluster")]
    spec: UserAccountSpecEmbedded = Field(default_factory=UserAccountSpecEmbedded)


class MasterUserRecordSpec(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    user_accounts: list[UserAccountEmbedded] = Field(default_factory=list, alias="userAccounts")

    @field_validator("user_accounts", mode="before")
    @classmethod
    def none_accounts_to_empty(cls, v: Any) -> Any:
        return [] if v is None else v


class MasterUserRecord(KubeResource):
    """A provisioned tenant, fanned out to one user account per member cluster."""

    kind: ClassVar[str] = "MasterUserRecord"

    spec: MasterUserRecordSpec = Field(default_factory=MasterUserRecordSpec)

    def tier_state(self, cluster: str) -> TierState:
        """Tier name and fingerprint labels for one cluster (fields are None when unset)."""
        states = tier_states_from_labels(self.metadata.labels)
        return states.get(cluster, TierState(cluster=cluster))

    def has_account_on(self, cluster: str) -> bool:
        return any(ua.target_cluster == cluster for ua in self.spec.user_accounts)


# =============================================================================
# TemplateUpdateRequest
# =============================================================================


class TemplateUpdateRequestSpec(BaseModel):
    """Desired template refs for one record on one cluster."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    tier_name: str = Field("", alias="tierName")
    target_cluster: str | None = Field(None, alias="targetCluster")
    namespaces: list[TemplateRef] = Field(default_factory=list)
    cluster_resources: TemplateRef | None = Field(None, alias="clusterResources")
    tier_hash: str | None = Field(None, alias="tierHash")


class TemplateUpdateRequest(KubeResource):
    """A work item in the tier's admission pool.

    Created by the scheduler, executed and deleted by a separate controller.
    """

    kind: ClassVar[str] = "TemplateUpdateRequest"

    spec: TemplateUpdateRequestSpec = Field(default_factory=TemplateUpdateRequestSpec)

    @property
    def is_being_deleted(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    @property
    def tier_name(self) -> str:
        return self.metadata.labels.get(TIER_NAME_LABEL_KEY) or self.spec.tier_name

    @classmethod
    def for_record(
        cls,
        tier: NSTemplateTier,
        record: MasterUserRecord,
        cluster: str,
        tier_hash: str,
        namespace: str,
    ) -> TemplateUpdateRequest:
        """Build the request bringing ``record`` on ``cluster`` up to ``tier``."""
        return cls(
            metadata=ObjectMeta(
                name=work_item_name(record.name, cluster),
                namespace=namespace,
                labels={
                    TIER_NAME_LABEL_KEY: tier.name,
                    RECORD_NAME_LABEL_KEY: label_value(record.name),
                    TARGET_CLUSTER_LABEL_KEY: label_value(cluster),
                },
            ),
            spec=TemplateUpdateRequestSpec(
                tier_name=tier.name,
                target_cluster=cluster,
                namespaces=[ns.model_copy() for ns in tier.spec.namespaces],
                cluster_resources=(
                    tier.spec.cluster_resources.model_copy()
                    if tier.spec.cluster_resources is not None
                    else None
                ),
                tier_hash=tier_hash,
            ),
        )
