"""Configuration management with validation.

All settings are read from the environment and validated at construction
time so a misconfigured operator fails at startup rather than mid-rollout.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Kubernetes API coordinates of the custom resources
API_GROUP = "toolchain.dev.openshift.com"
API_VERSION = "v1alpha1"
LABEL_KEY_PREFIX = f"{API_GROUP}/"

TIER_PLURAL = "nstemplatetiers"
RECORD_PLURAL = "masteruserrecords"
WORK_ITEM_PLURAL = "templateupdaterequests"

DEFAULT_NAMESPACE = "toolchain-host-operator"

# Configuration constants with documented bounds
DEFAULT_MAX_POOL_SIZE = 5
MIN_MAX_POOL_SIZE = 1
MAX_MAX_POOL_SIZE = 1000

DEFAULT_PAGE_SIZE = 100
MIN_PAGE_SIZE = 1
MAX_PAGE_SIZE = 1000

# 0 disables the periodic resync
DEFAULT_RESYNC_INTERVAL_SECONDS = 300
MIN_RESYNC_INTERVAL_SECONDS = 60
MAX_RESYNC_INTERVAL_SECONDS = 3600

DEFAULT_REQUEUE_BASE_SECONDS = 5
DEFAULT_REQUEUE_MAX_SECONDS = 300

DEFAULT_WORKERS = 2
MAX_WORKERS = 16

DEFAULT_API_TIMEOUT_SECONDS = 30

# Manifest loading limits
MAX_MANIFEST_FILE_SIZE_BYTES = 1024 * 1024  # 1MB per manifest file
MAX_OBJECT_NAME_LENGTH = 253
MAX_LABEL_VALUE_LENGTH = 63

# Input validation patterns
VALID_DNS_LABEL_PATTERN = r"^[a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?$"


def parse_cluster_list(value: str) -> tuple[str, ...]:
    """Split a comma-separated cluster list, keeping declared order and dropping duplicates."""
    clusters: list[str] = []
    for item in value.split(","):
        name = item.strip()
        if name and name not in clusters:
            clusters.append(name)
    return tuple(clusters)


@dataclass(frozen=True)
class Config:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Required fields
    member_clusters: tuple[str, ...]

    namespace: str = DEFAULT_NAMESPACE

    # Admission control
    max_pool_size: int = DEFAULT_MAX_POOL_SIZE
    page_size: int = DEFAULT_PAGE_SIZE

    # Timing
    resync_interval_seconds: int = DEFAULT_RESYNC_INTERVAL_SECONDS
    requeue_base_seconds: int = DEFAULT_REQUEUE_BASE_SECONDS
    requeue_max_seconds: int = DEFAULT_REQUEUE_MAX_SECONDS
    api_timeout_seconds: int = DEFAULT_API_TIMEOUT_SECONDS

    # Runtime
    workers: int = DEFAULT_WORKERS
    kubeconfig: Path | None = None

    # Behavior
    dry_run: bool = False

    def __post_init__(self) -> None:
        """Validate configuration after initialization.

        Every violation is collected so the operator reports them all at once.
        """
        errors: list[str] = []

        if not re.match(VALID_DNS_LABEL_PATTERN, self.namespace or ""):
            errors.append(f"WATCH_NAMESPACE must be a valid DNS-1123 label: {self.namespace!r}")

        if not self.member_clusters:
            errors.append("MEMBER_CLUSTERS is required")
        for cluster in self.member_clusters:
            if not re.match(VALID_DNS_LABEL_PATTERN, cluster):
                errors.append(f"MEMBER_CLUSTERS entry must be a valid DNS-1123 label: {cluster!r}")
        if len(set(self.member_clusters)) != len(self.member_clusters):
            errors.append("MEMBER_CLUSTERS must not contain duplicates")

        if not MIN_MAX_POOL_SIZE <= self.max_pool_size <= MAX_MAX_POOL_SIZE:
            errors.append(
                f"MAX_POOL_SIZE must be between {MIN_MAX_POOL_SIZE} and {MAX_MAX_POOL_SIZE}"
            )

        if not MIN_PAGE_SIZE <= self.page_size <= MAX_PAGE_SIZE:
            errors.append(f"RECORD_PAGE_SIZE must be between {MIN_PAGE_SIZE} and {MAX_PAGE_SIZE}")

        if self.resync_interval_seconds != 0 and not (
            MIN_RESYNC_INTERVAL_SECONDS
            <= self.resync_interval_seconds
            <= MAX_RESYNC_INTERVAL_SECONDS
        ):
            errors.append(
                f"RESYNC_INTERVAL must be 0 or between {MIN_RESYNC_INTERVAL_SECONDS} "
                f"and {MAX_RESYNC_INTERVAL_SECONDS} seconds"
            )

        if self.requeue_base_seconds < 1:
            errors.append("REQUEUE_BACKOFF_BASE must be at least 1 second")
        elif self.requeue_max_seconds < self.requeue_base_seconds:
            errors.append("REQUEUE_BACKOFF_MAX must not be lower than REQUEUE_BACKOFF_BASE")

        if not 1 <= self.workers <= MAX_WORKERS:
            errors.append(f"RECONCILE_WORKERS must be between 1 and {MAX_WORKERS}")

        if self.api_timeout_seconds < 1:
            errors.append("API_TIMEOUT must be at least 1 second")

        if self.kubeconfig is not None and not self.kubeconfig.exists():
            errors.append(f"KUBECONFIG file does not exist: {self.kubeconfig}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            WATCH_NAMESPACE: Namespace holding tiers, records and update requests
                (default: toolchain-host-operator)
            MEMBER_CLUSTERS: Comma-separated target clusters, scanned in this order
            MAX_POOL_SIZE: Max live TemplateUpdateRequests per tier (default: 5)
            RECORD_PAGE_SIZE: MasterUserRecords requested per list call (default: 100)
            RESYNC_INTERVAL: Seconds between safety-net resyncs of all tiers,
                0 disables (default: 300)
            REQUEUE_BACKOFF_BASE: First retry delay after a transient failure (default: 5)
            REQUEUE_BACKOFF_MAX: Retry delay cap (default: 300)
            RECONCILE_WORKERS: Concurrent tier passes (default: 2)
            API_TIMEOUT: Timeout for each Kubernetes API call in seconds (default: 30)
            DRY_RUN: If "true", plan update requests without creating them
            KUBECONFIG: Kubeconfig path; in-cluster configuration when unset
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        kubeconfig = os.environ.get("KUBECONFIG")

        return cls(
            member_clusters=parse_cluster_list(os.environ.get("MEMBER_CLUSTERS", "")),
            namespace=os.environ.get("WATCH_NAMESPACE", DEFAULT_NAMESPACE),
            max_pool_size=get_int("MAX_POOL_SIZE", DEFAULT_MAX_POOL_SIZE),
            page_size=get_int("RECORD_PAGE_SIZE", DEFAULT_PAGE_SIZE),
            resync_interval_seconds=get_int("RESYNC_INTERVAL", DEFAULT_RESYNC_INTERVAL_SECONDS),
            requeue_base_seconds=get_int("REQUEUE_BACKOFF_BASE", DEFAULT_REQUEUE_BASE_SECONDS),
            requeue_max_seconds=get_int("REQUEUE_BACKOFF_MAX", DEFAULT_REQUEUE_MAX_SECONDS),
            api_timeout_seconds=get_int("API_TIMEOUT", DEFAULT_API_TIMEOUT_SECONDS),
            workers=get_int("RECONCILE_WORKERS", DEFAULT_WORKERS),
            kubeconfig=Path(kubeconfig) if kubeconfig else None,
            dry_run=get_bool("DRY_RUN", False),
        )
