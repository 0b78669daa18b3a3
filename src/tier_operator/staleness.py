"""Per-record, per-cluster staleness check against the tier fingerprint."""

from __future__ import annotations

from .models import MasterUserRecord


def is_stale(record: MasterUserRecord, tier_hash: str, cluster: str) -> bool:
    """Whether ``record`` needs an update on ``cluster`` to match ``tier_hash``.

    A record is stale when its fingerprint label differs from the tier's, or
    when the label is missing although the record has a user account on the
    cluster. A record without an account there has nothing to update.
    """
    recorded_hash = record.tier_state(cluster).tier_hash
    if recorded_hash is None:
        return record.has_account_on(cluster)
    return recorded_hash != tier_hash
