"""Template-ref fingerprints.

A fingerprint is the hex MD5 digest of the compact JSON document
``{"refs": [<namespace refs in order>..., <cluster resources ref>]}``.
It depends only on the bytes of the refs and their order, so every process
(and the controller that labels MasterUserRecords after an update) computes
the same value for the same tier revision. It is an equality oracle, never
a security boundary.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Sequence

from .models import NSTemplateTier


def template_refs(namespace_refs: Sequence[str], cluster_resources_ref: str | None) -> list[str]:
    """Flatten refs into the ordered list that gets fingerprinted.

    An absent cluster resources ref is left out; an empty one is kept as-is.
    """
    refs = list(namespace_refs)
    if cluster_resources_ref is not None:
        refs.append(cluster_resources_ref)
    return refs


def compute_refs_hash(namespace_refs: Sequence[str], cluster_resources_ref: str | None) -> str:
    payload = json.dumps(
        {"refs": template_refs(namespace_refs, cluster_resources_ref)},
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.md5(payload.encode("utf-8"), usedforsecurity=False).hexdigest()


def compute_tier_hash(tier: NSTemplateTier) -> str:
    """Fingerprint of the tier's current template refs."""
    return compute_refs_hash(tier.namespace_refs, tier.cluster_resources_ref)
