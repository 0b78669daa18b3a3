"""Manifest file loading with validation.

Reads NSTemplateTier, MasterUserRecord and TemplateUpdateRequest manifests
from YAML files for offline planning. Files may hold several documents and
may wrap objects in a ``kind: List``.

SECURITY: All file operations enforce size limits. Input validation is
performed at the boundary.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .config import MAX_MANIFEST_FILE_SIZE_BYTES
from .models import InvalidResourceError, MasterUserRecord, NSTemplateTier, TemplateUpdateRequest

logger = logging.getLogger(__name__)

MANIFEST_SUFFIXES = (".yaml", ".yml")


class ManifestLoadError(Exception):
    """Raised when a manifest cannot be read or fails validation."""

    pass


@dataclass
class ManifestBundle:
    """Objects loaded from a set of manifest files, in file order."""

    tiers: list[NSTemplateTier] = field(default_factory=list)
    records: list[MasterUserRecord] = field(default_factory=list)
    work_items: list[TemplateUpdateRequest] = field(default_factory=list)
    # Tier manifests as written, so malformed tiers can still be planned against
    raw_tiers: list[dict[str, Any]] = field(default_factory=list)

    def tier_names(self) -> list[str]:
        return [raw["metadata"]["name"] for raw in self.raw_tiers]


def _read_documents(path: Path) -> list[Any]:
    # SECURITY: Check file size before reading
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise ManifestLoadError(f"Failed to stat manifest file {path}: {e}") from e

    if file_size > MAX_MANIFEST_FILE_SIZE_BYTES:
        raise ManifestLoadError(
            f"Manifest file exceeds maximum size of {MAX_MANIFEST_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ManifestLoadError(f"Failed to read manifest file {path}: {e}") from e

    try:
        return [doc for doc in yaml.safe_load_all(content) if doc is not None]
    except yaml.YAMLError as e:
        raise ManifestLoadError(f"Invalid YAML in {path}: {e}") from e


def _flatten(doc: Any, path: Path) -> list[dict[str, Any]]:
    if not isinstance(doc, dict):
        raise ManifestLoadError(f"Manifest documents must be YAML mappings: {path}")
    if doc.get("kind") == "List":
        items = doc.get("items") or []
        if not isinstance(items, list):
            raise ManifestLoadError(f"List items must be a sequence: {path}")
        return [obj for item in items for obj in _flatten(item, path)]
    return [doc]


def _add_object(bundle: ManifestBundle, obj: dict[str, Any], path: Path) -> None:
    kind = obj.get("kind")
    try:
        match kind:
            case NSTemplateTier.kind:
                name = (obj.get("metadata") or {}).get("name")
                if not name:
                    raise ManifestLoadError(f"NSTemplateTier without metadata.name in {path}")
                bundle.raw_tiers.append(obj)
                try:
                    bundle.tiers.append(NSTemplateTier.from_manifest(obj))
                except InvalidResourceError as e:
                    # Kept raw; reconciling it reports the problem
                    logger.warning(
                        "Malformed NSTemplateTier", extra={"path": str(path), "error": str(e)}
                    )
            case MasterUserRecord.kind:
                bundle.records.append(MasterUserRecord.from_manifest(obj))
            case TemplateUpdateRequest.kind:
                bundle.work_items.append(TemplateUpdateRequest.from_manifest(obj))
            case _:
                logger.debug(
                    "Ignoring manifest of unknown kind", extra={"kind": kind, "path": str(path)}
                )
    except InvalidResourceError as e:
        raise ManifestLoadError(f"Validation failed for {path}:\n{e}") from e


def manifest_files(path: Path) -> list[Path]:
    """YAML files under ``path`` in name order, or ``path`` itself if it is a file."""
    if path.is_file():
        return [path]
    if not path.is_dir():
        raise ManifestLoadError(f"Manifest path not found: {path}")
    return sorted(p for p in path.rglob("*") if p.is_file() and p.suffix in MANIFEST_SUFFIXES)


def load_manifests(path: Path) -> ManifestBundle:
    """Load every manifest under ``path``.

    Args:
        path: A YAML file or a directory searched recursively.

    Raises:
        ManifestLoadError: If a file cannot be read or an object fails validation.
    """
    bundle = ManifestBundle()
    files = manifest_files(path)
    for file in files:
        for doc in _read_documents(file):
            for obj in _flatten(doc, file):
                _add_object(bundle, obj, file)

    logger.info(
        "Loaded manifests",
        extra={
            "path": str(path),
            "files": len(files),
            "tier_count": len(bundle.raw_tiers),
            "record_count": len(bundle.records),
            "work_item_count": len(bundle.work_items),
        },
    )
    return bundle
