"""Mock CustomObjectsApi.

Mirrors the call signatures of ``kubernetes.client.CustomObjectsApi`` for
namespaced custom objects, keeping objects in memory per plural.
"""

from __future__ import annotations

import copy
from collections import defaultdict
from datetime import UTC, datetime
from typing import Any

from kubernetes.client import ApiException


def api_exception(status: int, reason: str = "") -> ApiException:
    """Build an ApiException as the client raises it."""
    return ApiException(status=status, reason=reason or f"HTTP {status}")


def _parse_selector(label_selector: str | None) -> dict[str, str]:
    selector: dict[str, str] = {}
    for term in (label_selector or "").split(","):
        term = term.strip()
        if not term:
            continue
        key, _, value = term.partition("=")
        selector[key] = value
    return selector


class MockCustomObjectsApi:
    """In-memory CustomObjectsApi for one cluster.

    Attributes:
        objects: Objects per plural, keyed by name.
        calls: (operation, plural) of every call, in order.
        page_cap: If set, list pages never exceed this size.
    """

    def __init__(self, page_cap: int | None = None) -> None:
        self.objects: dict[str, dict[str, dict[str, Any]]] = defaultdict(dict)
        self.calls: list[tuple[str, str]] = []
        self.list_kwargs: list[dict[str, Any]] = []
        self.page_cap = page_cap
        self._errors: dict[str, list[Exception]] = defaultdict(list)
        self._resource_version = 0

    # -------------------------------------------------------------------------
    # Test helpers
    # -------------------------------------------------------------------------

    def seed(self, plural: str, *objs: dict[str, Any]) -> None:
        for obj in objs:
            stored = copy.deepcopy(obj)
            stored.setdefault("metadata", {})["resourceVersion"] = self._next_version()
            self.objects[plural][stored["metadata"]["name"]] = stored

    def fail_next(self, operation: str, error: Exception, times: int = 1) -> None:
        """Make the next ``times`` calls of ``operation`` (get, list, create) raise ``error``."""
        self._errors[operation].extend([error] * times)

    def call_count(self, operation: str, plural: str | None = None) -> int:
        return sum(
            1 for op, p in self.calls if op == operation and (plural is None or p == plural)
        )

    def _next_version(self) -> str:
        self._resource_version += 1
        return str(self._resource_version)

    def _record(self, operation: str, plural: str) -> None:
        self.calls.append((operation, plural))
        if self._errors[operation]:
            raise self._errors[operation].pop(0)

    # -------------------------------------------------------------------------
    # CustomObjectsApi
    # -------------------------------------------------------------------------

    def get_namespaced_custom_object(
        self, group: str, version: str, namespace: str, plural: str, name: str, **kwargs: Any
    ) -> dict[str, Any]:
        self._record("get", plural)
        obj = self.objects[plural].get(name)
        if obj is None:
            raise api_exception(404, "Not Found")
        return copy.deepcopy(obj)

    def list_namespaced_custom_object(
        self,
        group: str,
        version: str,
        namespace: str,
        plural: str,
        label_selector: str = "",
        limit: int | None = None,
        _continue: str | None = None,
        **kwargs: Any,
    ) -> dict[str, Any]:
        self._record("list", plural)
        self.list_kwargs.append(
            {
                "plural": plural,
                "label_selector": label_selector,
                "limit": limit,
                "_continue": _continue,
            }
        )

        selector = _parse_selector(label_selector)
        matching = [
            self.objects[plural][name]
            for name in sorted(self.objects[plural])
            if all(
                (self.objects[plural][name].get("metadata", {}).get("labels") or {}).get(k) == v
                for k, v in selector.items()
            )
        ]

        offset = int(_continue) if _continue else 0
        if limit is not None and self.page_cap is not None:
            limit = min(limit, self.page_cap)
        end = len(matching) if limit is None else offset + limit
        page = matching[offset:end]

        metadata: dict[str, Any] = {"resourceVersion": str(self._resource_version)}
        if end < len(matching):
            metadata["continue"] = str(end)
        return {
            "apiVersion": f"{group}/{version}",
            "kind": "List",
            "items": copy.deepcopy(page),
            "metadata": metadata,
        }

    def create_namespaced_custom_object(
        self,
        group: str,
        version: str,
        namespace: str,
        plural: str,
        body: dict[str, Any],
        **kwargs: Any,
    ) -> dict[str, Any]:
        self._record("create", plural)
        name = body["metadata"]["name"]
        if name in self.objects[plural]:
            raise api_exception(409, "AlreadyExists")

        stored = copy.deepcopy(body)
        stored["metadata"]["namespace"] = namespace
        stored["metadata"]["creationTimestamp"] = datetime.now(UTC).isoformat()
        stored["metadata"]["resourceVersion"] = self._next_version()
        self.objects[plural][name] = stored
        return copy.deepcopy(stored)
