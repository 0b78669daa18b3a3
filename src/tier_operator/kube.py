"""Kubernetes API server backend: store and watch-based event source.

The official client is synchronous; every call runs in the default executor
with a timeout so a hung API server cannot stall the event loop.
"""

from __future__ import annotations

import asyncio
import logging
import random
import threading
from collections.abc import Callable
from typing import Any, TypeVar

from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes import watch
from kubernetes.client import ApiException, CustomObjectsApi
from kubernetes.config import ConfigException
from urllib3.exceptions import HTTPError

from .config import (
    API_GROUP,
    API_VERSION,
    RECORD_PLURAL,
    TIER_PLURAL,
    WORK_ITEM_PLURAL,
    Config,
    ConfigurationError,
)
from .events import ChangeEvent, EventType, ResourceKind
from .models import (
    TIER_NAME_LABEL_KEY,
    InvalidResourceError,
    MasterUserRecord,
    NSTemplateTier,
    TemplateUpdateRequest,
    tier_label_key,
)
from .store import CreateOutcome, NotFoundError, RecordPage, StoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Server-side watch timeout; the watch is restarted after it expires
WATCH_TIMEOUT_SECONDS = 300
WATCH_MAX_BACKOFF_SECONDS = 30

# Page size used when a listing must be complete (tiers, update requests)
FULL_LIST_PAGE_SIZE = 500

PLURALS: dict[ResourceKind, str] = {
    ResourceKind.TIER: TIER_PLURAL,
    ResourceKind.RECORD: RECORD_PLURAL,
    ResourceKind.WORK_ITEM: WORK_ITEM_PLURAL,
}


def load_api(config: Config) -> CustomObjectsApi:
    """Build the custom objects API from a kubeconfig file or the in-cluster service account.

    Raises:
        ConfigurationError: If no usable cluster configuration is found.
    """
    try:
        if config.kubeconfig is not None:
            k8s_config.load_kube_config(config_file=str(config.kubeconfig))
        else:
            k8s_config.load_incluster_config()
    except ConfigException as e:
        raise ConfigurationError(f"Unable to load Kubernetes configuration: {e}") from e
    return CustomObjectsApi(k8s_client.ApiClient())


class KubernetesStore:
    """TierStore backed by the custom resources of one namespace."""

    def __init__(self, api: CustomObjectsApi, namespace: str, timeout_seconds: int = 30) -> None:
        self._api = api
        self._namespace = namespace
        self._timeout_seconds = timeout_seconds

    async def _call(self, operation: str, fn: Callable[[], T]) -> T:
        """Run a blocking client call in the executor, mapping failures to StoreError."""
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, fn),
                timeout=self._timeout_seconds,
            )
        except TimeoutError as e:
            logger.error(
                "Kubernetes API call timed out",
                extra={"operation": operation, "timeout_seconds": self._timeout_seconds},
            )
            raise StoreError(f"{operation} timed out after {self._timeout_seconds}s") from e
        except ApiException as e:
            if e.status == 404:
                raise NotFoundError(f"{operation}: not found") from e
            raise StoreError(f"{operation} failed: {e.status} {e.reason}", status=e.status) from e
        except HTTPError as e:
            raise StoreError(f"{operation} failed: {e}") from e

    def _list(self, plural: str, *, label_selector: str, limit: int, cursor: str) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "label_selector": label_selector,
            "limit": limit,
            "_request_timeout": self._timeout_seconds,
        }
        if cursor:
            kwargs["_continue"] = cursor
        return self._api.list_namespaced_custom_object(
            API_GROUP, API_VERSION, self._namespace, plural, **kwargs
        )

    async def _list_all(self, plural: str, label_selector: str = "") -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        cursor = ""
        while True:
            response = await self._call(
                f"list {plural}",
                lambda c=cursor: self._list(
                    plural, label_selector=label_selector, limit=FULL_LIST_PAGE_SIZE, cursor=c
                ),
            )
            items.extend(response.get("items") or [])
            next_cursor = (response.get("metadata") or {}).get("continue") or ""
            if not next_cursor:
                return items
            if next_cursor == cursor:
                raise StoreError(f"list {plural} returned a cursor that did not advance")
            cursor = next_cursor

    async def get_tier(self, name: str) -> NSTemplateTier:
        obj = await self._call(
            f"get {TIER_PLURAL}/{name}",
            lambda: self._api.get_namespaced_custom_object(
                API_GROUP,
                API_VERSION,
                self._namespace,
                TIER_PLURAL,
                name,
                _request_timeout=self._timeout_seconds,
            ),
        )
        return NSTemplateTier.from_manifest(obj)

    async def list_tier_names(self) -> list[str]:
        items = await self._list_all(TIER_PLURAL)
        return sorted(
            name for item in items if (name := (item.get("metadata") or {}).get("name"))
        )

    async def list_records(
        self, cluster: str, tier_name: str, limit: int, cursor: str = ""
    ) -> RecordPage:
        selector = f"{tier_label_key(cluster)}={tier_name}"
        response = await self._call(
            f"list {RECORD_PLURAL}",
            lambda: self._list(RECORD_PLURAL, label_selector=selector, limit=limit, cursor=cursor),
        )

        records: list[MasterUserRecord] = []
        for item in response.get("items") or []:
            try:
                records.append(MasterUserRecord.from_manifest(item))
            except InvalidResourceError as e:
                logger.warning("Skipping invalid MasterUserRecord", extra={"error": str(e)})

        next_cursor = (response.get("metadata") or {}).get("continue") or ""
        return RecordPage(records=records, next_cursor=next_cursor)

    async def list_work_items(self, tier_name: str) -> list[TemplateUpdateRequest]:
        items = await self._list_all(WORK_ITEM_PLURAL, f"{TIER_NAME_LABEL_KEY}={tier_name}")

        work_items: list[TemplateUpdateRequest] = []
        for item in items:
            try:
                work_items.append(TemplateUpdateRequest.from_manifest(item))
            except InvalidResourceError as e:
                logger.warning("Skipping invalid TemplateUpdateRequest", extra={"error": str(e)})
        return work_items

    async def create_work_item(self, item: TemplateUpdateRequest) -> CreateOutcome:
        body = item.to_manifest()
        body["metadata"]["namespace"] = self._namespace
        try:
            await self._call(
                f"create {WORK_ITEM_PLURAL}/{item.name}",
                lambda: self._api.create_namespaced_custom_object(
                    API_GROUP,
                    API_VERSION,
                    self._namespace,
                    WORK_ITEM_PLURAL,
                    body,
                    _request_timeout=self._timeout_seconds,
                ),
            )
        except NotFoundError as e:
            # The namespace or the CRD is missing, not the request
            raise StoreError(
                f"create {WORK_ITEM_PLURAL}/{item.name} failed: namespace "
                f"'{self._namespace}' or the {WORK_ITEM_PLURAL} resource does not exist",
                status=404,
            ) from e
        except StoreError as e:
            if e.status == 409:
                return CreateOutcome.ALREADY_EXISTS
            raise
        return CreateOutcome.CREATED


class KubernetesEventSource:
    """Streams change events for tiers, records and update requests.

    Each kind is watched from its own daemon thread. A watch that expires is
    reopened from the last seen resource version; a 410 Gone restarts it
    from scratch, which replays every object as ADDED.
    """

    def __init__(self, api: CustomObjectsApi, namespace: str) -> None:
        self._api = api
        self._namespace = namespace
        self._stop = threading.Event()
        self._watchers: set[watch.Watch] = set()
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()

    def start(self, emit: Callable[[ChangeEvent], None]) -> None:
        """Start one watch thread per kind.

        Must be called from the event loop thread; ``emit`` is always called
        on that loop.
        """
        loop = asyncio.get_running_loop()
        self._stop.clear()

        def deliver(event: ChangeEvent) -> None:
            if not loop.is_closed():
                loop.call_soon_threadsafe(emit, event)

        for kind in ResourceKind:
            thread = threading.Thread(
                target=self._watch_kind,
                args=(kind, deliver),
                name=f"watch-{PLURALS[kind]}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)

    def stop(self) -> None:
        """Ask the watch threads to exit; they notice at their next event or timeout."""
        self._stop.set()
        with self._lock:
            for watcher in self._watchers:
                watcher.stop()
        self._threads.clear()

    def _watch_kind(self, kind: ResourceKind, deliver: Callable[[ChangeEvent], None]) -> None:
        plural = PLURALS[kind]
        resource_version: str | None = None
        backoff_seconds = 1

        while not self._stop.is_set():
            watcher = watch.Watch()
            with self._lock:
                self._watchers.add(watcher)
            try:
                kwargs: dict[str, Any] = {"timeout_seconds": WATCH_TIMEOUT_SECONDS}
                if resource_version:
                    kwargs["resource_version"] = resource_version
                stream = watcher.stream(
                    self._api.list_namespaced_custom_object,
                    API_GROUP,
                    API_VERSION,
                    self._namespace,
                    plural,
                    **kwargs,
                )
                errored = False
                for raw in stream:
                    if self._stop.is_set():
                        break
                    obj = raw.get("object")
                    if not isinstance(obj, dict):
                        continue
                    if raw.get("type") == "ERROR":
                        # Usually 410 Gone delivered in-stream
                        logger.warning(
                            "Watch returned an error, restarting",
                            extra={"plural": plural, "code": obj.get("code")},
                        )
                        resource_version = None
                        errored = True
                        break
                    try:
                        event_type = EventType(raw.get("type"))
                    except ValueError:
                        continue
                    resource_version = (obj.get("metadata") or {}).get(
                        "resourceVersion", resource_version
                    )
                    deliver(ChangeEvent(kind=kind, type=event_type, obj=obj))
                if errored:
                    self._stop.wait(timeout=backoff_seconds * (0.5 + random.random()))
                    backoff_seconds = min(backoff_seconds * 2, WATCH_MAX_BACKOFF_SECONDS)
                else:
                    backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    logger.warning(
                        "Watch resource version expired, restarting", extra={"plural": plural}
                    )
                    resource_version = None
                    continue
                logger.exception("Kubernetes API watch error", extra={"plural": plural})
                self._stop.wait(timeout=backoff_seconds * (0.5 + random.random()))
                backoff_seconds = min(backoff_seconds * 2, WATCH_MAX_BACKOFF_SECONDS)
            except HTTPError:
                logger.exception("Watch connection error", extra={"plural": plural})
                self._stop.wait(timeout=backoff_seconds * (0.5 + random.random()))
                backoff_seconds = min(backoff_seconds * 2, WATCH_MAX_BACKOFF_SECONDS)
            finally:
                watcher.stop()
                with self._lock:
                    self._watchers.discard(watcher)
