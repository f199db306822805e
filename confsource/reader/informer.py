"""Namespace-scoped list/watch cache for Kubernetes resources.

The informer lists every object of one kind in a namespace, keeps them in a
local cache keyed by name, then follows the watch feed from the listed
resource version. When the watch expires or breaks, it re-lists and
reconciles the cache, dispatching the differences as add/update/delete
notifications.

The initial list is done by ``sync`` so that a subscriber can fail fast when
the cluster is unreachable. The notifications for the objects found by that
list are dispatched as "add" events when ``run`` starts.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from kubernetes_asyncio import watch
from kubernetes_asyncio.client.exceptions import ApiException

logger = logging.getLogger(__name__)

ObjectHandler = Callable[[Any], Awaitable[None]]

# HTTP status the API server uses for an expired resource version
STATUS_GONE = 410

DEFAULT_WATCH_TIMEOUT = 300
DEFAULT_RESYNC_DELAY = 1.0


@dataclass
class ResourceEventHandler:
    """Callbacks for cache changes; any of them may be omitted."""

    on_add: Optional[ObjectHandler] = None
    on_update: Optional[Callable[[Any, Any], Awaitable[None]]] = None
    on_delete: Optional[ObjectHandler] = None


def object_name(obj: Any) -> str:
    return obj.metadata.name


def object_version(obj: Any) -> Optional[str]:
    return getattr(obj.metadata, "resource_version", None)


class ResourceInformer:
    """List-then-watch cache for one resource kind in one namespace."""

    def __init__(
        self,
        list_func: Callable[..., Awaitable[Any]],
        namespace: str,
        watch_factory: Callable[[], Any] = watch.Watch,
        watch_timeout: int = DEFAULT_WATCH_TIMEOUT,
        resync_delay: float = DEFAULT_RESYNC_DELAY,
    ):
        self.namespace = namespace
        self.cache: dict[str, Any] = {}
        self._list_func = list_func
        self._watch_factory = watch_factory
        self._watch_timeout = watch_timeout
        self._resync_delay = resync_delay
        self._handlers: list[ResourceEventHandler] = []
        self._resource_version: Optional[str] = None
        self._synced = False

    @property
    def has_synced(self) -> bool:
        return self._synced

    def add_handler(self, handler: ResourceEventHandler) -> None:
        self._handlers.append(handler)

    async def sync(self) -> None:
        """Perform the initial list and fill the cache.

        Raises:
            ApiException: If the API server rejects the list
        """
        result = await self._list_func(namespace=self.namespace)
        self.cache = {object_name(item): item for item in result.items}
        self._resource_version = result.metadata.resource_version
        self._synced = True
        logger.info(
            f"Cache synced for namespace {self.namespace}: {len(self.cache)} objects"
        )

    async def run(self) -> None:
        """Dispatch the initial objects, then follow the watch until cancelled."""
        if not self._synced:
            await self.sync()

        for obj in list(self.cache.values()):
            await self._dispatch_add(obj)

        while True:
            try:
                await self._watch()
            except asyncio.CancelledError:
                raise
            except ApiException as e:
                if e.status == STATUS_GONE:
                    logger.info(f"Watch in {self.namespace} expired, re-listing")
                else:
                    logger.warning(f"Watch in {self.namespace} failed: {e.status} {e.reason}")
                    await asyncio.sleep(self._resync_delay)
            except Exception as e:
                logger.warning(f"Watch in {self.namespace} failed: {e}")
                await asyncio.sleep(self._resync_delay)

            try:
                await self._relist()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Re-list in {self.namespace} failed: {e}")
                await asyncio.sleep(self._resync_delay)

    async def _watch(self) -> None:
        watcher = self._watch_factory()
        try:
            async for event in watcher.stream(
                self._list_func,
                namespace=self.namespace,
                resource_version=self._resource_version,
                timeout_seconds=self._watch_timeout,
            ):
                event_type = event.get("type")
                obj = event.get("object")

                if event_type == "ERROR":
                    logger.info(f"Watch in {self.namespace} reported an error, re-listing")
                    return

                await self._apply(event_type, obj)
                version = object_version(obj)
                if version:
                    self._resource_version = version
        finally:
            watcher.stop()

    async def _apply(self, event_type: str, obj: Any) -> None:
        name = object_name(obj)
        if event_type == "ADDED":
            old = self.cache.get(name)
            self.cache[name] = obj
            if old is None:
                await self._dispatch_add(obj)
            else:
                await self._dispatch_update(old, obj)
        elif event_type == "MODIFIED":
            old = self.cache.get(name)
            self.cache[name] = obj
            await self._dispatch_update(old, obj)
        elif event_type == "DELETED":
            self.cache.pop(name, None)
            await self._dispatch_delete(obj)
        else:
            logger.debug(f"Ignoring watch event {event_type} for {name}")

    async def _relist(self) -> None:
        result = await self._list_func(namespace=self.namespace)
        fresh = {object_name(item): item for item in result.items}
        old_cache, self.cache = self.cache, fresh
        self._resource_version = result.metadata.resource_version

        for name, obj in fresh.items():
            old = old_cache.get(name)
            if old is None:
                await self._dispatch_add(obj)
            elif object_version(old) != object_version(obj):
                await self._dispatch_update(old, obj)

        for name, obj in old_cache.items():
            if name not in fresh:
                await self._dispatch_delete(obj)

    async def _dispatch_add(self, obj: Any) -> None:
        for handler in self._handlers:
            if handler.on_add is not None:
                await handler.on_add(obj)

    async def _dispatch_update(self, old: Any, new: Any) -> None:
        for handler in self._handlers:
            if handler.on_update is not None:
                await handler.on_update(old, new)

    async def _dispatch_delete(self, obj: Any) -> None:
        for handler in self._handlers:
            if handler.on_delete is not None:
                await handler.on_delete(obj)
