"""
Object store - typed get/list/create/update/delete over untyped documents.

``ObjectStore`` is the interface the reconciler and the HTTP API work
against. Every mutation is published to the attached ``EventBus`` as a
watch event. Deleting an object garbage collects, transitively, every
object whose owner references point at it.

``MemoryStore`` keeps everything in process and is the default backend;
``ranlcm.db.DatabaseStore`` persists to PostgreSQL.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set, Tuple

from ranlcm.errors import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    OwnerNotFoundError,
)
from ranlcm.events import EventBus, EventType, WatchEvent
from ranlcm.objects import GroupVersionKind, ObjectKey, Unstructured

logger = logging.getLogger(__name__)

# (api group, kind, namespace, name); the version is not part of identity
StorageKey = Tuple[str, str, str, str]


def storage_key(gvk: GroupVersionKind, key: ObjectKey) -> StorageKey:
    return (gvk.group, gvk.kind, key.namespace, key.name)


def matches_labels(obj: Unstructured, label_selector: Optional[Dict[str, str]]) -> bool:
    """Equality-based label selector match."""
    if not label_selector:
        return True
    labels = obj.labels
    return all(labels.get(k) == v for k, v in label_selector.items())


def blocking_owner_uids(obj: Unstructured) -> List[str]:
    """Uids of owners that must exist for ``obj`` to be stored."""
    return sorted(
        {
            ref.uid
            for ref in obj.owner_references
            if ref.uid and (ref.controller or ref.block_owner_deletion)
        }
    )


def now_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class ObjectStore(ABC):
    """Abstract structured object store."""

    def __init__(self, event_bus: Optional[EventBus] = None):
        self._event_bus = event_bus

    def set_event_bus(self, event_bus: EventBus) -> None:
        """Attach the event bus that receives watch events."""
        self._event_bus = event_bus

    async def _publish(self, event_type: EventType, obj: Unstructured) -> None:
        if self._event_bus is not None:
            await self._event_bus.publish(WatchEvent.for_object(event_type, obj))

    @staticmethod
    def _validate_new(obj: Unstructured) -> None:
        if not obj.kind or not obj.api_version:
            raise ValueError("object must have apiVersion and kind set")
        if not obj.name:
            raise ValueError(f"{obj.kind} must have metadata.name set")

    @abstractmethod
    async def get(self, key: ObjectKey, gvk: GroupVersionKind) -> Unstructured:
        """
        Fetch one object.

        Raises:
            NotFoundError: If no object of that kind has the key
        """

    @abstractmethod
    async def list(
        self,
        gvk: GroupVersionKind,
        namespace: Optional[str] = None,
        label_selector: Optional[Dict[str, str]] = None,
    ) -> List[Unstructured]:
        """List objects of a kind, optionally restricted to a namespace."""

    @abstractmethod
    async def create(self, obj: Unstructured) -> Unstructured:
        """
        Store a new object and return it with server fields populated.

        Raises:
            AlreadyExistsError: If an object with the same identity exists
            OwnerNotFoundError: If a controlling or blocking owner is not
                stored, since the object could never be garbage collected
        """

    @abstractmethod
    async def update(self, obj: Unstructured) -> Unstructured:
        """
        Replace an existing object.

        If ``obj`` carries a resourceVersion it must match the stored one.

        Raises:
            NotFoundError: If the object does not exist
            ConflictError: If the resourceVersion is stale
        """

    @abstractmethod
    async def delete(self, key: ObjectKey, gvk: GroupVersionKind) -> None:
        """
        Delete an object and garbage collect its dependents.

        Raises:
            NotFoundError: If the object does not exist
        """

    async def close(self) -> None:
        """Release backend resources."""


class MemoryStore(ObjectStore):
    """In-process object store guarded by an asyncio lock."""

    def __init__(self, event_bus: Optional[EventBus] = None):
        super().__init__(event_bus)
        self._objects: Dict[StorageKey, Unstructured] = {}
        self._resource_version = 0
        self._lock = asyncio.Lock()

    def _next_resource_version(self) -> str:
        self._resource_version += 1
        return str(self._resource_version)

    async def get(self, key: ObjectKey, gvk: GroupVersionKind) -> Unstructured:
        async with self._lock:
            obj = self._objects.get(storage_key(gvk, key))
            if obj is None:
                raise NotFoundError(gvk.kind, str(key))
            return obj.deepcopy()

    async def list(
        self,
        gvk: GroupVersionKind,
        namespace: Optional[str] = None,
        label_selector: Optional[Dict[str, str]] = None,
    ) -> List[Unstructured]:
        async with self._lock:
            items = [
                obj.deepcopy()
                for (group, kind, ns, _), obj in self._objects.items()
                if group == gvk.group
                and kind == gvk.kind
                and (namespace is None or ns == namespace)
                and matches_labels(obj, label_selector)
            ]
        return sorted(items, key=lambda o: (o.namespace, o.name))

    async def create(self, obj: Unstructured) -> Unstructured:
        self._validate_new(obj)
        skey = storage_key(obj.gvk, obj.key)

        async with self._lock:
            if skey in self._objects:
                raise AlreadyExistsError(obj.kind, str(obj.key))

            owner_uids = blocking_owner_uids(obj)
            if owner_uids:
                live = {o.uid for o in self._objects.values()}
                for owner_uid in owner_uids:
                    if owner_uid not in live:
                        raise OwnerNotFoundError(obj.kind, str(obj.key), owner_uid)

            stored = obj.deepcopy()
            stored.metadata["uid"] = str(uuid.uuid4())
            stored.metadata["resourceVersion"] = self._next_resource_version()
            stored.metadata["creationTimestamp"] = now_timestamp()
            stored.metadata["generation"] = 1
            self._objects[skey] = stored
            created = stored.deepcopy()

        logger.info(f"Created {created.kind} {created.key}")
        await self._publish(EventType.ADDED, created)
        return created

    async def update(self, obj: Unstructured) -> Unstructured:
        skey = storage_key(obj.gvk, obj.key)

        async with self._lock:
            current = self._objects.get(skey)
            if current is None:
                raise NotFoundError(obj.kind, str(obj.key))
            if obj.resource_version and obj.resource_version != current.resource_version:
                raise ConflictError(obj.kind, str(obj.key))

            stored = obj.deepcopy()
            for server_field in ("uid", "creationTimestamp"):
                stored.metadata[server_field] = current.metadata.get(server_field)
            generation = current.generation
            if stored.spec != current.spec:
                generation += 1
            stored.metadata["generation"] = generation
            stored.metadata["resourceVersion"] = self._next_resource_version()
            self._objects[skey] = stored
            updated = stored.deepcopy()

        logger.info(f"Updated {updated.kind} {updated.key} (generation {generation})")
        await self._publish(EventType.MODIFIED, updated)
        return updated

    async def delete(self, key: ObjectKey, gvk: GroupVersionKind) -> None:
        async with self._lock:
            target = self._objects.get(storage_key(gvk, key))
            if target is None:
                raise NotFoundError(gvk.kind, str(key))
            removed = self._collect_cascade(target)
            for skey, _ in removed:
                del self._objects[skey]

        for _, obj in removed:
            logger.info(f"Deleted {obj.kind} {obj.key}")
            await self._publish(EventType.DELETED, obj)

    def _collect_cascade(
        self, target: Unstructured
    ) -> List[Tuple[StorageKey, Unstructured]]:
        """Return ``target`` followed by every object transitively owned by it."""
        removed = [(storage_key(target.gvk, target.key), target)]
        doomed: Set[str] = {target.uid}
        frontier = [target.uid]

        while frontier:
            owner_uid = frontier.pop()
            for skey, obj in self._objects.items():
                if obj.uid in doomed:
                    continue
                if any(ref.uid == owner_uid for ref in obj.owner_references):
                    doomed.add(obj.uid)
                    frontier.append(obj.uid)
                    removed.append((skey, obj))

        return removed
