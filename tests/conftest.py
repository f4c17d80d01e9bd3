"""Pytest configuration and fixtures."""

from typing import Callable, Dict, List, Optional

import pytest

from ranlcm.events import EventBus
from ranlcm.objects import Group, ObjectKey, Unstructured
from ranlcm.scheme import Scheme, register_builtin_kinds, reset_scheme
from ranlcm.store import MemoryStore


class RecordingStore(MemoryStore):
    """
    MemoryStore that records every call and can inject failures.

    ``fail_get`` / ``fail_create`` map object names to the exception the
    next matching call should raise. ``before_create`` runs just before a
    create is applied, which lets tests simulate a concurrent writer.
    """

    def __init__(self, event_bus: Optional[EventBus] = None):
        super().__init__(event_bus)
        self.calls: List[tuple] = []
        self.fail_get: Dict[str, Exception] = {}
        self.fail_create: Dict[str, Exception] = {}
        self.before_create: Optional[Callable] = None

    @property
    def mutations(self) -> List[tuple]:
        return [c for c in self.calls if c[0] in ("create", "update", "delete")]

    async def get(self, key, gvk):
        self.calls.append(("get", gvk.kind, str(key)))
        if key.name in self.fail_get:
            raise self.fail_get.pop(key.name)
        return await super().get(key, gvk)

    async def create(self, obj):
        self.calls.append(("create", obj.kind, str(obj.key)))
        if obj.name in self.fail_create:
            raise self.fail_create.pop(obj.name)
        if self.before_create is not None:
            hook, self.before_create = self.before_create, None
            await hook(obj)
        return await super().create(obj)

    async def update(self, obj):
        self.calls.append(("update", obj.kind, str(obj.key)))
        return await super().update(obj)

    async def delete(self, key, gvk):
        self.calls.append(("delete", gvk.kind, str(key)))
        return await super().delete(key, gvk)


@pytest.fixture(autouse=True)
def fresh_scheme():
    """Ensure the default scheme is rebuilt for each test."""
    reset_scheme()
    yield
    reset_scheme()


@pytest.fixture
def scheme():
    """A scheme with Group and PlacementRule registered."""
    s = Scheme()
    register_builtin_kinds(s)
    return s


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def store():
    """A recording in-memory store without an event bus."""
    return RecordingStore()


@pytest.fixture
def create_group(store):
    """Return a coroutine function that stores a Group without recording the call."""

    async def _create(
        name: str = "du-sites",
        clusters: Optional[List[str]] = None,
        namespace: str = "default",
    ) -> Unstructured:
        group = Group(name=name, namespace=namespace, clusters=clusters or [])
        created = await MemoryStore.create(store, group.to_object())
        return created

    return _create


@pytest.fixture
def group_key():
    return ObjectKey(namespace="default", name="du-sites")
