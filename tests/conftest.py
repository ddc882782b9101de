"""Pytest configuration and fixtures."""

import asyncio
import copy
from typing import Any, Dict, List, Optional, Tuple

import pytest

from events import EventType, WatchEvent
from reconciler import SyncReconciler
from resources import DEPLOYMENTS, MEMCACHEDS, ResourceKind
from store import ConflictError, NotFoundError, ResourceStore

TEST_LABEL_KEY = "sync-key"


def apply_merge_patch(target: Any, patch: Any) -> Any:
    """Apply an RFC 7386 merge patch."""
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    result = copy.deepcopy(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = apply_merge_patch(result.get(key), value)
    return result


class FakeResourceStore(ResourceStore):
    """
    In-memory ResourceStore.

    Bumps resourceVersion on every write and rejects patches carrying a stale
    resourceVersion with ConflictError, like the API server.
    """

    def __init__(self):
        self.objects: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
        self.gets: List[Tuple[str, str, str]] = []
        self.patches: List[Dict[str, Any]] = []
        self.watch_events: List[WatchEvent] = []
        self.list_calls = 0
        self.watch_calls: List[Optional[str]] = []
        self._version = 100

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def put(self, kind: ResourceKind, obj: Dict[str, Any]) -> Dict[str, Any]:
        """Create or replace an object, as an external writer would."""
        obj = copy.deepcopy(obj)
        metadata = obj.setdefault("metadata", {})
        metadata["resourceVersion"] = self._next_version()
        key = (kind.plural, metadata["namespace"], metadata["name"])
        self.objects[key] = obj
        return copy.deepcopy(obj)

    def delete(self, kind: ResourceKind, namespace: str, name: str) -> None:
        self.objects.pop((kind.plural, namespace, name), None)

    def peek(self, kind: ResourceKind, namespace: str, name: str) -> Dict[str, Any]:
        return self.objects[(kind.plural, namespace, name)]

    def gets_for(self, kind: ResourceKind) -> List[Tuple[str, str, str]]:
        return [g for g in self.gets if g[0] == kind.plural]

    async def get(self, kind, namespace, name):
        key = (kind.plural, namespace, name)
        self.gets.append(key)
        if key not in self.objects:
            raise NotFoundError(f"{kind.plural} {namespace}/{name} not found", status=404)
        return copy.deepcopy(self.objects[key])

    async def patch(self, kind, namespace, name, patch, resource_version=None):
        key = (kind.plural, namespace, name)
        self.patches.append(
            {
                "kind": kind.plural,
                "namespace": namespace,
                "name": name,
                "patch": copy.deepcopy(patch),
                "resource_version": resource_version,
            }
        )
        if key not in self.objects:
            raise NotFoundError(f"{kind.plural} {namespace}/{name} not found", status=404)

        current = self.objects[key]
        if (
            resource_version is not None
            and current["metadata"]["resourceVersion"] != resource_version
        ):
            raise ConflictError(
                "the object has been modified; please apply your changes "
                "to the latest version and try again",
                status=409,
                reason="Conflict",
            )

        updated = apply_merge_patch(current, patch)
        updated["metadata"]["resourceVersion"] = self._next_version()
        self.objects[key] = updated
        return copy.deepcopy(updated)

    async def list(self, kind, namespace=None):
        self.list_calls += 1
        items = [
            copy.deepcopy(obj)
            for (plural, ns, _), obj in sorted(self.objects.items())
            if plural == kind.plural and (namespace is None or ns == namespace)
        ]
        return items, str(self._version)

    async def watch(self, kind, namespace=None, resource_version=None, timeout_seconds=300):
        self.watch_calls.append(resource_version)
        events, self.watch_events = self.watch_events, []
        for event in events:
            yield event
        # An idle watch ends when the server-side timeout elapses
        await asyncio.sleep(0.01)


def make_deployment(
    name: str,
    namespace: str = "ns",
    replicas: Optional[int] = 1,
    labels: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """Build a raw Deployment object."""
    spec: Dict[str, Any] = {"template": {"spec": {"containers": [{"name": "app"}]}}}
    if replicas is not None:
        spec["replicas"] = replicas
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": name, "namespace": namespace, "labels": labels or {}},
        "spec": spec,
    }


def make_memcached(name: str, namespace: str = "ns", size: int = 1) -> Dict[str, Any]:
    """Build a raw Memcached object."""
    return {
        "apiVersion": "cache.example.com/v1alpha1",
        "kind": "Memcached",
        "metadata": {"name": name, "namespace": namespace},
        "spec": {"size": size},
        "status": {"nodes": []},
    }


def watch_event(event_type: EventType, obj: Dict[str, Any]) -> WatchEvent:
    return WatchEvent(event_type=event_type, object=obj)


@pytest.fixture
def store():
    """In-memory resource store."""
    return FakeResourceStore()


@pytest.fixture
def reconciler(store):
    """Sync reconciler using the short test label key."""
    return SyncReconciler(
        store=store,
        label_key=TEST_LABEL_KEY,
        primary_kind=DEPLOYMENTS,
        secondary_kind=MEMCACHEDS,
    )


@pytest.fixture
def labeled_pair(store):
    """Primary ns/web (replicas 5) labeled for secondary ns/cache-1 (size 3)."""
    store.put(
        DEPLOYMENTS,
        make_deployment("web", replicas=5, labels={TEST_LABEL_KEY: "cache-1"}),
    )
    store.put(MEMCACHEDS, make_memcached("cache-1", size=3))
    return store
