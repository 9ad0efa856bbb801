"""Shared fixtures.

``InMemoryStore`` behaves like the Kubernetes API for the parts the
controller relies on: create-if-absent, resourceVersion conflicts on update,
a status subresource for VirtualIPs, finalizer-gated deletion and owner
reference cascade.
"""

from __future__ import annotations

import asyncio
import copy
import itertools
from collections.abc import Awaitable, Callable
from typing import Any

import pytest

from vipalloc.allocator.selector import AllocationSelector
from vipalloc.controller.exposure import ExposureManager
from vipalloc.controller.reconciler import Action, ReconcileResult, VirtualIPReconciler
from vipalloc.models.resources import ObjectKey
from vipalloc.store.base import AlreadyExistsError, ConflictError, NotFoundError, StoreError
from vipalloc.store.kinds import SEGMENT_MAPPING, SERVICE, VIRTUAL_IP, ResourceKind

_STATUS_SUBRESOURCE: frozenset[str] = frozenset({VIRTUAL_IP.kind})

_Key = tuple[str, str, str]


class InMemoryStore:
    def __init__(self) -> None:
        self._objects: dict[_Key, dict[str, Any]] = {}
        self._rv = itertools.count(1)
        self._uid = itertools.count(1)
        self._failures: dict[tuple[str, str], list[StoreError]] = {}
        self.calls: list[tuple[str, str, str]] = []

    # ------------------------------------------------------------------
    # Store protocol
    # ------------------------------------------------------------------

    async def get(self, kind: ResourceKind, namespace: str, name: str) -> dict[str, Any]:
        self._record("get", kind, name)
        obj = self._objects.get(self._key(kind, namespace, name))
        if obj is None:
            raise NotFoundError(f"{kind.kind} {namespace}/{name} not found")
        return copy.deepcopy(obj)

    async def list(
        self,
        kind: ResourceKind,
        namespace: str = "",
        labels: dict[str, str] | None = None,
    ) -> list[dict[str, Any]]:
        self._record("list", kind, "")
        await asyncio.sleep(0)
        out = []
        for (k, ns, _), obj in self._objects.items():
            if k != kind.kind:
                continue
            if namespace and kind.namespaced and ns != namespace:
                continue
            obj_labels = (obj.get("metadata") or {}).get("labels") or {}
            if labels and any(obj_labels.get(lk) != lv for lk, lv in labels.items()):
                continue
            out.append(copy.deepcopy(obj))
        return out

    async def create(self, kind: ResourceKind, obj: dict[str, Any]) -> dict[str, Any]:
        namespace, name = _name_of(obj)
        self._record("create", kind, name)
        await asyncio.sleep(0)
        # check-and-insert below runs without yielding, so create-if-absent is atomic
        key = self._key(kind, namespace, name)
        if key in self._objects:
            raise AlreadyExistsError(f"{kind.kind} {name} already exists")
        return copy.deepcopy(self._insert(kind, obj))

    async def update(self, kind: ResourceKind, obj: dict[str, Any]) -> dict[str, Any]:
        namespace, name = _name_of(obj)
        self._record("update", kind, name)
        key = self._key(kind, namespace, name)
        existing = self._existing(key, kind, obj)

        new = copy.deepcopy(obj)
        metadata = new.setdefault("metadata", {})
        metadata["uid"] = existing["metadata"]["uid"]
        if "deletionTimestamp" in existing["metadata"]:
            metadata["deletionTimestamp"] = existing["metadata"]["deletionTimestamp"]
        else:
            metadata.pop("deletionTimestamp", None)
        if kind.kind in _STATUS_SUBRESOURCE:
            new["status"] = copy.deepcopy(existing.get("status") or {})
        metadata["resourceVersion"] = str(next(self._rv))
        self._objects[key] = new

        if metadata.get("deletionTimestamp") and not metadata.get("finalizers"):
            self._remove(key)
        return copy.deepcopy(new)

    async def update_status(self, kind: ResourceKind, obj: dict[str, Any]) -> dict[str, Any]:
        namespace, name = _name_of(obj)
        self._record("update_status", kind, name)
        key = self._key(kind, namespace, name)
        existing = self._existing(key, kind, obj)
        existing["status"] = copy.deepcopy(obj.get("status") or {})
        existing["metadata"]["resourceVersion"] = str(next(self._rv))
        return copy.deepcopy(existing)

    async def delete(self, kind: ResourceKind, namespace: str, name: str) -> None:
        self._record("delete", kind, name)
        key = self._key(kind, namespace, name)
        if key not in self._objects:
            raise NotFoundError(f"{kind.kind} {namespace}/{name} not found")
        self._delete(key)

    # ------------------------------------------------------------------
    # Test helpers
    # ------------------------------------------------------------------

    def fail_next(self, op: str, kind: ResourceKind, error: StoreError | None = None) -> None:
        """Make the next ``op`` on ``kind`` raise ``error``."""
        self._failures.setdefault((op, kind.kind), []).append(error or StoreError("injected failure", status=500))

    def peek(self, kind: ResourceKind, namespace: str, name: str) -> dict[str, Any] | None:
        obj = self._objects.get(self._key(kind, namespace, name))
        return copy.deepcopy(obj) if obj is not None else None

    def names(self, kind: ResourceKind) -> list[str]:
        return [name for (k, _, name) in self._objects if k == kind.kind]

    def count(self, op: str, kind: ResourceKind) -> int:
        return sum(1 for call in self.calls if call[0] == op and call[1] == kind.kind)

    def add_mapping(
        self,
        name: str,
        segment: str,
        excluded: list[str] | None = None,
        group: str = "",
    ) -> dict[str, Any]:
        return self._insert(
            SEGMENT_MAPPING,
            {
                "metadata": {"name": name},
                "spec": {"segment": segment, "excludedIPs": excluded or [], "keepalivedGroup": group or name},
            },
        )

    def add_virtual_ip(
        self,
        name: str,
        namespace: str = "default",
        service: str = "svc",
        segment: str = "",
        clone: bool = False,
    ) -> ObjectKey:
        self._insert(
            VIRTUAL_IP,
            {
                "metadata": {"name": name, "namespace": namespace},
                "spec": {"segment": segment, "service": service, "clone": clone},
            },
        )
        return ObjectKey(namespace, name)

    def add_service(self, name: str, namespace: str = "default", **spec: Any) -> dict[str, Any]:
        body: dict[str, Any] = {
            "metadata": {"name": name, "namespace": namespace, "labels": {"app": name}},
            "spec": {
                "type": "ClusterIP",
                "clusterIP": "172.30.0.10",
                "clusterIPs": ["172.30.0.10"],
                "selector": {"app": name},
                "ports": [{"name": "http", "port": 80, "targetPort": 8080, "protocol": "TCP"}],
                **spec,
            },
        }
        return self._insert(SERVICE, body)

    def request_deletion(self, kind: ResourceKind, namespace: str, name: str) -> None:
        self._delete(self._key(kind, namespace, name))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _record(self, op: str, kind: ResourceKind, name: str) -> None:
        self.calls.append((op, kind.kind, name))
        pending = self._failures.get((op, kind.kind))
        if pending:
            raise pending.pop(0)

    @staticmethod
    def _key(kind: ResourceKind, namespace: str, name: str) -> _Key:
        return (kind.kind, namespace if kind.namespaced else "", name)

    def _insert(self, kind: ResourceKind, obj: dict[str, Any]) -> dict[str, Any]:
        stored = copy.deepcopy(obj)
        stored.setdefault("apiVersion", kind.api_version)
        stored.setdefault("kind", kind.kind)
        metadata = stored.setdefault("metadata", {})
        metadata["uid"] = f"uid-{next(self._uid)}"
        metadata["resourceVersion"] = str(next(self._rv))
        metadata.pop("deletionTimestamp", None)
        namespace, name = _name_of(stored)
        self._objects[self._key(kind, namespace, name)] = stored
        return stored

    def _existing(self, key: _Key, kind: ResourceKind, obj: dict[str, Any]) -> dict[str, Any]:
        existing = self._objects.get(key)
        if existing is None:
            raise NotFoundError(f"{kind.kind} {key[1]}/{key[2]} not found")
        rv = (obj.get("metadata") or {}).get("resourceVersion")
        if rv and rv != existing["metadata"]["resourceVersion"]:
            raise ConflictError(f"{kind.kind} {key[2]}: the object has been modified")
        return existing

    def _delete(self, key: _Key) -> None:
        obj = self._objects[key]
        metadata = obj["metadata"]
        if metadata.get("finalizers"):
            if "deletionTimestamp" not in metadata:
                metadata["deletionTimestamp"] = "2026-10-19T12:00:00Z"
                metadata["resourceVersion"] = str(next(self._rv))
            return
        self._remove(key)

    def _remove(self, key: _Key) -> None:
        obj = self._objects.pop(key)
        uid = obj["metadata"]["uid"]
        owned = [
            k
            for k, o in self._objects.items()
            if any(ref.get("uid") == uid for ref in (o.get("metadata") or {}).get("ownerReferences") or [])
        ]
        for k in owned:
            if k in self._objects:
                self._delete(k)


def _name_of(obj: dict[str, Any]) -> tuple[str, str]:
    metadata = obj.get("metadata") or {}
    return str(metadata.get("namespace") or ""), str(metadata.get("name") or "")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def exposure(store: InMemoryStore) -> ExposureManager:
    return ExposureManager(store, keepalived_group_namespace="keepalived-operator")


@pytest.fixture
def reconciler(store: InMemoryStore, exposure: ExposureManager) -> VirtualIPReconciler:
    return VirtualIPReconciler(store, AllocationSelector(store), exposure)


_SETTLED: frozenset[Action] = frozenset({Action.VALID, Action.GONE, Action.NOOP, Action.FAILED})


@pytest.fixture
def drive(
    reconciler: VirtualIPReconciler,
) -> Callable[[ObjectKey, int], Awaitable[list[ReconcileResult]]]:
    """Reconcile ``key`` repeatedly, as successive write-triggered events would."""

    async def _drive(key: ObjectKey, max_steps: int = 20) -> list[ReconcileResult]:
        results: list[ReconcileResult] = []
        for _ in range(max_steps):
            result = await reconciler.reconcile(key)
            results.append(result)
            if result.action in _SETTLED:
                break
        return results

    return _drive
