"""Store protocol, error taxonomy and the create-or-update helper.

The store is the only shared state in the system. Everything the controller
knows is re-read from it on each reconciliation, and the AddressClaim
create-if-absent call is the only mutual exclusion primitive used.
"""

from __future__ import annotations

import copy
from collections.abc import Callable
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable

from vipalloc.store.kinds import ResourceKind


class StoreError(Exception):
    """A store request failed. ``status`` is the HTTP status when known."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class NotFoundError(StoreError):
    """The addressed object does not exist."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status=404)


class AlreadyExistsError(StoreError):
    """A create collided with an existing object of the same name."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status=409)


class ConflictError(StoreError):
    """An update carried a stale resourceVersion."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status=409)


@runtime_checkable
class Store(Protocol):
    """Minimal object store interface the controller needs.

    Objects are Kubernetes-style JSON dicts. ``namespace`` is ignored for
    cluster-scoped kinds.
    """

    async def get(self, kind: ResourceKind, namespace: str, name: str) -> dict[str, Any]: ...

    async def list(
        self,
        kind: ResourceKind,
        namespace: str = "",
        labels: dict[str, str] | None = None,
    ) -> list[dict[str, Any]]: ...

    async def create(self, kind: ResourceKind, obj: dict[str, Any]) -> dict[str, Any]: ...

    async def update(self, kind: ResourceKind, obj: dict[str, Any]) -> dict[str, Any]: ...

    async def update_status(self, kind: ResourceKind, obj: dict[str, Any]) -> dict[str, Any]: ...

    async def delete(self, kind: ResourceKind, namespace: str, name: str) -> None: ...


class OperationResult(StrEnum):
    NONE = "unchanged"
    CREATED = "created"
    UPDATED = "updated"


async def create_or_update(
    store: Store,
    kind: ResourceKind,
    obj: dict[str, Any],
    mutate: Callable[[dict[str, Any]], None],
) -> tuple[OperationResult, dict[str, Any]]:
    """Fetch ``obj`` by name, apply ``mutate`` and write it back.

    If the object does not exist, ``mutate`` is applied to ``obj`` itself and
    the result is created. If it exists, ``mutate`` is applied to the fetched
    copy, which is only written when the mutation changed something. Returns
    the operation performed and the object as last seen.
    """
    metadata = obj.get("metadata") or {}
    name = str(metadata.get("name") or "")
    namespace = str(metadata.get("namespace") or "")
    if not name:
        raise ValueError(f"{kind.kind} object has no metadata.name")

    try:
        existing = await store.get(kind, namespace, name)
    except NotFoundError:
        mutate(obj)
        created = await store.create(kind, obj)
        return OperationResult.CREATED, created

    before = copy.deepcopy(existing)
    mutate(existing)
    if existing == before:
        return OperationResult.NONE, existing

    updated = await store.update(kind, existing)
    return OperationResult.UPDATED, updated
