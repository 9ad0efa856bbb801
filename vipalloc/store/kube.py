"""Store implementation backed by the Kubernetes API via kubernetes_asyncio.

Custom kinds go through ``CustomObjectsApi`` and already come back as dicts.
Services go through ``CoreV1Api`` and are converted to dicts with the API
client's own serializer so that callers only ever see camelCase JSON.
Every request carries ``_request_timeout`` so no call blocks unbounded.
"""

from __future__ import annotations

import json
from typing import Any

from kubernetes_asyncio import client as k8s_client
from kubernetes_asyncio.client.exceptions import ApiException

from vipalloc.observability.logging import get_logger
from vipalloc.store.base import AlreadyExistsError, ConflictError, NotFoundError, StoreError
from vipalloc.store.kinds import SERVICE, ResourceKind

_log = get_logger("store.kube")


class KubeStore:
    """Kubernetes-backed :class:`~vipalloc.store.base.Store`."""

    def __init__(self, api_client: Any = None, request_timeout: float = 10.0) -> None:
        self._custom = k8s_client.CustomObjectsApi(api_client)
        self._core = k8s_client.CoreV1Api(api_client)
        self._timeout = request_timeout

    # ------------------------------------------------------------------
    # Store protocol
    # ------------------------------------------------------------------

    async def get(self, kind: ResourceKind, namespace: str, name: str) -> dict[str, Any]:
        try:
            if kind.core:
                self._require_service(kind)
                svc = await self._core.read_namespaced_service(name, namespace, _request_timeout=self._timeout)
                return self._to_dict(svc)
            if kind.namespaced:
                return await self._custom.get_namespaced_custom_object(  # type: ignore[no-any-return]
                    kind.group, kind.version, namespace, kind.plural, name, _request_timeout=self._timeout
                )
            return await self._custom.get_cluster_custom_object(  # type: ignore[no-any-return]
                kind.group, kind.version, kind.plural, name, _request_timeout=self._timeout
            )
        except ApiException as exc:
            raise _translate(exc, "get", kind, namespace, name) from exc

    async def list(
        self,
        kind: ResourceKind,
        namespace: str = "",
        labels: dict[str, str] | None = None,
    ) -> list[dict[str, Any]]:
        kwargs: dict[str, Any] = {"_request_timeout": self._timeout}
        if labels:
            kwargs["label_selector"] = format_label_selector(labels)
        try:
            if kind.core:
                self._require_service(kind)
                if namespace:
                    result = await self._core.list_namespaced_service(namespace, **kwargs)
                else:
                    result = await self._core.list_service_for_all_namespaces(**kwargs)
                body = self._to_dict(result)
            elif kind.namespaced and namespace:
                body = await self._custom.list_namespaced_custom_object(
                    kind.group, kind.version, namespace, kind.plural, **kwargs
                )
            else:
                body = await self._custom.list_cluster_custom_object(kind.group, kind.version, kind.plural, **kwargs)
        except ApiException as exc:
            raise _translate(exc, "list", kind, namespace, "") from exc
        return list(body.get("items") or [])

    async def create(self, kind: ResourceKind, obj: dict[str, Any]) -> dict[str, Any]:
        body = _with_type_meta(kind, obj)
        namespace, name = _name_of(body)
        try:
            if kind.core:
                self._require_service(kind)
                svc = await self._core.create_namespaced_service(namespace, body, _request_timeout=self._timeout)
                return self._to_dict(svc)
            if kind.namespaced:
                return await self._custom.create_namespaced_custom_object(  # type: ignore[no-any-return]
                    kind.group, kind.version, namespace, kind.plural, body, _request_timeout=self._timeout
                )
            return await self._custom.create_cluster_custom_object(  # type: ignore[no-any-return]
                kind.group, kind.version, kind.plural, body, _request_timeout=self._timeout
            )
        except ApiException as exc:
            raise _translate(exc, "create", kind, namespace, name) from exc

    async def update(self, kind: ResourceKind, obj: dict[str, Any]) -> dict[str, Any]:
        body = _with_type_meta(kind, obj)
        namespace, name = _name_of(body)
        try:
            if kind.core:
                self._require_service(kind)
                svc = await self._core.replace_namespaced_service(
                    name, namespace, body, _request_timeout=self._timeout
                )
                return self._to_dict(svc)
            if kind.namespaced:
                return await self._custom.replace_namespaced_custom_object(  # type: ignore[no-any-return]
                    kind.group, kind.version, namespace, kind.plural, name, body, _request_timeout=self._timeout
                )
            return await self._custom.replace_cluster_custom_object(  # type: ignore[no-any-return]
                kind.group, kind.version, kind.plural, name, body, _request_timeout=self._timeout
            )
        except ApiException as exc:
            raise _translate(exc, "update", kind, namespace, name) from exc

    async def update_status(self, kind: ResourceKind, obj: dict[str, Any]) -> dict[str, Any]:
        body = _with_type_meta(kind, obj)
        namespace, name = _name_of(body)
        try:
            if kind.core:
                self._require_service(kind)
                svc = await self._core.replace_namespaced_service_status(
                    name, namespace, body, _request_timeout=self._timeout
                )
                return self._to_dict(svc)
            if kind.namespaced:
                return await self._custom.replace_namespaced_custom_object_status(  # type: ignore[no-any-return]
                    kind.group, kind.version, namespace, kind.plural, name, body, _request_timeout=self._timeout
                )
            return await self._custom.replace_cluster_custom_object_status(  # type: ignore[no-any-return]
                kind.group, kind.version, kind.plural, name, body, _request_timeout=self._timeout
            )
        except ApiException as exc:
            raise _translate(exc, "update_status", kind, namespace, name) from exc

    async def delete(self, kind: ResourceKind, namespace: str, name: str) -> None:
        try:
            if kind.core:
                self._require_service(kind)
                await self._core.delete_namespaced_service(name, namespace, _request_timeout=self._timeout)
            elif kind.namespaced:
                await self._custom.delete_namespaced_custom_object(
                    kind.group, kind.version, namespace, kind.plural, name, _request_timeout=self._timeout
                )
            else:
                await self._custom.delete_cluster_custom_object(
                    kind.group, kind.version, kind.plural, name, _request_timeout=self._timeout
                )
        except ApiException as exc:
            raise _translate(exc, "delete", kind, namespace, name) from exc

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _to_dict(self, obj: Any) -> dict[str, Any]:
        return self._core.api_client.sanitize_for_serialization(obj)  # type: ignore[no-any-return]

    @staticmethod
    def _require_service(kind: ResourceKind) -> None:
        if kind != SERVICE:
            raise StoreError(f"unsupported core kind {kind.kind}")


def format_label_selector(labels: dict[str, str]) -> str:
    """Render an equality-based label selector (``k1=v1,k2=v2``)."""
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


def _with_type_meta(kind: ResourceKind, obj: dict[str, Any]) -> dict[str, Any]:
    body = dict(obj)
    body.setdefault("apiVersion", kind.api_version)
    body.setdefault("kind", kind.kind)
    return body


def _name_of(obj: dict[str, Any]) -> tuple[str, str]:
    metadata = obj.get("metadata") or {}
    return str(metadata.get("namespace") or ""), str(metadata.get("name") or "")


def _api_reason(exc: ApiException) -> str:
    """Extract the Kubernetes ``Status.reason`` from an error body, if any."""
    body = exc.body
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    if not isinstance(body, str) or not body:
        return ""
    try:
        data = json.loads(body)
    except ValueError:
        return ""
    return str(data.get("reason", "")) if isinstance(data, dict) else ""


def _translate(exc: ApiException, op: str, kind: ResourceKind, namespace: str, name: str) -> StoreError:
    """Map an ApiException onto the store error taxonomy."""
    target = f"{kind.kind} {namespace + '/' if namespace and kind.namespaced else ''}{name}".rstrip()
    message = f"{op} {target}: {exc.status} {exc.reason}"
    if exc.status == 404:
        return NotFoundError(message)
    if exc.status == 409:
        reason = _api_reason(exc)
        if reason == "AlreadyExists" or (op == "create" and reason != "Conflict"):
            return AlreadyExistsError(message)
        return ConflictError(message)
    _log.debug("store_request_failed", op=op, kind=kind.kind, status=exc.status, reason=exc.reason)
    return StoreError(message, status=exc.status)
