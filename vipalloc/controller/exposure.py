"""Binding a claimed address to a Service.

In place mode patches the target Service itself. Clone mode leaves the target
untouched and binds the address to an owned copy, so deleting the VirtualIP
removes the copy through owner-reference cascade.
"""

from __future__ import annotations

import copy
from typing import Any

from vipalloc.models.config import DEFAULT_KEEPALIVED_GROUP_NAMESPACE
from vipalloc.models.resources import VirtualIP
from vipalloc.store.base import OperationResult, Store, create_or_update
from vipalloc.store.kinds import SERVICE, VIRTUAL_IP

KEEPALIVED_GROUP_ANNOTATION = "keepalived-operator.redhat-cop.io/keepalivedgroup"
CLONE_SUFFIX = "-keepalived-clone"

# Metadata the API server assigns; a clone must not carry them.
_SERVER_METADATA = ("uid", "resourceVersion", "creationTimestamp", "managedFields", "selfLink", "generation")


class ExposureError(Exception):
    """A service could not be bound or unbound."""


class OwnerReferenceError(ExposureError):
    """The VirtualIP cannot be set as owner of a clone."""


class ExposureManager:
    """Reads, clones and patches Services on behalf of VirtualIPs."""

    def __init__(self, store: Store, keepalived_group_namespace: str = DEFAULT_KEEPALIVED_GROUP_NAMESPACE) -> None:
        self._store = store
        self._group_namespace = keepalived_group_namespace

    @property
    def keepalived_group_namespace(self) -> str:
        return self._group_namespace

    async def get_service(self, vip: VirtualIP) -> dict[str, Any]:
        """Fetch the Service recorded in ``vip.status.service``.

        NotFoundError propagates; a missing Service is never created.
        """
        return await self._store.get(SERVICE, vip.namespace, vip.status.service)

    def clone_service(self, vip: VirtualIP, service: dict[str, Any]) -> dict[str, Any]:
        """Return a detached copy of ``service`` owned solely by ``vip``."""
        clone = copy.deepcopy(service)
        clone.pop("status", None)

        metadata = clone.setdefault("metadata", {})
        for key in _SERVER_METADATA:
            metadata.pop(key, None)
        metadata["name"] = f"{metadata.get('name', '')}{CLONE_SUFFIX}"

        spec = clone.setdefault("spec", {})
        spec.pop("clusterIP", None)
        spec.pop("clusterIPs", None)
        for port in spec.get("ports") or []:
            port.pop("nodePort", None)

        metadata["ownerReferences"] = [owner_reference(vip)]
        return clone

    def patch_service(self, service: dict[str, Any], address: str, keepalived_group: str, remove: bool) -> None:
        """Bind (or with ``remove`` unbind) ``address`` on ``service`` in place.

        Idempotent: running it on an already patched object changes nothing.
        """
        metadata = service.setdefault("metadata", {})
        annotations = metadata.get("annotations") or {}
        spec = service.setdefault("spec", {})

        if remove:
            annotations.pop(KEEPALIVED_GROUP_ANNOTATION, None)
            spec["externalIPs"] = []
        else:
            annotations[KEEPALIVED_GROUP_ANNOTATION] = f"{self._group_namespace}/{keepalived_group}"
            spec["externalIPs"] = [address]

        metadata["annotations"] = annotations

    async def bind(self, vip: VirtualIP, service: dict[str, Any], remove: bool = False) -> OperationResult:
        """Create-or-update ``service`` with the VirtualIP's address patch applied."""
        ip = vip.status.ip
        group = vip.status.keepalived_group
        result, _ = await create_or_update(
            self._store,
            SERVICE,
            service,
            lambda obj: self.patch_service(obj, ip, group, remove),
        )
        return result


def owner_reference(vip: VirtualIP) -> dict[str, Any]:
    """Build the ownerReference entry pointing at ``vip``."""
    if not vip.uid or not vip.name:
        raise OwnerReferenceError(f"VirtualIP {vip.key} has no uid to reference")
    return {
        "apiVersion": VIRTUAL_IP.api_version,
        "kind": VIRTUAL_IP.kind,
        "name": vip.name,
        "uid": vip.uid,
    }
