"""Typed views over the objects the controller reads and writes.

Objects travel to and from the store as plain Kubernetes JSON dicts. The
dataclasses here parse the fields the controller cares about and write them
back onto a copy of the source dict, so fields owned by other parties
(labels, foreign finalizers, unknown status keys) survive a round trip.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any

ADDRESS_FINALIZER = "ip.finalizers.virtualips.paas.org"
SERVICE_FINALIZER = "service.finalizers.virtualips.paas.org"

SEGMENT_MAPPING_LABEL = "gsm"
OWNER_ANNOTATION = "virtualips.paas.il/owner"


class VirtualIPState(StrEnum):
    """Lifecycle state reported in ``status.state``.

    An object with no state at all has not been reconciled yet.
    """

    ERROR = "Error"
    CREATING_IP = "CreatingIP"
    EXPOSING = "Exposing"
    VALID = "Valid"


@dataclass(frozen=True)
class ObjectKey:
    """Namespace/name pair identifying a namespaced object."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> ObjectKey:
        metadata = obj.get("metadata") or {}
        return cls(namespace=str(metadata.get("namespace") or ""), name=str(metadata.get("name") or ""))


@dataclass(frozen=True)
class FinalizerState:
    """Two-phase teardown state of a VirtualIP.

    ``address_held`` guards the AddressClaim record, ``service_held`` guards
    the service binding. Each is set only after its side effect exists and
    cleared only after the side effect has been undone.
    """

    address_held: bool = False
    service_held: bool = False

    @classmethod
    def from_finalizers(cls, finalizers: list[str]) -> FinalizerState:
        return cls(
            address_held=ADDRESS_FINALIZER in finalizers,
            service_held=SERVICE_FINALIZER in finalizers,
        )

    def with_address(self, held: bool) -> FinalizerState:
        return replace(self, address_held=held)

    def with_service(self, held: bool) -> FinalizerState:
        return replace(self, service_held=held)

    @property
    def released(self) -> bool:
        """True once neither side effect is guarded any more."""
        return not (self.address_held or self.service_held)

    def apply(self, finalizers: list[str]) -> list[str]:
        """Return ``finalizers`` rewritten to match this state.

        Finalizers that belong to other controllers keep their position.
        """
        result = [f for f in finalizers if f not in (ADDRESS_FINALIZER, SERVICE_FINALIZER)]
        if self.address_held:
            result.append(ADDRESS_FINALIZER)
        if self.service_held:
            result.append(SERVICE_FINALIZER)
        return result


@dataclass
class VirtualIPSpec:
    segment: str = ""
    service: str = ""
    clone: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> VirtualIPSpec:
        data = data or {}
        return cls(
            segment=str(data.get("segment") or ""),
            service=str(data.get("service") or ""),
            clone=bool(data.get("clone", False)),
        )


@dataclass
class VirtualIPStatus:
    """Committed allocation and exposure state.

    ``clone`` stays ``None`` until the Exposing transition records it, so a
    later change of ``spec.clone`` does not flip an existing binding.
    """

    ip: str = ""
    keepalived_group: str = ""
    gsm: str = ""
    service: str = ""
    clone: bool | None = None
    state: VirtualIPState | None = None
    message: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> VirtualIPStatus:
        data = data or {}
        raw_state = data.get("state")
        state: VirtualIPState | None = None
        if raw_state:
            try:
                state = VirtualIPState(raw_state)
            except ValueError:
                state = None
        raw_clone = data.get("clone")
        return cls(
            ip=str(data.get("ip") or ""),
            keepalived_group=str(data.get("keepalivedGroup") or ""),
            gsm=str(data.get("gsm") or ""),
            service=str(data.get("service") or ""),
            clone=None if raw_clone is None else bool(raw_clone),
            state=state,
            message=str(data.get("message") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.ip:
            out["ip"] = self.ip
        if self.keepalived_group:
            out["keepalivedGroup"] = self.keepalived_group
        if self.gsm:
            out["gsm"] = self.gsm
        if self.service:
            out["service"] = self.service
        if self.clone is not None:
            out["clone"] = self.clone
        if self.state is not None:
            out["state"] = self.state.value
        if self.message:
            out["message"] = self.message
        return out


@dataclass
class VirtualIP:
    """A VirtualIP object as loaded at the start of one reconciliation.

    ``observed_status`` is the status exactly as read, used to detect
    no-op status writes.
    """

    namespace: str
    name: str
    uid: str
    resource_version: str
    deletion_timestamp: str | None
    finalizers: FinalizerState
    spec: VirtualIPSpec
    status: VirtualIPStatus
    observed_status: VirtualIPStatus
    raw: dict[str, Any] = field(repr=False)

    @classmethod
    def from_dict(cls, obj: dict[str, Any]) -> VirtualIP:
        metadata = obj.get("metadata") or {}
        return cls(
            namespace=str(metadata.get("namespace") or ""),
            name=str(metadata.get("name") or ""),
            uid=str(metadata.get("uid") or ""),
            resource_version=str(metadata.get("resourceVersion") or ""),
            deletion_timestamp=metadata.get("deletionTimestamp") or None,
            finalizers=FinalizerState.from_finalizers(list(metadata.get("finalizers") or [])),
            spec=VirtualIPSpec.from_dict(obj.get("spec")),
            status=VirtualIPStatus.from_dict(obj.get("status")),
            observed_status=VirtualIPStatus.from_dict(obj.get("status")),
            raw=copy.deepcopy(obj),
        )

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(self.namespace, self.name)

    @property
    def deleting(self) -> bool:
        return self.deletion_timestamp is not None

    @property
    def status_changed(self) -> bool:
        return self.status != self.observed_status

    def to_dict(self) -> dict[str, Any]:
        """Render back to a store object carrying current finalizers and status."""
        obj = copy.deepcopy(self.raw)
        metadata = obj.setdefault("metadata", {})
        metadata["resourceVersion"] = self.resource_version
        finalizers = self.finalizers.apply(list(metadata.get("finalizers") or []))
        if finalizers:
            metadata["finalizers"] = finalizers
        else:
            metadata.pop("finalizers", None)
        obj["status"] = {**(obj.get("status") or {}), **self.status.to_dict()}
        return obj

    def refresh(self, obj: dict[str, Any]) -> None:
        """Adopt metadata and status returned by a successful store write."""
        metadata = obj.get("metadata") or {}
        self.resource_version = str(metadata.get("resourceVersion") or self.resource_version)
        self.raw = copy.deepcopy(obj)
        self.finalizers = FinalizerState.from_finalizers(list(metadata.get("finalizers") or []))


@dataclass(frozen=True)
class SegmentMapping:
    """A CIDR pool administered by the segment-mapping controller (read only here)."""

    name: str
    segment: str
    excluded_ips: tuple[str, ...] = ()
    keepalived_group: str = ""

    @classmethod
    def from_dict(cls, obj: dict[str, Any]) -> SegmentMapping:
        metadata = obj.get("metadata") or {}
        spec = obj.get("spec") or {}
        return cls(
            name=str(metadata.get("name") or ""),
            segment=str(spec.get("segment") or ""),
            excluded_ips=tuple(str(ip) for ip in spec.get("excludedIPs") or []),
            keepalived_group=str(spec.get("keepalivedGroup") or ""),
        )


@dataclass(frozen=True)
class AddressClaim:
    """Allocation record whose object name is the claimed address itself."""

    address: str
    segment_mapping: str
    owner: ObjectKey

    def labels(self) -> dict[str, str]:
        return {SEGMENT_MAPPING_LABEL: self.segment_mapping}

    def annotations(self) -> dict[str, str]:
        return {OWNER_ANNOTATION: str(self.owner)}

    def apply_to(self, obj: dict[str, Any]) -> None:
        """Overwrite labels and annotations on an existing claim object."""
        metadata = obj.setdefault("metadata", {})
        metadata["labels"] = self.labels()
        metadata["annotations"] = self.annotations()

    def to_dict(self) -> dict[str, Any]:
        obj: dict[str, Any] = {"metadata": {"name": self.address}}
        self.apply_to(obj)
        return obj
