"""Descriptors for the object kinds the controller touches."""

from __future__ import annotations

from dataclasses import dataclass

PAAS_GROUP = "paas.org"
PAAS_VERSION = "v1"


@dataclass(frozen=True)
class ResourceKind:
    """API coordinates of one object kind.

    ``group`` is empty for core kinds.
    """

    kind: str
    group: str
    version: str
    plural: str
    namespaced: bool

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version

    @property
    def core(self) -> bool:
        return not self.group


VIRTUAL_IP = ResourceKind("VirtualIP", PAAS_GROUP, PAAS_VERSION, "virtualips", namespaced=True)
SEGMENT_MAPPING = ResourceKind("GroupSegmentMapping", PAAS_GROUP, PAAS_VERSION, "groupsegmentmappings", namespaced=False)
ADDRESS_CLAIM = ResourceKind("IP", PAAS_GROUP, PAAS_VERSION, "ips", namespaced=False)
SERVICE = ResourceKind("Service", "", "v1", "services", namespaced=True)
