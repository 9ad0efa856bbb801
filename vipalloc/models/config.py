"""Configuration data structures.

Populated from environment variables by :func:`vipalloc.config.load_config`.
Every field has a default so tests and tools can build a config directly.
"""

from __future__ import annotations

from dataclasses import dataclass, field

DEFAULT_KEEPALIVED_GROUP_NAMESPACE = "keepalived-operator"


@dataclass
class LogConfig:
    level: str = "info"
    format: str = "json"


@dataclass
class ExposureConfig:
    """Settings injected into the Exposure Manager."""

    keepalived_group_namespace: str = DEFAULT_KEEPALIVED_GROUP_NAMESPACE


@dataclass
class AllocatorConfig:
    """Address allocation policy.

    Attributes:
        skip_network_and_broadcast: Leave the network and broadcast addresses
            of a segment out of the candidate list (never applied to /31, /32).
        sort_segments_by_name: Walk segment mappings in name order instead of
            the store's listing order when no segment is requested.
    """

    skip_network_and_broadcast: bool = False
    sort_segments_by_name: bool = False


@dataclass
class ControllerConfig:
    watch_namespace: str = ""
    workers: int = 2
    resync_period_seconds: int = 600
    request_timeout_seconds: int = 10
    requeue_failed: bool = True


@dataclass
class ApiConfig:
    port: int = 8081


@dataclass
class VipAllocConfig:
    log: LogConfig = field(default_factory=LogConfig)
    exposure: ExposureConfig = field(default_factory=ExposureConfig)
    allocator: AllocatorConfig = field(default_factory=AllocatorConfig)
    controller: ControllerConfig = field(default_factory=ControllerConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
