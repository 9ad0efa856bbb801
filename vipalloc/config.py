"""Environment variable configuration loader.

All settings are prefixed ``VIPALLOC_`` except ``KEEPALIVED_GROUP_NAMESPACE``,
which keeps the name shared with the keepalived operator deployment.
Numeric values are clamped into range; unknown enumerations raise ValueError.
"""

from __future__ import annotations

import os

from vipalloc.models.config import (
    DEFAULT_KEEPALIVED_GROUP_NAMESPACE,
    AllocatorConfig,
    ApiConfig,
    ControllerConfig,
    ExposureConfig,
    LogConfig,
    VipAllocConfig,
)
from vipalloc.observability.logging import LOG_FORMATS

_PREFIX = "VIPALLOC_"
_TRUTHY: frozenset[str] = frozenset({"1", "true", "yes", "on"})
_LOG_LEVELS: frozenset[str] = frozenset({"debug", "info", "warning", "error"})


def _env(name: str, default: str = "") -> str:
    return os.environ.get(_PREFIX + name, default)


def _bool(name: str, default: bool) -> bool:
    raw = os.environ.get(_PREFIX + name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUTHY


def _int(name: str, default: int, minimum: int, maximum: int) -> int:
    raw = os.environ.get(_PREFIX + name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"Invalid integer for {_PREFIX}{name}: {raw!r}") from exc
    return max(minimum, min(maximum, value))


def load_config() -> VipAllocConfig:
    """Build a VipAllocConfig from the current process environment."""
    level = _env("LOG_LEVEL", "info").strip().lower()
    if level not in _LOG_LEVELS:
        raise ValueError(f"Invalid log level: {level!r} (expected one of {sorted(_LOG_LEVELS)})")

    fmt = _env("LOG_FORMAT", "json").strip().lower()
    if fmt not in LOG_FORMATS:
        raise ValueError(f"Invalid log format: {fmt!r} (expected one of {sorted(LOG_FORMATS)})")

    group_namespace = os.environ.get("KEEPALIVED_GROUP_NAMESPACE", "") or DEFAULT_KEEPALIVED_GROUP_NAMESPACE

    return VipAllocConfig(
        log=LogConfig(level=level, format=fmt),
        exposure=ExposureConfig(keepalived_group_namespace=group_namespace),
        allocator=AllocatorConfig(
            skip_network_and_broadcast=_bool("SKIP_NETWORK_BROADCAST", False),
            sort_segments_by_name=_bool("SORT_SEGMENTS", False),
        ),
        controller=ControllerConfig(
            watch_namespace=_env("WATCH_NAMESPACE", "").strip(),
            workers=_int("WORKERS", 2, 1, 16),
            resync_period_seconds=_int("RESYNC_PERIOD", 600, 30, 86_400),
            request_timeout_seconds=_int("REQUEST_TIMEOUT", 10, 1, 60),
            requeue_failed=_bool("REQUEUE_FAILED", True),
        ),
        api=ApiConfig(port=_int("API_PORT", 8081, 1024, 65535)),
    )
