"""Prometheus metrics for vipalloc."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# Reconciliation metrics
reconcile_total = Counter(
    "vipalloc_reconcile_total",
    "Total reconciliations by the transition they performed",
    ["action"],
)

reconcile_errors_total = Counter(
    "vipalloc_reconcile_errors_total",
    "Total reconciliations that ended in a transition failure",
)

reconcile_duration_seconds = Histogram(
    "vipalloc_reconcile_duration_seconds",
    "Duration of a single reconciliation in seconds",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

status_updates_total = Counter(
    "vipalloc_status_updates_total",
    "Total VirtualIP status writes",
    ["state"],
)

# Allocation metrics
allocations_total = Counter(
    "vipalloc_allocations_total",
    "Total addresses claimed",
    ["segment_mapping"],
)

allocation_conflicts_total = Counter(
    "vipalloc_allocation_conflicts_total",
    "Total claim attempts lost to an existing AddressClaim",
    ["segment_mapping"],
)

pool_exhausted_total = Counter(
    "vipalloc_pool_exhausted_total",
    "Total allocation attempts that found no free address in a segment mapping",
    ["segment_mapping"],
)

releases_total = Counter(
    "vipalloc_releases_total",
    "Total AddressClaims released on VirtualIP deletion",
)

# Work queue metrics
queue_depth = Gauge(
    "vipalloc_queue_depth",
    "Current number of keys waiting in the work queue",
)

queue_retries_total = Counter(
    "vipalloc_queue_retries_total",
    "Total keys re-queued with backoff",
)

queue_backoff_seconds = Histogram(
    "vipalloc_queue_backoff_seconds",
    "Backoff delay applied to re-queued keys in seconds",
    buckets=(1.0, 2.0, 4.0, 8.0, 16.0, 32.0, 60.0),
)

# Watcher metrics
watcher_events_total = Counter(
    "vipalloc_watcher_events_total",
    "Total watch events received by type",
    ["watcher", "event_type"],
)

watcher_reconnects_total = Counter(
    "vipalloc_watcher_reconnects_total",
    "Total watcher reconnection attempts",
    ["watcher", "reason"],
)

watcher_relistings_total = Counter(
    "vipalloc_watcher_relistings_total",
    "Total watcher relist operations",
    ["watcher"],
)

watcher_errors_total = Counter(
    "vipalloc_watcher_errors_total",
    "Total watcher errors",
    ["watcher", "status_code"],
)

watcher_backoff_seconds = Histogram(
    "vipalloc_watcher_backoff_seconds",
    "Watcher backoff duration in seconds",
    ["watcher"],
    buckets=(0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0),
)

# Resync metrics
resync_total = Counter(
    "vipalloc_resync_total",
    "Total periodic resync passes",
    ["success"],
)
