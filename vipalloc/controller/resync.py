"""Periodic resync.

Every period, lists all VirtualIPs and enqueues them. This is what retries a
VirtualIP whose last reconciliation failed without producing a new event.
"""

from __future__ import annotations

import asyncio
import contextlib

from vipalloc.controller.watcher import KeyQueue
from vipalloc.models.resources import ObjectKey
from vipalloc.observability.logging import get_logger
from vipalloc.observability.metrics import resync_total
from vipalloc.store.base import Store, StoreError
from vipalloc.store.kinds import VIRTUAL_IP

_log = get_logger("resync")


class Resyncer:
    """Background task enqueueing every VirtualIP once per ``period_s``."""

    def __init__(self, store: Store, queue: KeyQueue, period_s: float, namespace: str = "") -> None:
        self._store = store
        self._queue = queue
        self._period_s = period_s
        self._namespace = namespace
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._loop(), name="resync")
        _log.info("resync_started", period_s=self._period_s)

    async def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None

    async def resync_once(self) -> int:
        """Enqueue every VirtualIP now and return how many were enqueued."""
        objects = await self._store.list(VIRTUAL_IP, namespace=self._namespace)
        count = 0
        for obj in objects:
            key = ObjectKey.from_object(obj)
            if key.name:
                self._queue.add(key)
                count += 1
        return count

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._period_s)
            try:
                count = await self.resync_once()
            except StoreError as exc:
                resync_total.labels(success="false").inc()
                _log.warning("resync_failed", error=str(exc))
                continue
            resync_total.labels(success="true").inc()
            _log.debug("resync_complete", enqueued=count)
