"""Deduplicating async work queue that dispatches reconciliations.

Semantics follow the usual controller work queue:

- A key waiting in the queue is held only once, however often it is added.
- A key is never handled by two workers at the same time. Adding a key while
  it is being handled marks it dirty; it is queued again once the handler
  returns.
- Failures (handler exceptions, or failed results when ``requeue_failed`` is
  set) re-queue the key after a per-key exponential backoff. Success forgets
  the key's failure history.

The reconciler knows nothing about this module; any other dispatcher that
calls ``handler(key)`` works just as well.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from vipalloc.models.resources import ObjectKey
from vipalloc.observability.metrics import queue_backoff_seconds, queue_depth, queue_retries_total

_logger = structlog.get_logger(component="work_queue")

_BACKOFF_BASE_S: float = 1.0
_BACKOFF_MAX_S: float = 60.0
_BACKOFF_MULTIPLIER: float = 2.0

Handler = Callable[[ObjectKey], Awaitable[Any]]


class WorkQueue:
    """Keyed work queue with ``workers`` concurrent handler tasks."""

    def __init__(
        self,
        handler: Handler,
        workers: int = 2,
        requeue_failed: bool = True,
        backoff_base_s: float = _BACKOFF_BASE_S,
        backoff_max_s: float = _BACKOFF_MAX_S,
    ) -> None:
        self._handler = handler
        self._num_workers = max(1, workers)
        self._requeue_failed = requeue_failed
        self._backoff_base_s = backoff_base_s
        self._backoff_max_s = backoff_max_s

        # Initialized in start(): not usable before start() is called
        self._queue: asyncio.Queue[ObjectKey | None]
        self._workers: list[asyncio.Task[None]] = []
        self._dirty: set[ObjectKey] = set()
        self._processing: set[ObjectKey] = set()
        self._failures: dict[ObjectKey, int] = {}
        self._timers: dict[ObjectKey, asyncio.TimerHandle] = {}
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def __len__(self) -> int:
        return self._queue.qsize() if self._running else 0

    async def start(self) -> None:
        """Start worker tasks. Must be called before add()."""
        if self._running:
            return
        self._queue = asyncio.Queue()
        self._running = True
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"work_queue_worker_{i}") for i in range(self._num_workers)
        ]
        _logger.info("work_queue_started", workers=self._num_workers)

    async def stop(self) -> None:
        """Stop all workers after their current item. Safe to call before start()."""
        if not self._running:
            return
        self._running = False
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        for _ in self._workers:
            self._queue.put_nowait(None)
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        _logger.info("work_queue_stopped")

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------

    def add(self, key: ObjectKey) -> None:
        """Queue ``key`` unless it is already waiting."""
        if not self._running:
            return
        if key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.put_nowait(key)
        queue_depth.set(self._queue.qsize())

    def add_after(self, key: ObjectKey, delay_s: float) -> None:
        """Queue ``key`` once ``delay_s`` has passed. A pending delay is replaced."""
        if not self._running:
            return
        if delay_s <= 0:
            self.add(key)
            return
        existing = self._timers.pop(key, None)
        if existing is not None:
            existing.cancel()
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(delay_s, self._fire_timer, key)

    def add_rate_limited(self, key: ObjectKey) -> float:
        """Queue ``key`` after its next backoff delay and return that delay."""
        failures = self._failures.get(key, 0) + 1
        self._failures[key] = failures
        delay = min(self._backoff_base_s * (_BACKOFF_MULTIPLIER ** (failures - 1)), self._backoff_max_s)
        queue_retries_total.inc()
        queue_backoff_seconds.observe(delay)
        self.add_after(key, delay)
        return delay

    def forget(self, key: ObjectKey) -> None:
        """Reset the backoff history of ``key``."""
        self._failures.pop(key, None)

    def failures(self, key: ObjectKey) -> int:
        return self._failures.get(key, 0)

    def _fire_timer(self, key: ObjectKey) -> None:
        self._timers.pop(key, None)
        self.add(key)

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def _worker(self, worker_id: int) -> None:
        """Worker coroutine: pull keys from the queue and handle them."""
        _logger.debug("worker_started", worker_id=worker_id)
        while self._running:
            try:
                key = await self._queue.get()
            except asyncio.CancelledError:
                break

            # Sentinel item signals shutdown
            if key is None:
                self._queue.task_done()
                break

            queue_depth.set(self._queue.qsize())
            self._dirty.discard(key)
            self._processing.add(key)
            try:
                await self._handle(key, worker_id)
            finally:
                self._processing.discard(key)
                self._queue.task_done()
                if key in self._dirty and self._running:
                    self._queue.put_nowait(key)
                    queue_depth.set(self._queue.qsize())

        _logger.debug("worker_stopped", worker_id=worker_id)

    async def _handle(self, key: ObjectKey, worker_id: int) -> None:
        try:
            result = await self._handler(key)
        except Exception as exc:
            delay = self.add_rate_limited(key)
            _logger.error(
                "worker_handler_error",
                worker_id=worker_id,
                key=str(key),
                error=str(exc),
                retry_in_s=delay,
            )
            return

        if self._requeue_failed and getattr(result, "failed", False):
            delay = self.add_rate_limited(key)
            _logger.debug("worker_requeue_failed", worker_id=worker_id, key=str(key), retry_in_s=delay)
            return

        self.forget(key)
