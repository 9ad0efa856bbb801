"""VirtualIP watch stream feeding the work queue.

Wraps kubernetes_asyncio's Watch to provide:
- Resumable watches via resourceVersion
- Exponential back-off (1 s to 60 s) on errors and between stream reconnects
- Relist on 410 Gone or after 3 consecutive errors; a relist enqueues
  every listed VirtualIP so nothing missed during the gap is lost
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable, Coroutine
from datetime import UTC, datetime
from typing import Any, Protocol

from kubernetes_asyncio import watch
from kubernetes_asyncio.client.exceptions import ApiException

from vipalloc.models.resources import ObjectKey
from vipalloc.observability.logging import get_logger
from vipalloc.observability.metrics import (
    watcher_backoff_seconds,
    watcher_errors_total,
    watcher_events_total,
    watcher_reconnects_total,
    watcher_relistings_total,
)
from vipalloc.store.kinds import VIRTUAL_IP

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_BACKOFF_MIN_S: float = 1.0
_BACKOFF_MAX_S: float = 60.0
_BACKOFF_MULTIPLIER: float = 2.0

_MAX_CONSECUTIVE_FAILURES: int = 3
_RELIST_MIN_INTERVAL_S: float = 60.0
_RELIST_BUDGET_S: float = 10.0

_EVENT_TYPES: frozenset[str] = frozenset({"ADDED", "MODIFIED", "DELETED"})


class KeyQueue(Protocol):
    def add(self, key: ObjectKey) -> None: ...


class VirtualIPWatcher:
    """Watches VirtualIP objects and enqueues their keys on every change.

    Lifecycle::

        watcher = VirtualIPWatcher(custom_objects_api, queue)
        await watcher.start()
        # ... runs until cancelled or stop() is called
        await watcher.stop()
    """

    def __init__(self, api: Any, queue: KeyQueue, namespace: str = "", name: str = "virtualip") -> None:
        """Initialise the watcher.

        Args:
            api: A kubernetes_asyncio ``CustomObjectsApi`` instance.
            queue: Receives an ObjectKey for every VirtualIP event.
            namespace: Restrict the watch to one namespace; empty watches all.
            name: Short identifier used in log/metric labels.
        """
        self._api = api
        self._queue = queue
        self._namespace = namespace
        self._name = name
        self._log = get_logger(f"watcher.{name}")

        self._resource_version: str = ""
        self._running: bool = False
        self._task: asyncio.Task[None] | None = None

        self._consecutive_failures: int = 0
        self._last_relist_at: datetime | None = None
        self._backoff_s: float = _BACKOFF_MIN_S

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the watch loop as a background asyncio task."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._watch_loop(), name=f"watcher-{self._name}")
        self._log.info("watcher_started", watcher=self._name, namespace=self._namespace or "*")

    async def stop(self) -> None:
        """Signal the watch loop to stop and wait for it to exit cleanly."""
        self._running = False
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._log.info("watcher_stopped", watcher=self._name)

    def list_call(self) -> tuple[Callable[..., Coroutine[Any, Any, Any]], tuple[Any, ...]]:
        """Return the list function and its positional arguments."""
        if self._namespace:
            return self._api.list_namespaced_custom_object, (
                VIRTUAL_IP.group,
                VIRTUAL_IP.version,
                self._namespace,
                VIRTUAL_IP.plural,
            )
        return self._api.list_cluster_custom_object, (VIRTUAL_IP.group, VIRTUAL_IP.version, VIRTUAL_IP.plural)

    # ------------------------------------------------------------------
    # Internal watch loop
    # ------------------------------------------------------------------

    async def _watch_loop(self) -> None:
        """Main watch loop; runs until :attr:`_running` is False."""
        while self._running:
            try:
                await self._run_watch()
            except asyncio.CancelledError:
                return
            except Exception as exc:
                if not self._running:
                    return
                await self._handle_loop_exception(exc)

    async def _run_watch(self) -> None:
        """Open one watch stream and iterate until it terminates or raises."""
        func, args = self.list_call()
        kwargs: dict[str, Any] = {"allow_watch_bookmarks": True}
        if self._resource_version:
            kwargs["resource_version"] = self._resource_version

        w = watch.Watch()
        try:
            async for raw_event in w.stream(func, *args, **kwargs):
                if not self._running:
                    return
                event_type: str = raw_event.get("type", "")
                raw = raw_event.get("raw_object") or raw_event.get("object") or {}
                if not isinstance(raw, dict):
                    raw = {}

                if event_type == "ERROR":
                    code = raw.get("code")
                    raise ApiException(status=int(code) if isinstance(code, int) else 500, reason=raw.get("reason"))

                rv = _extract_rv(raw)
                if rv:
                    self._resource_version = rv
                if event_type not in _EVENT_TYPES:
                    continue

                watcher_events_total.labels(watcher=self._name, event_type=event_type).inc()
                self._handle_event(event_type, raw)
                self._reset_backoff()

            # Stream ended without error: server-side timeout, not a failure
            self._consecutive_failures = 0
            self._log.debug("watch_stream_ended", watcher=self._name, resource_version=self._resource_version)
            await self._backoff("stream_end")

        except ApiException as exc:
            await self._handle_api_exception(exc)
        finally:
            await w.close()

    def _handle_event(self, event_type: str, raw: dict[str, Any]) -> None:
        key = ObjectKey.from_object(raw)
        if not key.name:
            return
        self._log.debug("watch_event", watcher=self._name, event_type=event_type, key=str(key))
        self._queue.add(key)

    async def _handle_api_exception(self, exc: ApiException) -> None:
        """Route an ApiException to the correct recovery path."""
        status = exc.status
        watcher_errors_total.labels(watcher=self._name, status_code=str(status)).inc()

        if status == 410:
            # Gone: resource version too old, must relist
            self._log.warning("watch_gone_410", watcher=self._name)
            watcher_reconnects_total.labels(watcher=self._name, reason="410").inc()
            self._resource_version = ""
            await self._relist(reason="410")
            return

        self._consecutive_failures += 1
        self._log.warning(
            "watch_api_error",
            watcher=self._name,
            status=status,
            reason=exc.reason,
            consecutive_failures=self._consecutive_failures,
        )
        watcher_reconnects_total.labels(watcher=self._name, reason=str(status)).inc()
        if self._consecutive_failures >= _MAX_CONSECUTIVE_FAILURES:
            await self._relist(reason="api_error_limit")
        else:
            await self._backoff(str(status))

    async def _handle_loop_exception(self, exc: Exception) -> None:
        """Handle unexpected exceptions from the watch loop."""
        self._consecutive_failures += 1
        self._log.error(
            "watch_unexpected_error",
            watcher=self._name,
            error=str(exc),
            consecutive_failures=self._consecutive_failures,
            exc_info=True,
        )
        watcher_reconnects_total.labels(watcher=self._name, reason="unexpected").inc()
        if self._consecutive_failures >= _MAX_CONSECUTIVE_FAILURES:
            await self._relist(reason="unexpected_limit")
        else:
            await self._backoff("unexpected")

    # ------------------------------------------------------------------
    # Back-off
    # ------------------------------------------------------------------

    async def _backoff(self, reason: str) -> None:
        """Sleep for the current back-off duration, then increase it."""
        delay = min(self._backoff_s, _BACKOFF_MAX_S)
        self._log.debug("watcher_backoff", watcher=self._name, reason=reason, delay_s=delay)
        watcher_backoff_seconds.labels(watcher=self._name).observe(delay)
        await asyncio.sleep(delay)
        self._backoff_s = min(self._backoff_s * _BACKOFF_MULTIPLIER, _BACKOFF_MAX_S)

    def _reset_backoff(self) -> None:
        self._backoff_s = _BACKOFF_MIN_S
        self._consecutive_failures = 0

    # ------------------------------------------------------------------
    # Relist
    # ------------------------------------------------------------------

    async def _relist(self, reason: str = "unknown") -> None:
        """List all VirtualIPs afresh, enqueue each and resume from the list's version.

        Throttled to once per minute; a throttled relist backs off instead.
        """
        now = datetime.now(tz=UTC)
        if self._last_relist_at is not None:
            elapsed = (now - self._last_relist_at).total_seconds()
            if elapsed < _RELIST_MIN_INTERVAL_S:
                self._log.debug("relist_throttled", watcher=self._name, reason=reason)
                await self._backoff("relist_throttled")
                return

        self._last_relist_at = now
        watcher_relistings_total.labels(watcher=self._name).inc()
        self._log.info("relist_start", watcher=self._name, reason=reason)

        try:
            async with asyncio.timeout(_RELIST_BUDGET_S):
                await self._do_relist()
        except TimeoutError:
            self._log.warning("relist_timeout", watcher=self._name, reason=reason)
            await self._backoff("relist_timeout")
            return
        except ApiException as exc:
            self._log.error("relist_failed", watcher=self._name, reason=reason, status=exc.status)
            await self._backoff("relist_failed")
            return

        self._reset_backoff()

    async def _do_relist(self) -> None:
        self._resource_version = ""
        func, args = self.list_call()
        result = await func(*args)

        items = (result.get("items") or []) if isinstance(result, dict) else []
        for item in items:
            if isinstance(item, dict):
                self._handle_event("RELIST", item)

        rv = _extract_rv(result) if isinstance(result, dict) else ""
        self._resource_version = rv
        self._log.info("relist_complete", watcher=self._name, resource_version=rv, objects=len(items))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _extract_rv(raw: dict[str, Any]) -> str:
    """Extract resourceVersion from a raw object or list dict."""
    metadata = raw.get("metadata")
    if isinstance(metadata, dict):
        rv = metadata.get("resourceVersion", "")
        if rv:
            return str(rv)
    return ""
