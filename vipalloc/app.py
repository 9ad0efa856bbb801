"""Application bootstrap for vipalloc.

Wires all components in dependency order and manages the asyncio lifecycle.
Startup order: config → logging → K8s client → store → reconciler → queue
              → watcher → resync → health API

Shutdown is fully graceful: components are stopped in reverse startup order.
Each component's stop error is caught and logged independently so that a
single failure does not prevent the rest from shutting down cleanly.
"""

from __future__ import annotations

import asyncio
import signal
from typing import TYPE_CHECKING, Any

from vipalloc.config import load_config
from vipalloc.models.config import VipAllocConfig
from vipalloc.observability.logging import get_logger, setup_logging

if TYPE_CHECKING:
    from structlog.typing import FilteringBoundLogger

    from vipalloc.controller.queue import WorkQueue
    from vipalloc.controller.reconciler import VirtualIPReconciler
    from vipalloc.controller.resync import Resyncer
    from vipalloc.controller.watcher import VirtualIPWatcher
    from vipalloc.store.kube import KubeStore

_SHUTDOWN_GRACE_SECONDS = 15


class _ComponentError(Exception):
    """Raised when a mandatory component fails to start."""

    def __init__(self, component: str, cause: Exception) -> None:
        super().__init__(f"Component '{component}' failed to start: {cause}")
        self.component = component
        self.cause = cause


class VipAllocApp:
    """Application root. Owns every component and coordinates their lifecycle.

    ``stop()`` is safe on an app that was never started or already stopped.
    """

    def __init__(self, config: VipAllocConfig | None = None) -> None:
        self.config: VipAllocConfig | None = config

        self._api_client: Any = None
        self._store: KubeStore | None = None
        self._reconciler: VirtualIPReconciler | None = None
        self._queue: WorkQueue | None = None
        self._watcher: VirtualIPWatcher | None = None
        self._resyncer: Resyncer | None = None
        self._rest_server: Any = None

        self._background_tasks: list[asyncio.Task[None]] = []

        self._running = False
        self._log: FilteringBoundLogger | None = None

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start all components in dependency order.

        Raises _ComponentError if a mandatory component cannot start.
        """
        if self.config is None:
            self.config = load_config()

        setup_logging(self.config.log.level, self.config.log.format)
        self._log = get_logger("app")
        self._log.info("vipalloc starting", version=_vipalloc_version())

        await self._start_k8s_client()
        self._build_controller()
        await self._start_queue()
        await self._start_watcher()
        await self._start_resync()
        await self._start_rest()

        self._running = True
        self._log.info("vipalloc started", port=self.config.api.port)

    async def _start_k8s_client(self) -> None:
        """Initialise the kubernetes-asyncio client from in-cluster config or kubeconfig."""
        assert self._log is not None
        try:
            import kubernetes_asyncio.config as k8s_config
            from kubernetes_asyncio import client as k8s_client

            try:
                k8s_config.load_incluster_config()  # type: ignore[no-untyped-call]
                self._log.info("k8s client configured from in-cluster service account")
            except k8s_config.ConfigException:
                await k8s_config.load_kube_config()
                self._log.info("k8s client configured from kubeconfig")

            self._api_client = k8s_client.ApiClient()
        except Exception as exc:
            raise _ComponentError("k8s_client", exc) from exc

    def _build_controller(self) -> None:
        """Assemble store, allocator, exposure manager and reconciler."""
        assert self.config is not None
        try:
            from vipalloc.allocator.selector import AllocationSelector
            from vipalloc.controller.exposure import ExposureManager
            from vipalloc.controller.reconciler import VirtualIPReconciler
            from vipalloc.store.kube import KubeStore

            store = KubeStore(self._api_client, request_timeout=self.config.controller.request_timeout_seconds)
            selector = AllocationSelector(
                store,
                include_network_and_broadcast=not self.config.allocator.skip_network_and_broadcast,
                sort_segments_by_name=self.config.allocator.sort_segments_by_name,
            )
            exposure = ExposureManager(store, self.config.exposure.keepalived_group_namespace)
            self._store = store
            self._reconciler = VirtualIPReconciler(store, selector, exposure)
        except Exception as exc:
            raise _ComponentError("controller", exc) from exc

    async def _start_queue(self) -> None:
        assert self._log is not None
        assert self.config is not None
        assert self._reconciler is not None
        try:
            from vipalloc.controller.queue import WorkQueue

            queue = WorkQueue(
                handler=self._reconciler.reconcile,
                workers=self.config.controller.workers,
                requeue_failed=self.config.controller.requeue_failed,
            )
            await queue.start()
            self._queue = queue
        except Exception as exc:
            raise _ComponentError("work_queue", exc) from exc

    async def _start_watcher(self) -> None:
        assert self._log is not None
        assert self.config is not None
        assert self._queue is not None
        try:
            from kubernetes_asyncio import client as k8s_client

            from vipalloc.controller.watcher import VirtualIPWatcher

            watcher = VirtualIPWatcher(
                k8s_client.CustomObjectsApi(self._api_client),
                self._queue,
                namespace=self.config.controller.watch_namespace,
            )
            await watcher.start()
            self._watcher = watcher
        except Exception as exc:
            raise _ComponentError("watcher", exc) from exc

    async def _start_resync(self) -> None:
        assert self.config is not None
        assert self._store is not None
        assert self._queue is not None
        try:
            from vipalloc.controller.resync import Resyncer

            resyncer = Resyncer(
                self._store,
                self._queue,
                period_s=self.config.controller.resync_period_seconds,
                namespace=self.config.controller.watch_namespace,
            )
            await resyncer.start()
            self._resyncer = resyncer
        except Exception as exc:
            raise _ComponentError("resync", exc) from exc

    async def _start_rest(self) -> None:
        """Start the uvicorn server for health probes and metrics."""
        assert self._log is not None
        assert self.config is not None
        try:
            import uvicorn

            from vipalloc.api import create_app

            fastapi_app = create_app(queue=self._queue, watcher=self._watcher)
            uv_config = uvicorn.Config(
                app=fastapi_app,
                host="0.0.0.0",
                port=self.config.api.port,
                log_config=None,  # structlog handles all logging
                access_log=False,
            )
            server = uvicorn.Server(uv_config)
            task = asyncio.create_task(server.serve(), name="rest-server")
            self._background_tasks.append(task)
            self._rest_server = server
            self._log.info("health api started", port=self.config.api.port)
        except Exception as exc:
            raise _ComponentError("rest", exc) from exc

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def stop(self) -> None:
        """Gracefully stop all components in reverse startup order."""
        if not self._running and self._log is None:
            return

        log = self._log or get_logger("app")
        log.info("vipalloc shutting down")
        self._running = False

        if self._rest_server is not None:
            self._rest_server.should_exit = True
        for task in reversed(self._background_tasks):
            if not task.done():
                task.cancel()
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
        self._background_tasks.clear()

        await self._stop_component("resync", self._resyncer)
        await self._stop_component("watcher", self._watcher)
        await self._stop_component("work_queue", self._queue)
        await self._stop_k8s_client()

        log.info("vipalloc stopped")

    async def _stop_component(self, name: str, component: object | None) -> None:
        """Call stop() on a component if it has that method, catching all errors."""
        if component is None:
            return
        log = self._log or get_logger("app")
        stop_fn = getattr(component, "stop", None)
        if stop_fn is None:
            return
        try:
            result = stop_fn()
            if asyncio.iscoroutine(result):
                await asyncio.wait_for(result, timeout=_SHUTDOWN_GRACE_SECONDS)
        except TimeoutError:
            log.warning("component stop timed out", component=name, timeout=_SHUTDOWN_GRACE_SECONDS)
        except Exception as exc:
            log.error("component stop raised an error", component=name, error=str(exc))

    async def _stop_k8s_client(self) -> None:
        if self._api_client is None:
            return
        log = self._log or get_logger("app")
        try:
            await self._api_client.close()
        except Exception as exc:
            log.debug("k8s client close raised (non-fatal)", error=str(exc))
        self._api_client = None


def _vipalloc_version() -> str:
    from vipalloc import __version__

    return __version__


# ---------------------------------------------------------------------------
# Async entrypoint
# ---------------------------------------------------------------------------


async def main(config: VipAllocConfig | None = None) -> None:
    """Create the app, register OS signals, run until shutdown is requested."""
    app = VipAllocApp(config)
    loop = asyncio.get_running_loop()

    shutdown_triggered = False

    def _request_shutdown() -> None:
        nonlocal shutdown_triggered
        if shutdown_triggered:
            return
        shutdown_triggered = True
        asyncio.create_task(app.stop(), name="shutdown")

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _request_shutdown)

    try:
        await app.start()
        while app.running:
            await asyncio.sleep(1)
    except _ComponentError as exc:
        log = get_logger("app")
        log.critical(
            "fatal startup error",
            component=exc.component,
            error=str(exc.cause),
        )
        await app.stop()
        raise SystemExit(1) from exc
    finally:
        if app.running:
            await app.stop()
