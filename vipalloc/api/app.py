"""FastAPI application exposing liveness, readiness and Prometheus metrics.

Routes:
    GET /healthz  200 while the process is up
    GET /readyz   200 when queue and watcher run, 503 otherwise
    GET /metrics  Prometheus text exposition
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import FastAPI, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from vipalloc import __version__
from vipalloc.api.schemas import HealthStatus, ReadinessStatus

_log = structlog.get_logger(component="api")


def create_app(queue: Any = None, watcher: Any = None) -> FastAPI:
    """Build the app. ``queue`` and ``watcher`` only need a ``running`` attribute."""
    app = FastAPI(title="vipalloc", version=__version__, docs_url=None, redoc_url=None)

    @app.get("/healthz", response_model=HealthStatus)
    async def healthz() -> HealthStatus:
        return HealthStatus(status="ok", version=__version__)

    @app.get("/readyz", response_model=ReadinessStatus)
    async def readyz() -> Any:
        queue_running = bool(getattr(queue, "running", False))
        watcher_running = bool(getattr(watcher, "running", False))
        body = ReadinessStatus(
            ready=queue_running and watcher_running,
            queue_running=queue_running,
            watcher_running=watcher_running,
            queue_depth=len(queue) if queue is not None and queue_running else 0,
        )
        if not body.ready:
            _log.debug("readiness_check_failed", queue_running=queue_running, watcher_running=watcher_running)
            return JSONResponse(status_code=503, content=body.model_dump())
        return body

    @app.get("/metrics")
    async def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app
