"""Pydantic response models for the health endpoints."""

from __future__ import annotations

from pydantic import BaseModel, Field


class HealthStatus(BaseModel):
    status: str = Field(description="'ok' when the process is serving requests")
    version: str


class ReadinessStatus(BaseModel):
    ready: bool
    queue_running: bool = Field(description="Work queue workers are accepting keys")
    watcher_running: bool = Field(description="VirtualIP watch stream is active")
    queue_depth: int = Field(ge=0)
