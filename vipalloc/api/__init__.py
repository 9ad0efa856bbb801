"""Health, readiness and metrics HTTP surface."""

from vipalloc.api.app import create_app

__all__ = ["create_app"]
