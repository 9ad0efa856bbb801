"""vipalloc - virtual IP allocator for keepalived-exposed services."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("vipalloc")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"
