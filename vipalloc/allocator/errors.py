"""Allocation error taxonomy."""

from __future__ import annotations


class AllocationError(Exception):
    """Base class for failures to obtain an address."""


class PoolExhaustedError(AllocationError):
    """Every candidate address is already claimed or excluded."""

    def __init__(self, message: str = "there are no available IPs", segment_mapping: str = "") -> None:
        super().__init__(message)
        self.segment_mapping = segment_mapping


class SegmentNotFoundError(AllocationError):
    """No segment mapping serves the requested segment."""


class InvalidSegmentError(AllocationError, ValueError):
    """A segment is not a well-formed IPv4 CIDR."""
