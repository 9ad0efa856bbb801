"""Address allocation: candidate resolution, atomic reservation, segment selection."""

from vipalloc.allocator.errors import (
    AllocationError,
    InvalidSegmentError,
    PoolExhaustedError,
    SegmentNotFoundError,
)
from vipalloc.allocator.pool import candidate_addresses, parse_segment
from vipalloc.allocator.reservation import reserve_address
from vipalloc.allocator.selector import Allocation, AllocationSelector

__all__ = [
    "Allocation",
    "AllocationError",
    "AllocationSelector",
    "InvalidSegmentError",
    "PoolExhaustedError",
    "SegmentNotFoundError",
    "candidate_addresses",
    "parse_segment",
    "reserve_address",
]
