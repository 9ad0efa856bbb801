"""Object store access for the controller."""

from vipalloc.store.base import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    OperationResult,
    Store,
    StoreError,
    create_or_update,
)
from vipalloc.store.kinds import ADDRESS_CLAIM, SEGMENT_MAPPING, SERVICE, VIRTUAL_IP, ResourceKind

__all__ = [
    "ADDRESS_CLAIM",
    "SEGMENT_MAPPING",
    "SERVICE",
    "VIRTUAL_IP",
    "AlreadyExistsError",
    "ConflictError",
    "NotFoundError",
    "OperationResult",
    "ResourceKind",
    "Store",
    "StoreError",
    "create_or_update",
]
