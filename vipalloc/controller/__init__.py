"""VirtualIP controller: lifecycle state machine, exposure and dispatch."""

from vipalloc.controller.exposure import ExposureError, ExposureManager, OwnerReferenceError
from vipalloc.controller.reconciler import (
    Action,
    ReconcileResult,
    StatusUpdateError,
    TransitionError,
    VirtualIPReconciler,
)

__all__ = [
    "Action",
    "ExposureError",
    "ExposureManager",
    "OwnerReferenceError",
    "ReconcileResult",
    "StatusUpdateError",
    "TransitionError",
    "VirtualIPReconciler",
]
