"""Address reservation by racing create-if-absent against the store.

An AddressClaim is named after the address it claims, so the store refuses a
second create for the same address. Whoever creates the claim first owns the
address; everyone else sees AlreadyExists and moves on to the next candidate.
No other lock is taken.
"""

from __future__ import annotations

from collections.abc import Iterable

from vipalloc.allocator.errors import AllocationError, PoolExhaustedError
from vipalloc.models.resources import AddressClaim, ObjectKey
from vipalloc.observability.logging import get_logger
from vipalloc.observability.metrics import (
    allocation_conflicts_total,
    allocations_total,
    pool_exhausted_total,
)
from vipalloc.store.base import AlreadyExistsError, Store, StoreError
from vipalloc.store.kinds import ADDRESS_CLAIM

_log = get_logger("allocator.reservation")


async def reserve_address(
    store: Store,
    candidates: Iterable[str],
    owner: ObjectKey,
    segment_mapping: str,
) -> str:
    """Claim the first candidate nobody else holds.

    Raises PoolExhaustedError when every candidate is taken, and
    AllocationError when the store fails for any reason other than an
    existing claim.
    """
    conflicts = 0
    for address in candidates:
        claim = AddressClaim(address=address, segment_mapping=segment_mapping, owner=owner)
        try:
            await store.create(ADDRESS_CLAIM, claim.to_dict())
        except AlreadyExistsError:
            conflicts += 1
            allocation_conflicts_total.labels(segment_mapping=segment_mapping).inc()
            _log.debug("address_conflict", address=address, segment_mapping=segment_mapping, owner=str(owner))
            continue
        except StoreError as exc:
            raise AllocationError(f"an error occurred while allocating IP: {exc}") from exc

        allocations_total.labels(segment_mapping=segment_mapping).inc()
        _log.info(
            "address_reserved",
            address=address,
            segment_mapping=segment_mapping,
            owner=str(owner),
            conflicts=conflicts,
        )
        return address

    pool_exhausted_total.labels(segment_mapping=segment_mapping).inc()
    raise PoolExhaustedError(segment_mapping=segment_mapping)
