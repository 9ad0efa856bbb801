"""Segment selection for a VirtualIP allocation.

A VirtualIP either pins a segment (by CIDR, matched against the mappings'
``spec.segment``) or leaves it empty, in which case every mapping is tried in
turn until one yields an address.
"""

from __future__ import annotations

from dataclasses import dataclass

from vipalloc.allocator.errors import PoolExhaustedError, SegmentNotFoundError
from vipalloc.allocator.pool import candidate_addresses
from vipalloc.allocator.reservation import reserve_address
from vipalloc.models.resources import SEGMENT_MAPPING_LABEL, SegmentMapping, VirtualIP
from vipalloc.observability.logging import get_logger
from vipalloc.store.base import Store
from vipalloc.store.kinds import ADDRESS_CLAIM, SEGMENT_MAPPING

_log = get_logger("allocator.selector")


@dataclass(frozen=True)
class Allocation:
    """A claimed address and the mapping it came from."""

    address: str
    keepalived_group: str
    segment_mapping: str


class AllocationSelector:
    """Picks segment mappings and reserves an address from them."""

    def __init__(
        self,
        store: Store,
        include_network_and_broadcast: bool = True,
        sort_segments_by_name: bool = False,
    ) -> None:
        self._store = store
        self._include_network_and_broadcast = include_network_and_broadcast
        self._sort_segments_by_name = sort_segments_by_name

    async def allocate(self, vip: VirtualIP) -> Allocation:
        """Reserve one address for ``vip``.

        Raises SegmentNotFoundError, PoolExhaustedError, InvalidSegmentError
        or AllocationError; store failures while listing propagate as
        StoreError.
        """
        if vip.spec.segment:
            mapping = await self._find_by_segment(vip.spec.segment)
            address = await self.allocate_from(mapping, vip)
            return Allocation(address, mapping.keepalived_group, mapping.name)

        for mapping in await self.segment_mappings():
            try:
                address = await self.allocate_from(mapping, vip)
            except PoolExhaustedError:
                _log.debug("segment_mapping_exhausted", segment_mapping=mapping.name, virtualip=str(vip.key))
                continue
            return Allocation(address, mapping.keepalived_group, mapping.name)

        raise PoolExhaustedError("no IP could be allocated")

    async def allocate_from(self, mapping: SegmentMapping, vip: VirtualIP) -> str:
        """Resolve the free addresses of one mapping and reserve one of them."""
        claims = await self._store.list(ADDRESS_CLAIM, labels={SEGMENT_MAPPING_LABEL: mapping.name})
        claimed = [str((c.get("metadata") or {}).get("name") or "") for c in claims]
        candidates = candidate_addresses(
            mapping.segment,
            claimed=claimed,
            excluded=mapping.excluded_ips,
            include_network_and_broadcast=self._include_network_and_broadcast,
        )
        return await reserve_address(self._store, candidates, vip.key, mapping.name)

    async def segment_mappings(self) -> list[SegmentMapping]:
        mappings = [SegmentMapping.from_dict(obj) for obj in await self._store.list(SEGMENT_MAPPING)]
        if self._sort_segments_by_name:
            mappings.sort(key=lambda m: m.name)
        return mappings

    async def _find_by_segment(self, segment: str) -> SegmentMapping:
        for mapping in await self.segment_mappings():
            if mapping.segment == segment:
                return mapping
        raise SegmentNotFoundError(f"GroupSegmentMapping not found for the requested segment {segment!r}")
