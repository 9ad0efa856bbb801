"""AddressPool resolution.

Turns a segment CIDR and two exclusion sets into the ascending sequence of
addresses that are still free. The sequence is produced lazily so large
segments are never materialised, and is recomputed for every attempt.
"""

from __future__ import annotations

import ipaddress
from collections.abc import Iterable, Iterator

from vipalloc.allocator.errors import InvalidSegmentError


def parse_segment(cidr: str) -> ipaddress.IPv4Network:
    """Parse an IPv4 CIDR, masking host bits off the base address.

    Raises InvalidSegmentError for anything that is not ``a.b.c.d/n``.
    """
    text = cidr.strip()
    if "/" not in text:
        raise InvalidSegmentError(f"invalid CIDR address: {cidr!r}")
    try:
        network = ipaddress.ip_network(text, strict=False)
    except ValueError as exc:
        raise InvalidSegmentError(f"invalid CIDR address: {cidr!r}") from exc
    if not isinstance(network, ipaddress.IPv4Network):
        raise InvalidSegmentError(f"only IPv4 segments are supported: {cidr!r}")
    return network


def _normalise(addresses: Iterable[str]) -> set[str]:
    out: set[str] = set()
    for addr in addresses:
        try:
            out.add(str(ipaddress.IPv4Address(addr.strip())))
        except ValueError:
            # Not an address; it can never match a candidate but keep it verbatim.
            out.add(addr)
    return out


def candidate_addresses(
    segment: str,
    claimed: Iterable[str] = (),
    excluded: Iterable[str] = (),
    include_network_and_broadcast: bool = True,
) -> Iterator[str]:
    """Return an iterator over the free addresses of ``segment``.

    Enumeration starts at the network address and walks up one address at a
    time to the last address of the subnet. Addresses in ``claimed`` or
    ``excluded`` are skipped. With ``include_network_and_broadcast`` off, the
    first and last address are skipped too, except on /31 and /32 where every
    address is usable.

    The CIDR is parsed eagerly so a malformed segment raises here, not on the
    first ``next()``.
    """
    network = parse_segment(segment)
    skip = _normalise(claimed) | _normalise(excluded)

    first = int(network.network_address)
    last = int(network.broadcast_address)
    if not include_network_and_broadcast and network.prefixlen < 31:
        first += 1
        last -= 1

    def _walk() -> Iterator[str]:
        for value in range(first, last + 1):
            addr = str(ipaddress.IPv4Address(value))
            if addr not in skip:
                yield addr

    return _walk()
