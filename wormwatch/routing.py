"""
Routing table for wormwatch.

Per-destination route entries with sequence numbers, hop counts, lifetimes,
precursor sets and blacklist state, plus the table that owns them and
drives their VALID -> INVALID -> deleted lifecycle.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional

from .logging_setup import format_block

logger = logging.getLogger(__name__)


# ============================================================================
# Sequence numbers
# ============================================================================

SEQ_MODULO = 1 << 32


def seq_diff(a: int, b: int) -> int:
    """Signed 32-bit difference a - b with wrap-around."""
    d = (a - b) % SEQ_MODULO
    return d - SEQ_MODULO if d >= (1 << 31) else d


def seq_newer(a: int, b: int) -> bool:
    """True if sequence number a is strictly fresher than b."""
    return seq_diff(a, b) > 0


def seq_max(a: int, b: int) -> int:
    return a if seq_diff(a, b) >= 0 else b


def seq_next(seq: int) -> int:
    return (seq + 1) % SEQ_MODULO


# ============================================================================
# Route entries
# ============================================================================

class RouteFlag(Enum):
    VALID = "UP"
    INVALID = "DOWN"
    IN_SEARCH = "IN_SEARCH"


@dataclass
class RouteEntry:
    """A route to one destination."""

    destination: str
    next_hop: str
    interface: str  # Local address of the outgoing interface
    hops: int = 1
    seq_no: int = 0
    valid_seq_no: bool = False
    lifetime: float = 0.0  # Absolute expiry time
    flag: RouteFlag = RouteFlag.VALID
    precursors: List[str] = field(default_factory=list)
    rreq_count: int = 0
    blacklisted: bool = False
    blacklist_until: float = 0.0

    @property
    def is_valid(self) -> bool:
        return self.flag == RouteFlag.VALID

    @property
    def in_search(self) -> bool:
        return self.flag == RouteFlag.IN_SEARCH

    def insert_precursor(self, address: str) -> bool:
        if address in self.precursors:
            return False
        self.precursors.append(address)
        return True

    def delete_precursor(self, address: str) -> bool:
        if address not in self.precursors:
            return False
        self.precursors.remove(address)
        return True

    def has_precursors(self) -> bool:
        return bool(self.precursors)

    def lifetime_left(self, now: float) -> float:
        return self.lifetime - now

    def set_lifetime(self, now: float, duration: float) -> None:
        self.lifetime = now + duration

    def extend_lifetime(self, now: float, duration: float) -> None:
        """Push the expiry out to at least now + duration."""
        self.lifetime = max(self.lifetime, now + duration)

    def is_unidirectional(self, now: float) -> bool:
        return self.blacklisted and now < self.blacklist_until

    def invalidate(self, now: float, bad_link_lifetime: float) -> None:
        """Mark the route broken; it is deleted after bad_link_lifetime."""
        if self.flag == RouteFlag.INVALID:
            return
        self.flag = RouteFlag.INVALID
        self.rreq_count = 0
        self.lifetime = now + bad_link_lifetime

    def copy(self) -> "RouteEntry":
        return copy.deepcopy(self)

    def describe(self, now: float) -> str:
        return (
            f"{self.destination:<15} {self.next_hop:<15} {self.interface:<15} "
            f"{self.flag.value:<9} {self.lifetime_left(now):>8.2f} {self.hops:>4}"
        )


# ============================================================================
# Routing table
# ============================================================================

class RoutingTable:
    """
    Destination-keyed route store.

    Lookups return copies; callers change an entry by passing a modified
    copy to update(). Expired VALID routes become INVALID and stay for
    bad_link_lifetime before they are removed.
    """

    def __init__(self, clock: Callable[[], float], bad_link_lifetime: float):
        self._clock = clock
        self.bad_link_lifetime = bad_link_lifetime
        self._routes: Dict[str, RouteEntry] = {}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def lookup(self, destination: str) -> Optional[RouteEntry]:
        """Return a copy of the route to destination, if any."""
        self.purge()
        entry = self._routes.get(destination)
        return entry.copy() if entry is not None else None

    def lookup_valid(self, destination: str) -> Optional[RouteEntry]:
        entry = self.lookup(destination)
        if entry is None or not entry.is_valid:
            return None
        return entry

    def precursors_of(self, destination: str) -> List[str]:
        entry = self._routes.get(destination)
        return list(entry.precursors) if entry else []

    def routes_with_next_hop(self, next_hop: str) -> Dict[str, int]:
        """Map of destination -> seq for every VALID route through next_hop."""
        self.purge()
        return {
            dst: entry.seq_no
            for dst, entry in self._routes.items()
            if entry.is_valid and entry.next_hop == next_hop
        }

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def add(self, entry: RouteEntry) -> bool:
        """Insert a route. Returns False if the destination already has one."""
        self.purge()
        if entry.destination in self._routes:
            return False
        entry = entry.copy()
        if entry.flag != RouteFlag.IN_SEARCH:
            entry.rreq_count = 0
        self._routes[entry.destination] = entry
        logger.debug(
            f"Route added: {entry.destination} via {entry.next_hop} "
            f"hops={entry.hops} seq={entry.seq_no} {entry.flag.name}"
        )
        return True

    def update(self, entry: RouteEntry) -> bool:
        """Replace (or insert) the route for entry.destination."""
        entry = entry.copy()
        if entry.flag != RouteFlag.IN_SEARCH:
            entry.rreq_count = 0
        existed = entry.destination in self._routes
        self._routes[entry.destination] = entry
        return existed

    def delete(self, destination: str) -> bool:
        self.purge()
        if self._routes.pop(destination, None) is None:
            return False
        logger.debug(f"Route deleted: {destination}")
        return True

    def invalidate_all(self, unreachable: Dict[str, int]) -> None:
        """Invalidate every VALID route whose destination is in unreachable."""
        now = self._clock()
        for dst, seq in unreachable.items():
            entry = self._routes.get(dst)
            if entry is None or not entry.is_valid:
                continue
            entry.seq_no = seq
            entry.invalidate(now, self.bad_link_lifetime)
            logger.debug(f"Route invalidated: {dst} seq={seq}")

    def mark_unidirectional(self, neighbor: str, duration: float) -> bool:
        """Blacklist neighbor for duration seconds."""
        entry = self._routes.get(neighbor)
        if entry is None:
            return False
        entry.blacklisted = True
        entry.blacklist_until = self._clock() + duration
        entry.rreq_count = 0
        logger.debug(f"Neighbor {neighbor} blacklisted for {duration:.2f}s")
        return True

    def delete_routes_from_interface(self, interface: str) -> int:
        doomed = [dst for dst, e in self._routes.items() if e.interface == interface]
        for dst in doomed:
            del self._routes[dst]
        return len(doomed)

    def purge(self) -> None:
        """Apply lifetime expiry to every entry."""
        now = self._clock()
        for dst in list(self._routes):
            entry = self._routes[dst]
            if entry.blacklisted and now >= entry.blacklist_until:
                entry.blacklisted = False
            if entry.lifetime_left(now) >= 0:
                continue
            if entry.flag == RouteFlag.INVALID:
                del self._routes[dst]
            elif entry.flag == RouteFlag.VALID:
                entry.invalidate(now, self.bad_link_lifetime)

    def clear(self) -> None:
        self._routes.clear()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def snapshot(self) -> List[RouteEntry]:
        self.purge()
        return [e.copy() for e in self._routes.values()]

    def destinations(self) -> List[str]:
        return list(self._routes)

    def format_table(self, title: str = "Routing table") -> str:
        now = self._clock()
        header = (
            f"{'Destination':<15} {'Gateway':<15} {'Interface':<15} "
            f"{'Flag':<9} {'Expire':>8} {'Hops':>4}"
        )
        lines = [header] + [e.describe(now) for e in self._routes.values()]
        return format_block(title, lines)

    def __len__(self) -> int:
        return len(self._routes)

    def __contains__(self, destination: str) -> bool:
        return destination in self._routes

    def __iter__(self) -> Iterator[RouteEntry]:
        return iter(self.snapshot())

    def stats(self) -> dict:
        counts = {flag.name.lower(): 0 for flag in RouteFlag}
        for entry in self._routes.values():
            counts[entry.flag.name.lower()] += 1
        counts["total"] = len(self._routes)
        return counts
