"""
Soft-state containers for wormwatch.

NeighborTable tracks one-hop neighbors with expiry times and reports link
breaks. IdCache remembers (address, id) pairs for a freshness window and is
used for route request de-duplication, broadcast data de-duplication and
wormhole evidence de-duplication. RateCounter caps originated messages per
rate-limit period.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, Hashable, List, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass
class NeighborEntry:
    """One-hop neighbor record."""

    address: str
    expires_at: float
    close: bool = False  # Link-layer reported a transmission failure


class NeighborTable:
    """
    One-hop neighbor table.

    Entries are refreshed by update(); purge() drops expired or closed
    entries and reports each dropped address to the link-break callback.
    """

    def __init__(self, clock: Callable[[], float]):
        self._clock = clock
        self._entries: "OrderedDict[str, NeighborEntry]" = OrderedDict()
        self._link_break: Optional[Callable[[str], None]] = None

    def on_link_break(self, callback: Callable[[str], None]) -> None:
        """Register the callback invoked with each neighbor that is lost."""
        self._link_break = callback

    def update(self, address: str, lifetime: float) -> None:
        """Refresh (or add) a neighbor so it lives at least `lifetime` more seconds."""
        expires_at = self._clock() + lifetime
        entry = self._entries.get(address)
        if entry is None:
            self._entries[address] = NeighborEntry(address, expires_at)
            logger.debug(f"Neighbor added: {address}")
            return
        entry.expires_at = max(entry.expires_at, expires_at)
        entry.close = False

    def is_neighbor(self, address: str) -> bool:
        entry = self._entries.get(address)
        return entry is not None and not entry.close and entry.expires_at >= self._clock()

    def expire_time(self, address: str) -> Optional[float]:
        """Seconds until address expires, or None if it is not a live neighbor."""
        if not self.is_neighbor(address):
            return None
        return self._entries[address].expires_at - self._clock()

    def list(self) -> List[str]:
        """Live neighbor addresses in insertion order."""
        now = self._clock()
        return [
            addr for addr, e in self._entries.items()
            if not e.close and e.expires_at >= now
        ]

    def remove(self, address: str) -> bool:
        return self._entries.pop(address, None) is not None

    def notify_tx_error(self, address: str) -> None:
        """Link layer could not deliver a frame to address."""
        entry = self._entries.get(address)
        if entry is not None:
            entry.close = True
            logger.debug(f"Transmission to neighbor {address} failed")
        self.purge()

    def purge(self) -> List[str]:
        """
        Drop expired and closed entries.

        Returns:
            Addresses that were dropped
        """
        now = self._clock()
        lost = [
            addr for addr, e in self._entries.items()
            if e.close or e.expires_at < now
        ]
        for addr in lost:
            del self._entries[addr]
        for addr in lost:
            logger.debug(f"Neighbor lost: {addr}")
            if self._link_break is not None:
                self._link_break(addr)
        return lost

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self.list())

    def __contains__(self, address: str) -> bool:
        return self.is_neighbor(address)


class IdCache:
    """
    Set of (address, id) pairs remembered for `lifetime` seconds.
    """

    def __init__(self, lifetime: float, clock: Callable[[], float]):
        self.lifetime = lifetime
        self._clock = clock
        self._seen: Dict[Tuple[str, Hashable], float] = {}

    def is_duplicate(self, address: str, ident: Hashable) -> bool:
        """
        Check for and record (address, ident).

        Returns:
            True if the pair was seen within the window, else records it
            and returns False
        """
        self.purge()
        key = (address, ident)
        if key in self._seen:
            return True
        self._seen[key] = self._clock() + self.lifetime
        return False

    def contains(self, address: str, ident: Hashable) -> bool:
        self.purge()
        return (address, ident) in self._seen

    def purge(self) -> None:
        now = self._clock()
        for key in [k for k, exp in self._seen.items() if exp < now]:
            del self._seen[key]

    def clear(self) -> None:
        self._seen.clear()

    def __len__(self) -> int:
        self.purge()
        return len(self._seen)


class RateCounter:
    """Per-period origination counter, reset by the owner's timer."""

    def __init__(self, limit: int):
        self.limit = limit
        self.count = 0

    def try_acquire(self) -> bool:
        """Count one message. Returns False once the limit is reached."""
        if self.count >= self.limit:
            return False
        self.count += 1
        return True

    @property
    def exhausted(self) -> bool:
        return self.count >= self.limit

    def reset(self) -> None:
        self.count = 0
