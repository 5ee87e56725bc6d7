"""
Pending-output queue for wormwatch.

Holds data packets that are waiting for route discovery. The queue is
bounded in length and in packet age; when full, the oldest packet is
evicted to make room.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

from .exceptions import NoRouteError, QueueFullError
from .transport import IpHeader

logger = logging.getLogger(__name__)


@dataclass
class QueueEntry:
    """A packet parked until its destination becomes reachable."""

    packet: Any
    header: IpHeader
    unicast_forward: Optional[Callable] = None
    error: Optional[Callable] = None
    enqueued_at: float = 0.0

    @property
    def destination(self) -> str:
        return self.header.destination

    def fail(self, exc: Exception) -> None:
        if self.error is not None:
            self.error(self.packet, self.header, exc)


class RequestQueue:
    """
    FIFO of packets awaiting a route, bounded by max_len and max_age.
    """

    def __init__(self, max_len: int, max_age: float, clock: Callable[[], float]):
        self.max_len = max_len
        self.max_age = max_age
        self._clock = clock
        self._entries: List[QueueEntry] = []
        self.evicted = 0
        self.expired = 0

    def enqueue(self, entry: QueueEntry) -> bool:
        """
        Append a packet.

        Returns:
            False if the same packet is already queued for the same destination
        """
        self.purge()
        for queued in self._entries:
            if queued.packet is entry.packet and queued.destination == entry.destination:
                return False
        entry.enqueued_at = self._clock()
        if len(self._entries) >= self.max_len:
            oldest = self._entries.pop(0)
            self.evicted += 1
            logger.debug(f"Queue full, dropping oldest packet for {oldest.destination}")
            oldest.fail(QueueFullError(f"pending queue full ({self.max_len})"))
        self._entries.append(entry)
        return True

    def dequeue(self, destination: str) -> Optional[QueueEntry]:
        """Remove and return the oldest packet for destination."""
        self.purge()
        for i, entry in enumerate(self._entries):
            if entry.destination == destination:
                return self._entries.pop(i)
        return None

    def dequeue_all_for(self, destination: str) -> List[QueueEntry]:
        """Remove and return every packet for destination, oldest first."""
        self.purge()
        taken = [e for e in self._entries if e.destination == destination]
        self._entries = [e for e in self._entries if e.destination != destination]
        return taken

    def drop_for(self, destination: str, reason: str = "route discovery failed") -> int:
        """Discard every packet for destination, failing each one."""
        dropped = self.dequeue_all_for(destination)
        for entry in dropped:
            entry.fail(NoRouteError(destination, reason))
        if dropped:
            logger.debug(f"Dropped {len(dropped)} queued packets for {destination}")
        return len(dropped)

    def has_for(self, destination: str) -> bool:
        self.purge()
        return any(e.destination == destination for e in self._entries)

    def purge(self) -> None:
        """Drop packets older than max_age."""
        now = self._clock()
        keep, stale = [], []
        for entry in self._entries:
            (stale if now - entry.enqueued_at > self.max_age else keep).append(entry)
        self._entries = keep
        for entry in stale:
            self.expired += 1
            entry.fail(NoRouteError(entry.destination, "queue timeout"))

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        self.purge()
        return len(self._entries)

    def stats(self) -> dict:
        return {
            "queued": len(self),
            "evicted": self.evicted,
            "expired": self.expired,
        }
