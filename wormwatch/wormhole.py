"""
Wormhole detection for wormwatch.

Every route reply carries the one-hop neighbor list of the node that last
sent it. A relay that shares no neighbor with that list does not trust the
link the reply arrived on: it parks the reply and asks its own neighbors
for their neighbor lists (WormholeCheck). If any answer (WormholeEvidence)
shares a neighbor with the parked reply's list, the reply sender is within
two hops and the reply is released toward the originator. Otherwise the
reply stays suppressed and the originator's discovery times out.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

from .packets import ReplyHeader, WormholeCheckHeader, WormholeEvidenceHeader
from .routing import RouteEntry
from .state import IdCache
from .stats import EV_REPLY_RELAYED, EV_REPLY_SUPPRESSED, EV_REPLY_SUPERSEDED

if TYPE_CHECKING:
    from .protocol import RoutingProtocol
    from .transport import InterfaceAddress

logger = logging.getLogger(__name__)


@dataclass
class PendingReply:
    """A reply held back until a neighbor vouches for its sender."""

    reply: ReplyHeader
    sender: str
    ttl: int
    created_at: float

    @property
    def key(self) -> Tuple[str, int]:
        return (self.reply.origin, self.reply.reply_id)


class WormholeDetector:
    """
    Neighbor-list cross-check run by every reply relay.

    Owned by one RoutingProtocol; it reads the engine's neighbor table and
    routing table and sends through the engine.
    """

    def __init__(self, engine: "RoutingProtocol"):
        self.engine = engine
        self.config = engine.config
        self.stats = engine.stats
        self._pending: Dict[Tuple[str, int], PendingReply] = {}
        self.evidence_cache = IdCache(self.config.path_discovery_time, engine.scheduler.now)

    @property
    def enabled(self) -> bool:
        return self.config.enable_wormhole_detection

    # ------------------------------------------------------------------
    # Pending replies
    # ------------------------------------------------------------------

    def pending(self, origin: str, reply_id: int) -> Optional[PendingReply]:
        return self._pending.get((origin, reply_id))

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def purge(self) -> int:
        """Give up on replies that waited longer than the pending window."""
        now = self.engine.scheduler.now()
        window = self.config.pending_reply_window
        stale = [k for k, p in self._pending.items() if now - p.created_at > window]
        for key in stale:
            self._suppressed(self._pending.pop(key))
        return len(stale)

    def finalize(self) -> int:
        """Count every still-pending reply as suppressed and forget it."""
        count = len(self._pending)
        for pending in self._pending.values():
            self._suppressed(pending)
        self._pending.clear()
        return count

    def _suppressed(self, pending: PendingReply) -> None:
        logger.debug(
            f"{self.engine.main_address}: reply {pending.reply.reply_id} "
            f"from {pending.sender} stays suppressed"
        )
        self.stats.record_event(EV_REPLY_SUPPRESSED, tunneled=bool(pending.reply.forwarded))

    # ------------------------------------------------------------------
    # Relay decision
    # ------------------------------------------------------------------

    def _common_neighbors(self, mine: List[str], theirs: List[str]) -> List[str]:
        local = set(self.engine.local_addresses)
        other = set(theirs)
        return [a for a in mine if a in other and a not in local]

    def check_reply(self, reply: ReplyHeader, sender: str, ttl: int,
                    to_origin: RouteEntry) -> bool:
        """
        Decide whether a reply from sender may be relayed toward its origin.

        Returns:
            True if the reply was relayed, False if it is pending a cross-check
        """
        self.purge()
        own = self.engine.neighbors.list()
        if not self.enabled or self._common_neighbors(own, list(reply.neighbors)):
            self._relay(reply, ttl - 1, to_origin)
            return True

        pending = PendingReply(reply.copy(), sender, ttl, self.engine.scheduler.now())
        previous = self._pending.get(pending.key)
        if previous is not None:
            self.stats.record_event(EV_REPLY_SUPERSEDED, tunneled=bool(previous.reply.forwarded))
        self._pending[pending.key] = pending
        logger.debug(
            f"{self.engine.main_address}: no common neighbor with {sender}, "
            f"holding reply {reply.reply_id} for {reply.dst}"
        )
        self.send_check(reply)
        return False

    def _relay(self, reply: ReplyHeader, ttl: int, to_origin: RouteEntry) -> None:
        relayed = reply.copy()
        tunneled = bool(relayed.forwarded)
        relayed.forwarded = 0
        relayed.set_neighbors(self.engine.neighbors.list())
        self.engine.send_unicast(relayed, to_origin.next_hop, to_origin.interface, ttl)
        self.stats.record_event(EV_REPLY_RELAYED, tunneled=tunneled)

    # ------------------------------------------------------------------
    # Cross-check exchange
    # ------------------------------------------------------------------

    def send_check(self, reply: ReplyHeader) -> None:
        """Ask every one-hop neighbor for its neighbor list."""
        check = WormholeCheckHeader(
            check_id=reply.reply_id,
            dst_seq=reply.dst_seq,
            origin=reply.origin,
        )
        self.engine.send_broadcast(check, ttl=1, jitter=False)

    def recv_check(self, check: WormholeCheckHeader, iface: "InterfaceAddress", sender: str) -> None:
        """Answer a neighbor's cross-check with our own neighbor list."""
        prev = self.engine.routing_table.lookup(sender)
        if prev is not None and prev.is_unidirectional(self.engine.scheduler.now()):
            logger.debug(f"Ignoring check from blacklisted {sender}")
            return
        self.engine.refresh_neighbor(sender, iface, check.dst_seq)
        evidence = WormholeEvidenceHeader(
            check_id=check.check_id,
            origin=check.origin,
            target=sender,
            neighbors=self.engine.neighbors.list(),
        )
        self.engine.send_unicast(evidence, sender, iface.local, ttl=1)

    def recv_evidence(self, evidence: WormholeEvidenceHeader, iface: "InterfaceAddress",
                      sender: str) -> bool:
        """
        Release a pending reply if the evidence links its sender to us.

        Returns:
            True if a pending reply was relayed
        """
        self.purge()
        pending = self._pending.get((evidence.origin, evidence.check_id))
        if pending is None:
            return False
        if sender == pending.sender:
            # The suspect cannot vouch for itself
            return False

        to_origin = self.engine.routing_table.lookup(pending.reply.origin)
        if to_origin is None or to_origin.in_search:
            return False

        if not self._common_neighbors(list(pending.reply.neighbors), list(evidence.neighbors)):
            logger.debug(
                f"{self.engine.main_address}: evidence from {sender} does not "
                f"link {pending.sender}"
            )
            return False

        if self.evidence_cache.is_duplicate(pending.reply.origin, pending.reply.reply_id):
            return False

        del self._pending[pending.key]
        logger.debug(
            f"{self.engine.main_address}: {sender} vouches for {pending.sender}, "
            f"releasing reply {pending.reply.reply_id}"
        )
        self._relay(pending.reply, to_origin.hops, to_origin)
        return True

    def clear(self) -> None:
        self._pending.clear()
        self.evidence_cache.clear()
