"""
Routing protocol engine for wormwatch.

On-demand distance-vector routing: route discovery by expanding ring
search with route requests, route replies unicast back along the reverse
path, route errors toward precursors when links break, optional hello
messages for neighbor sensing, and reply acknowledgement with neighbor
blacklisting. Every reply relay runs the wormhole cross-check in
wormhole.py before forwarding.

The engine is single-threaded and event driven: the transport delivers
control messages to recv_control(), the host IP layer calls route_output()
and route_input(), and everything time-based runs as scheduler callbacks.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from scapy.all import Packet

from .config import (
    AODV_PORT,
    HELLO_START_JITTER,
    JITTER_MAX,
    JITTER_MIN,
    LOOPBACK,
    ProtocolConfig,
)
from .exceptions import NoRouteError, PacketParseError, TransportError
from .packet_queue import QueueEntry, RequestQueue
from .packets import (
    ErrorHeader,
    MessageType,
    ReplyHeader,
    RequestHeader,
    ReplyAckHeader,
    decode_message,
    encode_message,
    make_reply,
    message_type_of,
)
from .routing import (
    RouteEntry,
    RouteFlag,
    RoutingTable,
    seq_diff,
    seq_newer,
    seq_next,
)
from .scheduler import EventScheduler, KeyedTimers, TimerHandle
from .state import IdCache, NeighborTable, RateCounter
from .stats import (
    EV_CONTROL_RECEIVED,
    EV_CONTROL_SENT,
    EV_DISCOVERY_FAILED,
    EV_DISCOVERY_STARTED,
    EV_DUPLICATE_REQUEST,
    EV_HELLO_RECEIVED,
    EV_INVALID_MESSAGE,
    EV_PARSE_ERROR,
    EV_RERR_SUPPRESSED,
    EV_ROUTE_ESTABLISHED,
    EV_RREQ_DEFERRED,
    NullStats,
)
from .transport import InterfaceAddress, IpHeader, Route, Transport, is_multicast
from .wormhole import WormholeDetector

logger = logging.getLogger(__name__)

RATE_LIMIT_PERIOD = 1.0  # Seconds per RREQ/RERR rate-limit window
RATE_LIMIT_SLACK = 0.001  # Retry a rate-limited RREQ this long after the window resets
NO_ADDRESS = "0.0.0.0"


def _ms(seconds: float) -> int:
    return max(0, min(0xFFFFFFFF, int(round(seconds * 1000))))


@dataclass
class RouteResult:
    """Outcome of route_output()."""

    route: Optional[Route] = None
    deferred: bool = False
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.route is not None and not self.deferred


class RoutingProtocol:
    """
    One node's routing engine.

    Args:
        interfaces: Local interface(s), as InterfaceAddress or "addr/prefix"
        transport: Sends encoded control messages
        scheduler: Time source and timer service
        config: Protocol parameters (defaults if None)
        stats: Event sink with a record_event(kind, **metadata) method
        rng: Random source for jitter
    """

    def __init__(
        self,
        interfaces: Union[str, InterfaceAddress, Iterable[Union[str, InterfaceAddress]]],
        transport: Transport,
        scheduler: EventScheduler,
        config: Optional[ProtocolConfig] = None,
        stats: Any = None,
        rng: Optional[random.Random] = None,
    ):
        self.config = config or ProtocolConfig()
        self.config.validate()
        self.transport = transport
        self.scheduler = scheduler
        self.stats = stats if stats is not None else NullStats()
        self.rng = rng or random.Random()

        clock = scheduler.now
        self.routing_table = RoutingTable(clock, self.config.delete_period)
        self.neighbors = NeighborTable(clock)
        self.neighbors.on_link_break(self.send_rerr_when_breaks_link_to_next_hop)
        self.queue = RequestQueue(self.config.max_queue_len, self.config.max_queue_time, clock)
        self.rreq_id_cache = IdCache(self.config.path_discovery_time, clock)
        self.broadcast_cache = IdCache(self.config.path_discovery_time, clock)

        self.seq_no = 0
        self.request_id = 0
        self.reply_id = 0
        self.rreq_limit = RateCounter(self.config.rreq_rate_limit)
        self.rerr_limit = RateCounter(self.config.rerr_rate_limit)

        self._request_timers = KeyedTimers(scheduler)
        self._ack_timers = KeyedTimers(scheduler)
        self._rreq_rate_timer: Optional[TimerHandle] = None
        self._rerr_rate_timer: Optional[TimerHandle] = None
        self._hello_timer: Optional[TimerHandle] = None
        self._neighbor_timer: Optional[TimerHandle] = None
        self._last_bcast_time: Optional[float] = None
        self._discovery_started: Dict[str, float] = {}
        self._running = False
        self._stopped = False

        self.interfaces: List[InterfaceAddress] = []
        if isinstance(interfaces, (str, InterfaceAddress)):
            interfaces = [interfaces]
        for iface in interfaces:
            self.notify_interface_up(iface)

        self.detector = WormholeDetector(self)

    # ========================================================================
    # Addresses and interfaces
    # ========================================================================

    @property
    def main_address(self) -> str:
        return self.interfaces[0].local if self.interfaces else NO_ADDRESS

    @property
    def local_addresses(self) -> List[str]:
        return [iface.local for iface in self.interfaces]

    def is_my_own_address(self, address: str) -> bool:
        return address in self.local_addresses

    def interface(self, local: str) -> Optional[InterfaceAddress]:
        for iface in self.interfaces:
            if iface.local == local:
                return iface
        return None

    def notify_interface_up(self, iface: Union[str, InterfaceAddress]) -> None:
        """Start routing on an interface."""
        if isinstance(iface, str):
            iface = InterfaceAddress.parse(iface)
        if self.interface(iface.local) is not None:
            return
        self.interfaces.append(iface)
        # Local broadcast route
        self.routing_table.add(RouteEntry(
            destination=iface.broadcast,
            next_hop=iface.broadcast,
            interface=iface.local,
            hops=1,
            valid_seq_no=True,
            lifetime=float("inf"),
        ))
        logger.info(f"Routing on interface {iface.local} mask {iface.netmask}")

    def notify_interface_down(self, local: str) -> None:
        """Stop routing on an interface and forget routes through it."""
        iface = self.interface(local)
        if iface is None:
            return
        self.interfaces.remove(iface)
        self.routing_table.delete_routes_from_interface(local)
        logger.info(f"Interface {local} down")
        if not self.interfaces:
            logger.info("No interfaces left, stopping")
            self.stop()
            self.neighbors.clear()
            self.routing_table.clear()

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def start(self) -> None:
        """Arm the periodic timers."""
        if self._running:
            return
        self._running = True
        self._stopped = False
        self._rreq_rate_timer = self.scheduler.schedule_after(
            RATE_LIMIT_PERIOD, self._rreq_rate_limit_timer_expire)
        self._rerr_rate_timer = self.scheduler.schedule_after(
            RATE_LIMIT_PERIOD, self._rerr_rate_limit_timer_expire)
        if self.config.enable_hello:
            start = self.rng.uniform(0.0, HELLO_START_JITTER)
            self._hello_timer = self.scheduler.schedule_after(start, self.hello_timer_expire)
            self._neighbor_timer = self.scheduler.schedule_after(
                self.config.hello_interval, self._neighbor_timer_expire)
        logger.debug(f"{self.main_address}: started")

    def stop(self) -> None:
        """Cancel every timer; pending sends are dropped."""
        self._running = False
        self._stopped = True
        for handle in (self._rreq_rate_timer, self._rerr_rate_timer,
                       self._hello_timer, self._neighbor_timer):
            self.scheduler.cancel(handle)
        self._rreq_rate_timer = self._rerr_rate_timer = None
        self._hello_timer = self._neighbor_timer = None
        self._request_timers.cancel_all()
        self._ack_timers.cancel_all()
        logger.debug(f"{self.main_address}: stopped")

    @property
    def running(self) -> bool:
        return self._running

    def _rreq_rate_limit_timer_expire(self) -> None:
        self.rreq_limit.reset()
        self._rreq_rate_timer = self.scheduler.schedule_after(
            RATE_LIMIT_PERIOD, self._rreq_rate_limit_timer_expire)

    def _rerr_rate_limit_timer_expire(self) -> None:
        self.rerr_limit.reset()
        self._rerr_rate_timer = self.scheduler.schedule_after(
            RATE_LIMIT_PERIOD, self._rerr_rate_limit_timer_expire)

    def _neighbor_timer_expire(self) -> None:
        self.neighbors.purge()
        self._neighbor_timer = self.scheduler.schedule_after(
            self.config.hello_interval, self._neighbor_timer_expire)

    # ========================================================================
    # Sending
    # ========================================================================

    def _jitter(self) -> float:
        return self.rng.uniform(JITTER_MIN, JITTER_MAX)

    def _transmit(self, data: bytes, destination: str, iface: InterfaceAddress,
                  ttl: int, msg_type: MessageType) -> None:
        if self._stopped:
            return
        try:
            self.transport.send(data, destination, iface, ttl)
        except TransportError as e:
            logger.warning(f"{iface.local}: cannot send {msg_type.name} to {destination}: {e}")
            return
        self.stats.record_event(EV_CONTROL_SENT, msg_type=msg_type.name, size=len(data))

    def _send(self, header: Packet, destination: str, iface: InterfaceAddress,
              ttl: int, delay: float = 0.0) -> None:
        data = encode_message(header)
        msg_type = message_type_of(header)
        if delay > 0:
            self.scheduler.schedule_after(
                delay, self._transmit, data, destination, iface, ttl, msg_type)
        else:
            self._transmit(data, destination, iface, ttl, msg_type)

    def send_unicast(self, header: Packet, destination: str, local: str,
                     ttl: int, jitter: bool = False) -> None:
        """Send a control message to one neighbor out of interface `local`."""
        iface = self.interface(local)
        if iface is None:
            logger.debug(f"No interface {local} for message to {destination}")
            return
        self._send(header, destination, iface, ttl, self._jitter() if jitter else 0.0)

    def send_broadcast(self, header: Packet, ttl: int, jitter: bool = True,
                       interfaces: Optional[Iterable[InterfaceAddress]] = None) -> None:
        """Broadcast a control message on every (or the given) interface."""
        for iface in list(interfaces if interfaces is not None else self.interfaces):
            self._send(header, iface.broadcast, iface, ttl, self._jitter() if jitter else 0.0)

    # ========================================================================
    # Route lifetime helpers
    # ========================================================================

    def update_route_lifetime(self, address: str, lifetime: float) -> bool:
        """Extend a VALID route so it lives at least `lifetime` more seconds."""
        rt = self.routing_table.lookup(address)
        if rt is None or not rt.is_valid:
            return False
        rt.rreq_count = 0
        rt.extend_lifetime(self.scheduler.now(), lifetime)
        self.routing_table.update(rt)
        return True

    def update_route_to_neighbor(self, sender: str, iface: InterfaceAddress) -> None:
        """Make sure a one-hop route to the sender of a control message exists."""
        now = self.scheduler.now()
        art = self.config.active_route_timeout
        rt = self.routing_table.lookup(sender)
        if rt is None:
            self.routing_table.add(RouteEntry(
                destination=sender, next_hop=sender, interface=iface.local,
                hops=1, lifetime=now + art,
            ))
            return
        if rt.valid_seq_no and rt.hops == 1 and rt.interface == iface.local:
            rt.extend_lifetime(now, art)
            self.routing_table.update(rt)
            return
        self.routing_table.update(RouteEntry(
            destination=sender, next_hop=sender, interface=iface.local,
            hops=1, lifetime=max(now + art, rt.lifetime),
            precursors=rt.precursors,
            blacklisted=rt.blacklisted, blacklist_until=rt.blacklist_until,
        ))

    def refresh_neighbor(self, sender: str, iface: InterfaceAddress, seq: int) -> None:
        """Install or reset the direct route to a neighbor heard from."""
        now = self.scheduler.now()
        rt = self.routing_table.lookup(sender)
        if rt is None:
            self.routing_table.add(RouteEntry(
                destination=sender, next_hop=sender, interface=iface.local,
                hops=1, seq_no=seq, valid_seq_no=False,
                lifetime=now + self.config.active_route_timeout,
            ))
        else:
            rt.set_lifetime(now, self.config.active_route_timeout)
            rt.valid_seq_no = False
            rt.seq_no = seq
            rt.flag = RouteFlag.VALID
            rt.interface = iface.local
            rt.hops = 1
            rt.next_hop = sender
            self.routing_table.update(rt)
        self.neighbors.update(sender, self.config.neighbor_lifetime)

    def _insert_precursor(self, destination: str, precursor: str) -> None:
        rt = self.routing_table.lookup(destination)
        if rt is not None and rt.insert_precursor(precursor):
            self.routing_table.update(rt)

    @staticmethod
    def _route_for(rt: RouteEntry) -> Route:
        return Route(
            destination=rt.destination,
            source=rt.interface,
            gateway=rt.next_hop,
            interface=rt.interface,
        )

    # ========================================================================
    # IP layer entry points
    # ========================================================================

    def route_output(self, packet: Any, header: IpHeader,
                     out_iface: Optional[str] = None) -> RouteResult:
        """
        Find a route for a locally originated packet.

        With no valid route the result is deferred: the caller hands the
        packet back through route_input(..., deferred=True), which queues it
        and starts discovery.
        """
        if not self.interfaces:
            return RouteResult(error=NoRouteError(header.destination, "no routing interfaces"))

        dst = header.destination
        rt = self.routing_table.lookup_valid(dst)
        if rt is not None:
            if out_iface is not None and rt.interface != out_iface:
                logger.debug(f"Output interface {out_iface} does not match route to {dst}")
                return RouteResult(error=NoRouteError(dst, "output interface mismatch"))
            self.update_route_lifetime(dst, self.config.active_route_timeout)
            self.update_route_lifetime(rt.next_hop, self.config.active_route_timeout)
            return RouteResult(route=self._route_for(rt))

        source = out_iface or self.main_address
        logger.debug(f"{self.main_address}: no valid route to {dst}, deferring")
        return RouteResult(
            route=Route(destination=dst, source=source, gateway=LOOPBACK, interface=LOOPBACK),
            deferred=True,
        )

    def deferred_route_output(self, packet: Any, header: IpHeader,
                              unicast_forward: Callable, error: Callable) -> None:
        """Queue a packet awaiting a route and start discovery if none is running."""
        entry = QueueEntry(packet=packet, header=header,
                           unicast_forward=unicast_forward, error=error)
        if not self.queue.enqueue(entry):
            return
        rt = self.routing_table.lookup(header.destination)
        if rt is None or not rt.in_search:
            logger.debug(f"{self.main_address}: new discovery for {header.destination}")
            self.send_request(header.destination)

    def route_input(
        self,
        packet: Any,
        header: IpHeader,
        in_iface: str,
        unicast_forward: Callable,
        local_deliver: Callable,
        error: Callable,
        multicast_forward: Optional[Callable] = None,
        deferred: bool = False,
    ) -> bool:
        """
        Route a received (or deferred local) packet.

        Returns:
            True if the packet was consumed, False if this protocol does
            not handle it
        """
        if not self.interfaces:
            return False

        dst = header.destination
        origin = header.source

        if deferred and in_iface == LOOPBACK:
            self.deferred_route_output(packet, header, unicast_forward, error)
            return True

        # Our own packet coming back
        if self.is_my_own_address(origin):
            return True

        if is_multicast(dst):
            return False

        iface = self.interface(in_iface)
        if iface is not None and iface.is_broadcast(dst):
            if self.broadcast_cache.is_duplicate(origin, header.identification):
                logger.debug(f"Duplicate broadcast {header.identification} from {origin}")
                return True
            self.update_route_lifetime(origin, self.config.active_route_timeout)
            local_deliver(packet, header, in_iface)
            if not self.config.enable_broadcast:
                return True
            if header.dst_port == AODV_PORT:
                return True
            if header.ttl > 1:
                rt = self.routing_table.lookup(dst)
                if rt is not None:
                    unicast_forward(self._route_for(rt), packet, header)
                else:
                    logger.debug(f"No route to forward broadcast from {origin}")
            else:
                logger.debug(f"TTL exceeded, not forwarding broadcast from {origin}")
            return True

        if self.is_my_own_address(dst):
            self.update_route_lifetime(origin, self.config.active_route_timeout)
            to_origin = self.routing_table.lookup_valid(origin)
            if to_origin is not None:
                self.update_route_lifetime(to_origin.next_hop, self.config.active_route_timeout)
                self.neighbors.update(to_origin.next_hop, self.config.active_route_timeout)
            local_deliver(packet, header, in_iface)
            return True

        return self.forward(packet, header, unicast_forward, error)

    def forward(self, packet: Any, header: IpHeader,
                unicast_forward: Callable, error: Callable) -> bool:
        """Forward a transit packet along a VALID route, or report the break."""
        dst = header.destination
        origin = header.source
        art = self.config.active_route_timeout
        self.routing_table.purge()
        to_dst = self.routing_table.lookup(dst)
        if to_dst is not None and to_dst.is_valid:
            self.update_route_lifetime(origin, art)
            self.update_route_lifetime(dst, art)
            self.update_route_lifetime(to_dst.next_hop, art)
            to_origin = self.routing_table.lookup(origin)
            if to_origin is not None:
                self.update_route_lifetime(to_origin.next_hop, art)
                self.neighbors.update(to_origin.next_hop, art)
            self.neighbors.update(to_dst.next_hop, art)
            unicast_forward(self._route_for(to_dst), packet, header)
            return True

        seq = to_dst.seq_no if to_dst is not None and to_dst.valid_seq_no else 0
        logger.debug(f"{self.main_address}: no route to forward {origin} -> {dst}")
        self.send_rerr_when_no_route_to_forward(dst, seq, origin)
        error(packet, header, NoRouteError(dst, "no route to forward"))
        return False

    # ========================================================================
    # Control message reception
    # ========================================================================

    def recv_control(self, data: bytes, sender: str, receiver: str, ttl: int = 1) -> None:
        """Handle one control message received on interface `receiver`."""
        iface = self.interface(receiver)
        if iface is None:
            logger.debug(f"Control message for unknown interface {receiver}")
            return
        if self.is_my_own_address(sender):
            return

        self.update_route_to_neighbor(sender, iface)
        try:
            message = decode_message(data)
        except PacketParseError as e:
            logger.debug(f"{receiver}: dropping malformed message from {sender}: {e}")
            self.stats.record_event(EV_PARSE_ERROR, sender=sender)
            return
        if not message.valid:
            logger.debug(f"{receiver}: unknown message type {message.msg_type} from {sender}")
            self.stats.record_event(EV_INVALID_MESSAGE, sender=sender)
            return

        self.stats.record_event(EV_CONTROL_RECEIVED, msg_type=MessageType(message.msg_type).name)
        self.neighbors.update(sender, self.config.neighbor_lifetime)
        header = message.header
        kind = message.msg_type
        if kind == MessageType.REQUEST:
            self.recv_request(header, iface, sender, ttl)
        elif kind == MessageType.REPLY:
            self.recv_reply(header, iface, sender, ttl)
        elif kind == MessageType.ERROR:
            self.recv_error(header, sender)
        elif kind == MessageType.REPLY_ACK:
            self.recv_reply_ack(sender)
        elif kind == MessageType.WH_CHECK:
            self.detector.recv_check(header, iface, sender)
        elif kind == MessageType.WH_EVIDENCE:
            self.detector.recv_evidence(header, iface, sender)

    # ========================================================================
    # Route discovery: requests
    # ========================================================================

    def send_request(self, dst: str) -> None:
        """Originate (or repeat) a route request for dst."""
        if self._stopped:
            return
        if not self.rreq_limit.try_acquire():
            remaining = 0.0
            if self._rreq_rate_timer is not None and self._rreq_rate_timer.active:
                remaining = self._rreq_rate_timer.when - self.scheduler.now()
            logger.debug(f"RREQ rate limit reached, retrying {dst} in {remaining:.3f}s")
            self.stats.record_event(EV_RREQ_DEFERRED, dst=dst)
            self._request_timers.schedule(dst, remaining + RATE_LIMIT_SLACK, self.send_request, dst)
            return

        cfg = self.config
        now = self.scheduler.now()
        request = RequestHeader(dst=dst)
        ttl = cfg.ttl_start
        rt = self.routing_table.lookup(dst)
        if rt is not None:
            if not rt.in_search:
                ttl = min(rt.hops + cfg.ttl_increment, cfg.net_diameter)
            else:
                ttl = rt.hops + cfg.ttl_increment
                if ttl > cfg.ttl_threshold:
                    ttl = cfg.net_diameter
            if ttl == cfg.net_diameter:
                rt.rreq_count += 1
            if rt.valid_seq_no:
                request.dst_seq = rt.seq_no
            else:
                request.unknown_seq = True
            rt.hops = ttl
            rt.flag = RouteFlag.IN_SEARCH
            rt.set_lifetime(now, cfg.path_discovery_time)
            self.routing_table.update(rt)
        else:
            request.unknown_seq = True
            self.routing_table.add(RouteEntry(
                destination=dst, next_hop=NO_ADDRESS, interface="",
                hops=ttl, lifetime=now + cfg.path_discovery_time,
                flag=RouteFlag.IN_SEARCH,
                rreq_count=1 if ttl == cfg.net_diameter else 0,
            ))

        if dst not in self._discovery_started:
            self._discovery_started[dst] = now
            self.stats.record_event(EV_DISCOVERY_STARTED, dst=dst)

        request.gratuitous = cfg.gratuitous_reply
        request.destination_only = cfg.destination_only
        self.seq_no = seq_next(self.seq_no)
        request.origin_seq = self.seq_no
        self.request_id = seq_next(self.request_id)
        request.request_id = self.request_id

        logger.debug(f"{self.main_address}: RREQ {self.request_id} for {dst} ttl={ttl}")
        for iface in self.interfaces:
            request.origin = iface.local
            self.rreq_id_cache.is_duplicate(iface.local, self.request_id)
            self._last_bcast_time = now
            self._send(request, iface.broadcast, iface, ttl, self._jitter())
        self.schedule_rreq_retry(dst)

    def schedule_rreq_retry(self, dst: str) -> None:
        """Arm the discovery retry timer for dst."""
        rt = self.routing_table.lookup(dst)
        if rt is None:
            return
        cfg = self.config
        if rt.hops < cfg.net_diameter:
            retry = 2 * cfg.node_traversal_time * (rt.hops + cfg.timeout_buffer)
        else:
            backoff = max(rt.rreq_count - 1, 0)
            retry = cfg.net_traversal_time * (1 << backoff)
        self._request_timers.schedule(dst, retry, self.route_request_timer_expire, dst)
        logger.debug(f"RREQ retry for {dst} in {retry:.3f}s")

    def route_request_timer_expire(self, dst: str) -> None:
        """Discovery retry timer for dst fired."""
        rt = self.routing_table.lookup_valid(dst)
        if rt is not None:
            self._complete_discovery(dst)
            return

        rt = self.routing_table.lookup(dst)
        if rt is None:
            self._abandon_discovery(dst, "route vanished")
            return
        if rt.rreq_count >= self.config.rreq_retries and rt.hops >= self.config.net_diameter:
            logger.info(
                f"{self.main_address}: discovery for {dst} failed after "
                f"{rt.rreq_count} attempts at ttl {self.config.net_diameter}"
            )
            self._abandon_discovery(dst, "route discovery failed")
            return
        if rt.in_search:
            self.send_request(dst)
        else:
            self._abandon_discovery(dst, "route down")

    def _abandon_discovery(self, dst: str, reason: str) -> None:
        self._request_timers.cancel(dst)
        self.routing_table.delete(dst)
        self.queue.drop_for(dst, reason)
        self._discovery_started.pop(dst, None)
        self.stats.record_event(EV_DISCOVERY_FAILED, dst=dst, reason=reason)

    def _complete_discovery(self, dst: str) -> None:
        rt = self.routing_table.lookup_valid(dst)
        if rt is None:
            return
        self._request_timers.cancel(dst)
        started = self._discovery_started.pop(dst, None)
        if started is not None:
            latency = self.scheduler.now() - started
            logger.debug(f"{self.main_address}: route to {dst} in {latency:.4f}s")
            self.stats.record_event(EV_ROUTE_ESTABLISHED, dst=dst, latency=latency)
        self.send_packet_from_queue(dst, self._route_for(rt))

    def send_packet_from_queue(self, dst: str, route: Route) -> int:
        """Release every packet queued for dst along route."""
        released = self.queue.dequeue_all_for(dst)
        for entry in released:
            entry.header.source = route.source
            if entry.unicast_forward is not None:
                entry.unicast_forward(route, entry.packet, entry.header)
        return len(released)

    def recv_request(self, request: RequestHeader, iface: InterfaceAddress,
                     src: str, ttl: int) -> None:
        """Process a route request heard from neighbor src."""
        cfg = self.config
        now = self.scheduler.now()

        prev = self.routing_table.lookup(src)
        if prev is not None and prev.is_unidirectional(now):
            logger.debug(f"Ignoring RREQ from blacklisted {src}")
            return

        origin = request.origin
        if self.rreq_id_cache.is_duplicate(origin, request.request_id):
            self.stats.record_event(EV_DUPLICATE_REQUEST, origin=origin)
            return

        hop = min(request.hop_count + 1, 0xFF)
        request.hop_count = hop

        # Reverse route
        reverse_lifetime = max(
            0.0, 2 * cfg.net_traversal_time - 2 * hop * cfg.node_traversal_time)
        to_origin = self.routing_table.lookup(origin)
        if to_origin is None:
            self.routing_table.add(RouteEntry(
                destination=origin, next_hop=src, interface=iface.local,
                hops=hop, seq_no=request.origin_seq, valid_seq_no=True,
                lifetime=now + reverse_lifetime,
            ))
        else:
            if not to_origin.valid_seq_no or seq_newer(request.origin_seq, to_origin.seq_no):
                to_origin.seq_no = request.origin_seq
            to_origin.valid_seq_no = True
            to_origin.next_hop = src
            to_origin.interface = iface.local
            to_origin.hops = hop
            to_origin.flag = RouteFlag.VALID
            to_origin.extend_lifetime(now, reverse_lifetime)
            self.routing_table.update(to_origin)

        self.refresh_neighbor(src, iface, request.origin_seq)

        if self.is_my_own_address(request.dst):
            logger.debug(f"{self.main_address}: RREQ from {origin} reached destination")
            self.send_reply(request, self.routing_table.lookup(origin))
            return

        to_dst = self.routing_table.lookup(request.dst)
        if to_dst is not None:
            if to_dst.next_hop == src:
                logger.debug(f"Dropping RREQ from {src}: it is our next hop to {request.dst}")
                return
            fresh_enough = request.unknown_seq or seq_diff(to_dst.seq_no, request.dst_seq) >= 0
            if fresh_enough and to_dst.valid_seq_no:
                if not request.destination_only and to_dst.is_valid:
                    self.send_reply_by_intermediate_node(
                        to_dst, self.routing_table.lookup(origin), request.gratuitous)
                    return
                request.dst_seq = to_dst.seq_no
                request.unknown_seq = False

        if ttl < 2:
            logger.debug(f"TTL exceeded, dropping RREQ {origin} -> {request.dst}")
            return

        self._last_bcast_time = now
        self.send_broadcast(request, ttl=ttl - 1)

    # ========================================================================
    # Route discovery: replies
    # ========================================================================

    def send_reply(self, request: RequestHeader, to_origin: RouteEntry) -> None:
        """Answer a route request addressed to this node."""
        if not request.unknown_seq and request.dst_seq == seq_next(self.seq_no):
            self.seq_no = seq_next(self.seq_no)
        self.reply_id = seq_next(self.reply_id)
        reply = make_reply(
            neighbors=self.neighbors.list(),
            hop_count=0,
            dst=request.dst,
            dst_seq=self.seq_no,
            origin=to_origin.destination,
            lifetime=_ms(self.config.my_route_timeout),
            reply_id=self.reply_id,
        )
        logger.debug(
            f"{self.main_address}: RREP {self.reply_id} to {to_origin.destination} "
            f"via {to_origin.next_hop}"
        )
        self.send_unicast(reply, to_origin.next_hop, to_origin.interface, ttl=to_origin.hops)

    def send_reply_by_intermediate_node(self, to_dst: RouteEntry, to_origin: RouteEntry,
                                        gratuitous: bool) -> None:
        """Answer a route request from our own fresh route to its destination."""
        now = self.scheduler.now()
        self.reply_id = seq_next(self.reply_id)
        reply = make_reply(
            neighbors=self.neighbors.list(),
            hop_count=to_dst.hops,
            dst=to_dst.destination,
            dst_seq=to_dst.seq_no,
            origin=to_origin.destination,
            lifetime=_ms(to_dst.lifetime_left(now)),
            reply_id=self.reply_id,
        )
        # The requester's next hop is adjacent to the destination's next hop;
        # ask it to acknowledge in case the link is unidirectional.
        if to_dst.hops == 1:
            reply.ack_required = True
            self._ack_timers.schedule(
                to_origin.next_hop, self.config.next_hop_wait,
                self.ack_timer_expire, to_origin.next_hop)

        self._insert_precursor(to_dst.destination, to_origin.next_hop)
        self._insert_precursor(to_origin.destination, to_dst.next_hop)
        self.send_unicast(reply, to_origin.next_hop, to_origin.interface, ttl=to_origin.hops)

        if gratuitous:
            self.reply_id = seq_next(self.reply_id)
            grat = make_reply(
                neighbors=self.neighbors.list(),
                hop_count=to_origin.hops,
                dst=to_origin.destination,
                dst_seq=to_origin.seq_no,
                origin=to_dst.destination,
                lifetime=_ms(to_origin.lifetime_left(now)),
                reply_id=self.reply_id,
            )
            logger.debug(f"{self.main_address}: gratuitous RREP to {to_dst.destination}")
            self.send_unicast(grat, to_dst.next_hop, to_dst.interface, ttl=to_dst.hops)

    def send_reply_ack(self, neighbor: str) -> None:
        rt = self.routing_table.lookup(neighbor)
        if rt is None:
            return
        self.send_unicast(ReplyAckHeader(), neighbor, rt.interface, ttl=1)

    def recv_reply(self, reply: ReplyHeader, iface: InterfaceAddress,
                   sender: str, ttl: int) -> None:
        """Process a route reply (or hello) heard from neighbor sender."""
        now = self.scheduler.now()
        dst = reply.dst
        hop = min(reply.hop_count + 1, 0xFF)
        reply.hop_count = hop

        if reply.is_hello:
            self.process_hello(reply, iface)
            return

        # Forward route
        new_entry = RouteEntry(
            destination=dst, next_hop=sender, interface=iface.local,
            hops=hop, seq_no=reply.dst_seq, valid_seq_no=True,
            lifetime=now + reply.lifetime_seconds,
        )
        to_dst = self.routing_table.lookup(dst)
        if to_dst is None:
            self.routing_table.add(new_entry)
        else:
            same_seq = reply.dst_seq == to_dst.seq_no
            if (not to_dst.valid_seq_no
                    or seq_newer(reply.dst_seq, to_dst.seq_no)
                    or (same_seq and not to_dst.is_valid)
                    or (same_seq and hop < to_dst.hops)):
                new_entry.precursors = to_dst.precursors
                self.routing_table.update(new_entry)

        if reply.ack_required:
            self.send_reply_ack(sender)
            reply.ack_required = False

        if self.is_my_own_address(reply.origin):
            self._complete_discovery(dst)
            return

        to_origin = self.routing_table.lookup(reply.origin)
        if to_origin is None or to_origin.in_search:
            logger.debug(f"No reverse route to {reply.origin}, dropping RREP")
            return
        to_origin.extend_lifetime(now, self.config.active_route_timeout)
        self.routing_table.update(to_origin)

        valid_dst = self.routing_table.lookup_valid(dst)
        if valid_dst is not None:
            self._insert_precursor(dst, to_origin.next_hop)
            self._insert_precursor(valid_dst.next_hop, to_origin.next_hop)
            self._insert_precursor(reply.origin, valid_dst.next_hop)
            self._insert_precursor(to_origin.next_hop, valid_dst.next_hop)

        if ttl < 2:
            logger.debug(f"TTL exceeded, dropping RREP {dst} -> {reply.origin}")
            return

        self.detector.check_reply(reply, sender, ttl, self.routing_table.lookup(reply.origin))

    def recv_reply_ack(self, neighbor: str) -> None:
        rt = self.routing_table.lookup(neighbor)
        if rt is None:
            return
        self._ack_timers.cancel(neighbor)
        rt.flag = RouteFlag.VALID
        self.routing_table.update(rt)

    def ack_timer_expire(self, neighbor: str) -> None:
        """No acknowledgement from neighbor: treat the link as unidirectional."""
        logger.debug(f"{self.main_address}: no RREP-ACK from {neighbor}, blacklisting")
        self.routing_table.mark_unidirectional(neighbor, self.config.blacklist_timeout)

    # ========================================================================
    # Hello
    # ========================================================================

    def send_hello(self) -> None:
        """Broadcast a one-hop hello (a reply about ourselves) on each interface."""
        for iface in self.interfaces:
            hello = make_reply(
                neighbors=(),
                hop_count=0,
                dst=iface.local,
                dst_seq=self.seq_no,
                origin=iface.local,
                lifetime=_ms(self.config.neighbor_lifetime),
            )
            self._send(hello, iface.broadcast, iface, 1, self._jitter())

    def hello_timer_expire(self) -> None:
        offset = 0.0
        if self._last_bcast_time is not None:
            offset = self.scheduler.now() - self._last_bcast_time
            logger.debug(f"Hello deferred, last broadcast at {self._last_bcast_time:.3f}")
        else:
            self.send_hello()
        delay = max(0.0, self.config.hello_interval - offset)
        self._hello_timer = self.scheduler.schedule_after(delay, self.hello_timer_expire)
        self._last_bcast_time = None

    def process_hello(self, hello: ReplyHeader, iface: InterfaceAddress) -> None:
        now = self.scheduler.now()
        neighbor = hello.dst
        rt = self.routing_table.lookup(neighbor)
        if rt is None:
            self.routing_table.add(RouteEntry(
                destination=neighbor, next_hop=neighbor, interface=iface.local,
                hops=1, seq_no=hello.dst_seq, valid_seq_no=True,
                lifetime=now + hello.lifetime_seconds,
            ))
        else:
            rt.extend_lifetime(now, self.config.neighbor_lifetime)
            rt.seq_no = hello.dst_seq
            rt.valid_seq_no = True
            rt.flag = RouteFlag.VALID
            rt.interface = iface.local
            rt.hops = 1
            rt.next_hop = neighbor
            self.routing_table.update(rt)
        if self.config.enable_hello:
            self.neighbors.update(neighbor, self.config.neighbor_lifetime)
        self.stats.record_event(EV_HELLO_RECEIVED, neighbor=neighbor)

    # ========================================================================
    # Route errors
    # ========================================================================

    def _collect_precursors(self, precursors: List[str], dst: str) -> None:
        for p in self.routing_table.precursors_of(dst):
            if p not in precursors:
                precursors.append(p)

    def _send_errors(self, error: ErrorHeader, unreachable: Dict[str, int],
                     precursors: List[str]) -> None:
        """Add every unreachable destination, sending each full message as it fills."""
        for dst, seq in unreachable.items():
            if not error.add_unreachable(dst, seq):
                self.send_rerr_message(error, precursors)
                error = ErrorHeader()
                error.add_unreachable(dst, seq)
            self._collect_precursors(precursors, dst)
        if error.count():
            self.send_rerr_message(error, precursors)

    def recv_error(self, error: ErrorHeader, src: str) -> None:
        """Propagate a route error for destinations we reach through src."""
        through_src = self.routing_table.routes_with_next_hop(src)
        unreachable = {
            dst: seq for dst, seq in error.destinations() if dst in through_src
        }
        if not unreachable:
            return
        logger.debug(f"{self.main_address}: RERR from {src}: {sorted(unreachable)}")
        self._send_errors(ErrorHeader(), unreachable, [])
        self.routing_table.invalidate_all(unreachable)

    def send_rerr_when_breaks_link_to_next_hop(self, next_hop: str) -> None:
        """Link to next_hop is gone: report every route through it."""
        to_next_hop = self.routing_table.lookup(next_hop)
        if to_next_hop is None:
            return
        logger.debug(f"{self.main_address}: link to {next_hop} broken")
        precursors = list(to_next_hop.precursors)
        error = ErrorHeader()
        error.add_unreachable(next_hop, to_next_hop.seq_no)
        unreachable = self.routing_table.routes_with_next_hop(next_hop)
        self._send_errors(error, unreachable, precursors)
        unreachable[next_hop] = to_next_hop.seq_no
        self.routing_table.invalidate_all(unreachable)

    def send_rerr_when_no_route_to_forward(self, dst: str, dst_seq: int, origin: str) -> None:
        """Tell the source of a transit packet that dst is unreachable."""
        if not self.rerr_limit.try_acquire():
            logger.debug(f"RERR rate limit reached, suppressing RERR for {dst}")
            self.stats.record_event(EV_RERR_SUPPRESSED, dst=dst)
            return
        error = ErrorHeader()
        error.add_unreachable(dst, dst_seq)
        to_origin = self.routing_table.lookup_valid(origin)
        if to_origin is not None:
            self.send_unicast(error, to_origin.next_hop, to_origin.interface, ttl=1)
        else:
            self.send_broadcast(error, ttl=1, jitter=False)

    def send_rerr_message(self, error: ErrorHeader, precursors: List[str]) -> None:
        """Send a route error to the precursors of the broken routes."""
        if not precursors:
            logger.debug("No precursors, RERR not sent")
            return
        if self.rerr_limit.exhausted:
            logger.debug("RERR rate limit reached, suppressing RERR")
            self.stats.record_event(EV_RERR_SUPPRESSED, count=error.count())
            return

        if len(precursors) == 1:
            to_precursor = self.routing_table.lookup_valid(precursors[0])
            if to_precursor is not None:
                self.rerr_limit.try_acquire()
                self.send_unicast(error, precursors[0], to_precursor.interface,
                                  ttl=1, jitter=True)
            return

        ifaces: List[InterfaceAddress] = []
        for precursor in precursors:
            to_precursor = self.routing_table.lookup_valid(precursor)
            if to_precursor is None:
                continue
            iface = self.interface(to_precursor.interface)
            if iface is not None and iface not in ifaces:
                ifaces.append(iface)
        if ifaces:
            self.rerr_limit.try_acquire()
            self.send_broadcast(error, ttl=1, interfaces=ifaces)

    # ========================================================================
    # Introspection
    # ========================================================================

    def print_routing_table(self) -> str:
        return self.routing_table.format_table(f"Routing table of {self.main_address}")

    def snapshot(self) -> List[RouteEntry]:
        return self.routing_table.snapshot()

    def __repr__(self) -> str:
        return f"<RoutingProtocol {self.main_address} routes={len(self.routing_table)}>"
