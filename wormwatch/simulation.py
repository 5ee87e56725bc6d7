"""
In-memory network simulation for wormwatch.

Simulates a multi-node ad-hoc network on a virtual clock, without real
interfaces. Nodes share one EventScheduler; a RadioNetwork delivers frames
between nodes in radio range and a WormholeTunnel can replay traffic
between two distant regions.

    n1 ── n2 ── n3 ── n4
     ╲                ╱
      ═══ tunnel ════
"""

from __future__ import annotations

import itertools
import logging
import math
import random
from collections import defaultdict
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from .config import BROADCAST_ALL, LOOPBACK, ProtocolConfig
from .exceptions import PacketParseError, ValidationError
from .packets import MessageType, decode_message, encode_message
from .protocol import RoutingProtocol
from .scheduler import EventScheduler
from .stats import EV_DATA_DELIVERED, EV_DATA_DROPPED, StatsCollector
from .transport import InterfaceAddress, IpHeader, Route, Transport

logger = logging.getLogger(__name__)

NETMASK = "255.255.0.0"
SUBNET_BROADCAST = "10.0.255.255"
DEFAULT_LATENCY = 0.001  # Seconds per radio hop


def node_address(index: int) -> str:
    """Address of the index-th simulated node (10.0.0.1, 10.0.0.2, ...)."""
    n = index + 1
    if not 0 < n < 0xFFFF:
        raise ValidationError(f"node index out of range: {index}")
    return f"10.0.{n >> 8}.{n & 0xFF}"


# =============================================================================
# Radio medium
# =============================================================================

class WormholeTunnel:
    """
    Out-of-band link between two regions of the network.

    Every frame sent by a node in one side is also heard by the nodes of
    the other side, as if they were neighbors. Requests and replies that
    cross the tunnel get their forwarded flag set so the outcome of the
    detection can be scored.
    """

    def __init__(self, side_a: Iterable[str], side_b: Iterable[str],
                 latency: float = DEFAULT_LATENCY):
        self.side_a: Set[str] = set(side_a)
        self.side_b: Set[str] = set(side_b)
        if not self.side_a or not self.side_b:
            raise ValidationError("both tunnel sides need at least one node")
        if self.side_a & self.side_b:
            raise ValidationError("tunnel sides overlap")
        self.latency = latency
        self.frames_tunneled = 0

    def far_side(self, address: str) -> Set[str]:
        """Nodes that hear `address` through the tunnel."""
        if address in self.side_a:
            return self.side_b
        if address in self.side_b:
            return self.side_a
        return set()

    def connects(self, src: str, dst: str) -> bool:
        return dst in self.far_side(src)

    def mark(self, data: bytes) -> bytes:
        """Set the forwarded flag on a request or reply; other frames pass unchanged."""
        try:
            message = decode_message(data)
        except PacketParseError:
            return data
        if message.msg_type not in (MessageType.REQUEST, MessageType.REPLY):
            return data
        message.header.forwarded = 1
        return encode_message(message.header)


class RadioNetwork:
    """
    Static radio topology on a virtual clock.

    Broadcasts reach every node in range; unicasts reach the destination
    only if it is in range (or across a tunnel). A unicast to a node out of
    range is reported to the sender's neighbor table as a transmission
    failure.
    """

    def __init__(
        self,
        scheduler: EventScheduler,
        latency: float = DEFAULT_LATENCY,
        loss_rate: float = 0.0,
        rng: Optional[random.Random] = None,
    ):
        self.scheduler = scheduler
        self.latency = latency
        self.loss_rate = loss_rate
        self.rng = rng or random.Random()
        self.nodes: Dict[str, "SimulatedNode"] = {}
        self._links: Dict[str, Set[str]] = defaultdict(set)
        self.tunnels: List[WormholeTunnel] = []

        # Statistics
        self.frames_sent = 0
        self.frames_dropped = 0
        self.bytes_sent = 0

    # ------------------------------------------------------------------
    # Topology
    # ------------------------------------------------------------------

    def attach(self, node: "SimulatedNode") -> None:
        self.nodes[node.address] = node
        self._links.setdefault(node.address, set())

    def connect(self, a: str, b: str) -> None:
        """Put a and b in radio range of each other."""
        if a == b:
            return
        self._links[a].add(b)
        self._links[b].add(a)

    def disconnect(self, a: str, b: str) -> None:
        self._links[a].discard(b)
        self._links[b].discard(a)

    def add_tunnel(self, tunnel: WormholeTunnel) -> WormholeTunnel:
        self.tunnels.append(tunnel)
        return tunnel

    def neighbors_of(self, address: str) -> Set[str]:
        return set(self._links.get(address, ()))

    def in_range(self, a: str, b: str) -> bool:
        return b in self._links.get(a, ())

    def is_connected(self) -> bool:
        """True if every attached node can reach every other over radio links."""
        if not self.nodes:
            return True
        start = next(iter(self.nodes))
        seen = {start}
        frontier = [start]
        while frontier:
            current = frontier.pop()
            for nxt in self._links[current]:
                if nxt not in seen:
                    seen.add(nxt)
                    frontier.append(nxt)
        return len(seen) == len(self.nodes)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def _lost(self) -> bool:
        if self.loss_rate > 0 and self.rng.random() < self.loss_rate:
            self.frames_dropped += 1
            return True
        return False

    def _receivers(self, src: str, destination: str) -> List[Tuple[str, Optional[WormholeTunnel]]]:
        """(receiver, tunnel or None) pairs for a frame from src."""
        broadcast = destination in (BROADCAST_ALL, SUBNET_BROADCAST)
        result: List[Tuple[str, Optional[WormholeTunnel]]] = []
        seen: Set[str] = set()
        if broadcast:
            for dst in sorted(self._links[src]):
                result.append((dst, None))
                seen.add(dst)
        elif self.in_range(src, destination):
            result.append((destination, None))
            seen.add(destination)
        for tunnel in self.tunnels:
            for dst in sorted(tunnel.far_side(src)):
                if dst in seen or dst not in self.nodes:
                    continue
                if broadcast or dst == destination:
                    result.append((dst, tunnel))
                    seen.add(dst)
        return result

    def transmit(self, src: str, data: bytes, destination: str, ttl: int) -> None:
        """Send a control frame from src."""
        self.frames_sent += 1
        self.bytes_sent += len(data)
        receivers = self._receivers(src, destination)
        if not receivers:
            self._link_failed(src, destination)
            return
        for dst, tunnel in receivers:
            if self._lost():
                continue
            frame = data
            delay = self.latency
            if tunnel is not None:
                frame = tunnel.mark(data)
                delay = tunnel.latency
                tunnel.frames_tunneled += 1
            self.scheduler.schedule_after(
                delay, self.nodes[dst].receive_control, frame, src, ttl)

    def transmit_data(self, src: str, next_hop: str, packet: Any, header: IpHeader) -> bool:
        """Send a data packet from src to the neighbor next_hop (or to all in range)."""
        receivers = self._receivers(src, next_hop)
        if not receivers:
            self._link_failed(src, next_hop)
            return False
        for dst, tunnel in receivers:
            if self._lost():
                continue
            delay = tunnel.latency if tunnel is not None else self.latency
            self.scheduler.schedule_after(
                delay, self.nodes[dst].receive_data, packet, replace(header), src)
        return True

    def _link_failed(self, src: str, destination: str) -> None:
        logger.debug(f"{src}: {destination} out of range")
        sender = self.nodes.get(src)
        if sender is not None:
            self.scheduler.schedule_after(
                0.0, sender.engine.neighbors.notify_tx_error, destination)

    def stats(self) -> Dict[str, Any]:
        return {
            "nodes": len(self.nodes),
            "links": sum(len(v) for v in self._links.values()) // 2,
            "tunnels": len(self.tunnels),
            "frames_sent": self.frames_sent,
            "frames_dropped": self.frames_dropped,
            "bytes_sent": self.bytes_sent,
        }


class RadioTransport(Transport):
    """Transport of one node onto the shared RadioNetwork."""

    def __init__(self, network: RadioNetwork, address: str):
        self.network = network
        self.address = address

    def send(self, data: bytes, destination: str, interface: InterfaceAddress, ttl: int) -> None:
        self.network.transmit(self.address, data, destination, ttl)


# =============================================================================
# Simulated node
# =============================================================================

class SimulatedNode:
    """
    One node: routing engine, transport and a minimal IP layer.

    The IP layer sends data with send_data(), forwards transit packets and
    logs what is delivered locally or dropped.
    """

    def __init__(
        self,
        address: str,
        network: RadioNetwork,
        config: Optional[ProtocolConfig] = None,
        rng: Optional[random.Random] = None,
    ):
        self.address = address
        self.network = network
        self.iface = InterfaceAddress(address, NETMASK)
        self.stats = StatsCollector(address)
        self.engine = RoutingProtocol(
            [self.iface],
            RadioTransport(network, address),
            network.scheduler,
            config=config,
            stats=self.stats,
            rng=rng,
        )
        self.delivered: List[Tuple[str, Any]] = []
        self.dropped: List[Tuple[IpHeader, Exception]] = []
        self._ids = itertools.count(1)
        network.attach(self)

    def start(self) -> None:
        self.engine.start()

    def stop(self) -> None:
        self.engine.stop()

    # ------------------------------------------------------------------
    # Receive path
    # ------------------------------------------------------------------

    def receive_control(self, data: bytes, sender: str, ttl: int) -> None:
        self.engine.recv_control(data, sender, self.address, ttl)

    def receive_data(self, packet: Any, header: IpHeader, sender: str) -> None:
        self.engine.route_input(
            packet, header, self.address,
            unicast_forward=self._unicast_forward,
            local_deliver=self._local_deliver,
            error=self._error,
        )

    # ------------------------------------------------------------------
    # IP layer callbacks
    # ------------------------------------------------------------------

    def send_data(self, destination: str, payload: Any) -> IpHeader:
        """Originate a data packet to destination."""
        header = IpHeader(source=self.address, destination=destination,
                          identification=next(self._ids))
        result = self.engine.route_output(payload, header)
        if result.error is not None:
            self._error(payload, header, result.error)
        elif result.deferred:
            self.engine.route_input(
                payload, header, LOOPBACK,
                unicast_forward=self._unicast_forward,
                local_deliver=self._local_deliver,
                error=self._error,
                deferred=True,
            )
        else:
            self._unicast_forward(result.route, payload, header)
        return header

    def _unicast_forward(self, route: Route, packet: Any, header: IpHeader) -> None:
        if header.source != self.address:
            header = replace(header, ttl=header.ttl - 1)
            if header.ttl <= 0:
                self._error(packet, header, ValidationError("ttl expired"))
                return
        if not self.network.transmit_data(self.address, route.gateway, packet, header):
            self.stats.record_event(EV_DATA_DROPPED, dst=header.destination)
            self.dropped.append((header, ValidationError(f"{route.gateway} unreachable")))

    def _local_deliver(self, packet: Any, header: IpHeader, iface: str) -> None:
        logger.debug(f"{self.address}: delivered packet {header.identification} from {header.source}")
        self.delivered.append((header.source, packet))
        self.stats.record_event(EV_DATA_DELIVERED, source=header.source)

    def _error(self, packet: Any, header: IpHeader, exc: Exception) -> None:
        logger.debug(f"{self.address}: dropped packet to {header.destination}: {exc}")
        self.dropped.append((header, exc))
        self.stats.record_event(EV_DATA_DROPPED, dst=header.destination)

    def __repr__(self) -> str:
        return f"<SimulatedNode {self.address}>"


# =============================================================================
# Simulation
# =============================================================================

@dataclass
class Simulation:
    """A built network: scheduler, medium and nodes."""

    scheduler: EventScheduler
    network: RadioNetwork
    nodes: List[SimulatedNode]
    topology: str = "custom"
    tunnel: Optional[WormholeTunnel] = None
    positions: Dict[str, Tuple[float, float]] = field(default_factory=dict)

    def node(self, address: str) -> SimulatedNode:
        return self.network.nodes[address]

    @property
    def addresses(self) -> List[str]:
        return [n.address for n in self.nodes]

    def start(self) -> None:
        for node in self.nodes:
            node.start()

    def stop(self) -> None:
        for node in self.nodes:
            node.stop()

    def run(self, duration: float) -> int:
        """Advance virtual time by duration seconds."""
        return self.scheduler.advance(duration)

    def send(self, src: int, dst: int, payload: Any = b"data") -> IpHeader:
        return self.nodes[src].send_data(self.nodes[dst].address, payload)

    def finalize(self) -> StatsCollector:
        """Score replies still held by detectors and merge all node statistics."""
        for node in self.nodes:
            node.engine.detector.finalize()
        return StatsCollector("network").merge(n.stats for n in self.nodes)


def _make_nodes(count: int, config: Optional[ProtocolConfig], seed: int,
                latency: float, loss_rate: float) -> Tuple[EventScheduler, RadioNetwork, List[SimulatedNode]]:
    if count < 2:
        raise ValidationError("a network needs at least two nodes")
    rng = random.Random(seed)
    scheduler = EventScheduler()
    network = RadioNetwork(scheduler, latency=latency, loss_rate=loss_rate,
                           rng=random.Random(rng.random()))
    nodes = []
    for i in range(count):
        node_config = replace(config) if config is not None else ProtocolConfig()
        nodes.append(SimulatedNode(node_address(i), network, node_config,
                                   rng=random.Random(rng.random())))
    return scheduler, network, nodes


def build_chain(count: int, config: Optional[ProtocolConfig] = None, seed: int = 1,
                latency: float = DEFAULT_LATENCY, loss_rate: float = 0.0) -> Simulation:
    """
    Nodes in a line, each in range of its two neighbors only.

    n1 ── n2 ── n3 ── n4
    """
    scheduler, network, nodes = _make_nodes(count, config, seed, latency, loss_rate)
    for a, b in zip(nodes, nodes[1:]):
        network.connect(a.address, b.address)
    return Simulation(scheduler, network, nodes, topology="chain")


def build_grid(rows: int, cols: int, config: Optional[ProtocolConfig] = None,
               seed: int = 1, diagonal: bool = True, latency: float = DEFAULT_LATENCY,
               loss_rate: float = 0.0) -> Simulation:
    """
    rows x cols grid, numbered row by row.

    With diagonal=True every node also reaches its diagonal neighbors,
    so adjacent nodes share common neighbors.
    """
    scheduler, network, nodes = _make_nodes(rows * cols, config, seed, latency, loss_rate)
    positions = {}
    for r in range(rows):
        for c in range(cols):
            here = nodes[r * cols + c].address
            positions[here] = (float(c), float(r))
            offsets = [(0, 1), (1, 0)]
            if diagonal:
                offsets += [(1, 1), (1, -1)]
            for dr, dc in offsets:
                rr, cc = r + dr, c + dc
                if 0 <= rr < rows and 0 <= cc < cols:
                    network.connect(here, nodes[rr * cols + cc].address)
    return Simulation(scheduler, network, nodes, topology="grid", positions=positions)


def build_random(count: int, config: Optional[ProtocolConfig] = None, seed: int = 1,
                 radius: Optional[float] = None, latency: float = DEFAULT_LATENCY,
                 loss_rate: float = 0.0, attempts: int = 50) -> Simulation:
    """
    Random geometric graph in the unit square.

    Nodes within radius of each other are in range. Positions are redrawn
    (and the radius grown) until the graph is connected. Nodes are numbered
    left to right, so the first and last node are far apart.
    """
    scheduler, network, nodes = _make_nodes(count, config, seed, latency, loss_rate)
    rng = random.Random(seed)
    if radius is None:
        radius = 1.6 * math.sqrt(math.log(count) / (math.pi * count))
    positions: Dict[str, Tuple[float, float]] = {}
    for _ in range(attempts):
        for node in nodes:
            for other in network.neighbors_of(node.address):
                network.disconnect(node.address, other)
        points = sorted((rng.random(), rng.random()) for _ in nodes)
        positions = {n.address: p for n, p in zip(nodes, points)}
        for a, b in itertools.combinations(nodes, 2):
            if math.dist(positions[a.address], positions[b.address]) <= radius:
                network.connect(a.address, b.address)
        if network.is_connected():
            break
        radius *= 1.1
    else:
        raise ValidationError(f"could not build a connected network of {count} nodes")
    logger.debug(f"Random topology: {count} nodes, radius {radius:.3f}")
    return Simulation(scheduler, network, nodes, topology="random", positions=positions)


def _grid_shape(count: int) -> Tuple[int, int]:
    cols = max(2, int(math.ceil(math.sqrt(count))))
    rows = max(1, int(math.ceil(count / cols)))
    return rows, cols


def build_topology(topology: str, count: int, config: Optional[ProtocolConfig] = None,
                   seed: int = 1) -> Simulation:
    """Build a chain, grid or random network of about count nodes."""
    if topology == "chain":
        return build_chain(count, config, seed)
    if topology == "grid":
        rows, cols = _grid_shape(count)
        return build_grid(rows, cols, config, seed)
    if topology == "random":
        return build_random(count, config, seed)
    raise ValidationError(f"unknown topology: {topology}")


def build_wormhole_scenario(topology: str = "grid", count: int = 16,
                            config: Optional[ProtocolConfig] = None,
                            seed: int = 1) -> Simulation:
    """
    Network with a tunnel between the neighborhoods of its first and last node.

    The tunnel joins the lowest numbered neighbor of the first node to the
    highest numbered neighbor of the last node, so a discovery between the
    two is pulled through it.
    """
    sim = build_topology(topology, count, config, seed)
    order = {address: i for i, address in enumerate(sim.addresses)}
    first, last = sim.nodes[0].address, sim.nodes[-1].address
    end_a = min(sim.network.neighbors_of(first), key=order.get)
    end_b = max(sim.network.neighbors_of(last), key=order.get)
    if end_a == end_b or sim.network.in_range(end_a, end_b):
        raise ValidationError(f"network of {count} nodes is too small for a tunnel")
    sim.tunnel = sim.network.add_tunnel(WormholeTunnel({end_a}, {end_b}))
    logger.info(f"Wormhole tunnel between {end_a} and {end_b}")
    return sim


def run_scenario(
    topology: str = "grid",
    count: int = 36,
    config: Optional[ProtocolConfig] = None,
    seed: int = 1,
    wormhole: bool = False,
    duration: float = 30.0,
    warmup: Optional[float] = None,
) -> Tuple[Simulation, StatsCollector]:
    """
    Build a network, let neighbor tables settle, send one packet from the
    first node to the last and run for duration seconds.

    Returns:
        The simulation and the merged statistics of all nodes
    """
    config = config or ProtocolConfig()
    if wormhole:
        sim = build_wormhole_scenario(topology, count, config, seed)
    else:
        sim = build_topology(topology, count, config, seed)
    if warmup is None:
        warmup = 2 * config.hello_interval if config.enable_hello else 0.0
    sim.start()
    sim.run(warmup)
    sim.send(0, -1, b"wormwatch probe")
    sim.run(duration)
    sim.stop()
    collector = sim.finalize()
    logger.info(
        f"Scenario {topology}/{len(sim.nodes)} nodes seed={seed} wormhole={wormhole}: "
        f"delivered={collector.stats.data_delivered}"
    )
    return sim, collector
