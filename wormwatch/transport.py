"""
Transport and IP-layer types for wormwatch.

InterfaceAddress describes one routing interface (local address and
netmask). IpHeader and Route are the IP-layer views the engine exchanges
with its host stack. UdpTransport carries control messages over real UDP
sockets on the well-known port; the in-memory network in simulation.py
implements the same send() interface.
"""

from __future__ import annotations

import ipaddress
import logging
import select
import socket
import struct
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from .config import AODV_PORT, BROADCAST_ALL, DEFAULT_IP_TTL
from .exceptions import InterfaceError, InvalidAddressError, TransportError

logger = logging.getLogger(__name__)

PROTO_UDP = 17


def validate_address(value: str) -> str:
    """
    Normalize a dotted-quad IPv4 address.

    Raises:
        InvalidAddressError: If value is not an IPv4 address
    """
    try:
        return str(ipaddress.IPv4Address(value))
    except (ipaddress.AddressValueError, ValueError, TypeError):
        raise InvalidAddressError(value) from None


def is_multicast(address: str) -> bool:
    return ipaddress.IPv4Address(address).is_multicast


@dataclass(frozen=True)
class InterfaceAddress:
    """A local interface address with its netmask."""

    local: str
    netmask: str = "255.255.255.0"

    def __post_init__(self):
        validate_address(self.local)
        validate_address(self.netmask)

    @property
    def network(self) -> ipaddress.IPv4Network:
        return ipaddress.IPv4Network(f"{self.local}/{self.netmask}", strict=False)

    @property
    def broadcast(self) -> str:
        """Subnet-directed broadcast, or the limited broadcast for a /32."""
        if self.netmask == "255.255.255.255":
            return BROADCAST_ALL
        return str(self.network.broadcast_address)

    def contains(self, address: str) -> bool:
        return ipaddress.IPv4Address(address) in self.network

    def is_broadcast(self, address: str) -> bool:
        return address == BROADCAST_ALL or address == self.broadcast

    @classmethod
    def parse(cls, spec: str) -> "InterfaceAddress":
        """Parse "10.0.0.1/24" (or a bare address, taken as /24)."""
        try:
            iface = ipaddress.IPv4Interface(spec if "/" in spec else f"{spec}/24")
        except (ipaddress.AddressValueError, ipaddress.NetmaskValueError, ValueError):
            raise InvalidAddressError(spec) from None
        return cls(str(iface.ip), str(iface.netmask))


@dataclass
class IpHeader:
    """The parts of an IPv4 header the routing engine looks at."""

    source: str
    destination: str
    ttl: int = DEFAULT_IP_TTL
    protocol: int = PROTO_UDP
    identification: int = 0
    dst_port: Optional[int] = None


@dataclass
class Route:
    """Result of a successful route lookup."""

    destination: str
    source: str
    gateway: str
    interface: str


class Transport:
    """
    Control-message transport.

    send() delivers an encoded control message to a unicast neighbor or a
    broadcast address out of one interface with the given IP TTL.
    """

    def send(self, data: bytes, destination: str, interface: InterfaceAddress, ttl: int) -> None:
        raise NotImplementedError


class UdpTransport(Transport):
    """
    Control messages over UDP port 654.

    Each interface gets a unicast socket bound to its local address and a
    second socket bound to its subnet broadcast address.
    """

    def __init__(self, interfaces: List[InterfaceAddress], port: int = AODV_PORT):
        if not interfaces:
            raise InterfaceError("at least one interface is required")
        self.interfaces = list(interfaces)
        self.port = port
        self._unicast: Dict[str, socket.socket] = {}
        self._receivers: Dict[socket.socket, InterfaceAddress] = {}

    def open(self) -> None:
        for iface in self.interfaces:
            try:
                uni = self._make_socket((iface.local, self.port))
                bcast = self._make_socket((iface.broadcast, self.port))
            except OSError as e:
                self.close()
                raise InterfaceError(f"cannot bind {iface.local}:{self.port}: {e}") from e
            self._unicast[iface.local] = uni
            self._receivers[uni] = iface
            self._receivers[bcast] = iface
            logger.info(f"Listening on {iface.local}:{self.port} (broadcast {iface.broadcast})")

    @staticmethod
    def _make_socket(bind_to: Tuple[str, int]) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        if hasattr(socket, "IP_RECVTTL"):
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_RECVTTL, 1)
        sock.setblocking(False)
        sock.bind(bind_to)
        return sock

    def close(self) -> None:
        for sock in self._receivers:
            sock.close()
        self._receivers.clear()
        self._unicast.clear()

    def send(self, data: bytes, destination: str, interface: InterfaceAddress, ttl: int) -> None:
        sock = self._unicast.get(interface.local)
        if sock is None:
            raise InterfaceError(f"no socket for interface {interface.local}")
        try:
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_TTL, max(1, ttl))
            sock.sendto(data, (destination, self.port))
        except OSError as e:
            raise TransportError(f"send to {destination} failed: {e}") from e

    def poll(self, timeout: float) -> List[Tuple[bytes, str, str, int]]:
        """
        Wait up to timeout seconds for control messages.

        Returns:
            (data, sender, receiving interface address, ttl) tuples
        """
        if not self._receivers:
            return []
        readable, _, _ = select.select(list(self._receivers), [], [], max(0.0, timeout))
        own = {iface.local for iface in self.interfaces}
        received = []
        for sock in readable:
            try:
                data, ancdata, _, (sender, _) = sock.recvmsg(65535, socket.CMSG_SPACE(4))
            except OSError as e:
                logger.debug(f"recvmsg failed: {e}")
                continue
            if sender in own:
                continue
            ttl = 1
            for level, ctype, cdata in ancdata:
                if level == socket.IPPROTO_IP and len(cdata) >= 4:
                    (ttl,) = struct.unpack("=i", cdata[:4])
            received.append((data, sender, self._receivers[sock].local, ttl))
        return received


def serve(
    engine,
    transport: UdpTransport,
    duration: Optional[float] = None,
    clock: Callable[[], float] = time.monotonic,
) -> None:
    """
    Drive an engine from real sockets and the wall clock.

    The engine's scheduler runs on a clock that starts at zero when
    serving begins.
    """
    scheduler = engine.scheduler
    base = clock() - scheduler.now()
    engine.start()
    try:
        while True:
            now = clock() - base
            if duration is not None and now >= duration:
                break
            scheduler.run_until(now)
            deadline = scheduler.next_deadline()
            timeout = 0.5 if deadline is None else min(0.5, deadline - now)
            for data, sender, receiver, ttl in transport.poll(timeout):
                engine.recv_control(data, sender, receiver, ttl)
    finally:
        engine.stop()
