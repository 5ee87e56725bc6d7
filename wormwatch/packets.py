"""
Control message definitions for wormwatch.

Defines Scapy packet structures for the routing control messages: route
request, route reply (carrying the sender's neighbor list), route error,
reply acknowledgement, and the two wormhole cross-check messages. Every
message on the wire is a one-byte type tag followed by its header, all
integers big-endian.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Iterable, List, Optional, Tuple

from scapy.all import Packet, bind_layers
from scapy.error import Scapy_Exception
from scapy.fields import (
    ByteField,
    ByteEnumField,
    FieldLenField,
    FieldListField,
    IntField,
    IPField,
    PacketListField,
)

from .config import (
    MSG_REQUEST,
    MSG_REPLY,
    MSG_ERROR,
    MSG_REPLY_ACK,
    MSG_WH_CHECK,
    MSG_WH_EVIDENCE,
    MAX_ERROR_DESTINATIONS,
    MAX_NEIGHBOR_LIST,
)
from .exceptions import PacketParseError


class MessageType(IntEnum):
    REQUEST = MSG_REQUEST
    REPLY = MSG_REPLY
    ERROR = MSG_ERROR
    REPLY_ACK = MSG_REPLY_ACK
    WH_CHECK = MSG_WH_CHECK
    WH_EVIDENCE = MSG_WH_EVIDENCE


MESSAGE_NAMES = {t.value: t.name for t in MessageType}

# Flag bits
REQ_FLAG_GRATUITOUS = 1 << 5
REQ_FLAG_DEST_ONLY = 1 << 4
REQ_FLAG_UNKNOWN_SEQ = 1 << 3
REP_FLAG_ACK_REQUIRED = 1 << 6
ERR_FLAG_NO_DELETE = 1 << 0

# Header sizes without the type tag
REQUEST_SIZE = 24
REPLY_BASE_SIZE = 30
REPLY_ACK_SIZE = 1
ERROR_BASE_SIZE = 3
ERROR_ENTRY_SIZE = 8
WH_CHECK_SIZE = 12
WH_EVIDENCE_BASE_SIZE = 14


def _flag(value: int, bit: int) -> bool:
    return bool(value & bit)


def _with_flag(value: int, bit: int, on: bool) -> int:
    return (value | bit) if on else (value & ~bit & 0xFF)


class TypeHeader(Packet):
    """
    Message type tag preceding every control message.

    Fields:
        type: Message type (REQUEST..WH_EVIDENCE)
    """

    name = "TypeHeader"
    fields_desc = [
        ByteEnumField("type", MSG_REQUEST, MESSAGE_NAMES),
    ]

    @property
    def valid(self) -> bool:
        return self.type in MESSAGE_NAMES


class RequestHeader(Packet):
    """
    Route request (24 bytes).

    Fields:
        flags: bit5 gratuitous reply, bit4 destination only, bit3 unknown seqno
        reserved: Always 0
        hop_count: Hops from the originator
        request_id: Per-originator request identifier
        dst: Destination address
        dst_seq: Last known destination sequence number
        origin: Originator address
        origin_seq: Originator sequence number
        forwarded: Set when the request travelled through a tunnel
    """

    name = "RouteRequest"
    fields_desc = [
        ByteField("flags", 0),
        ByteField("reserved", 0),
        ByteField("hop_count", 0),
        IntField("request_id", 0),
        IPField("dst", "0.0.0.0"),
        IntField("dst_seq", 0),
        IPField("origin", "0.0.0.0"),
        IntField("origin_seq", 0),
        ByteField("forwarded", 0),
    ]

    @property
    def gratuitous(self) -> bool:
        return _flag(self.flags, REQ_FLAG_GRATUITOUS)

    @gratuitous.setter
    def gratuitous(self, on: bool) -> None:
        self.flags = _with_flag(self.flags, REQ_FLAG_GRATUITOUS, on)

    @property
    def destination_only(self) -> bool:
        return _flag(self.flags, REQ_FLAG_DEST_ONLY)

    @destination_only.setter
    def destination_only(self, on: bool) -> None:
        self.flags = _with_flag(self.flags, REQ_FLAG_DEST_ONLY, on)

    @property
    def unknown_seq(self) -> bool:
        return _flag(self.flags, REQ_FLAG_UNKNOWN_SEQ)

    @unknown_seq.setter
    def unknown_seq(self, on: bool) -> None:
        self.flags = _with_flag(self.flags, REQ_FLAG_UNKNOWN_SEQ, on)

    def extract_padding(self, s):
        return b"", s


class ReplyHeader(Packet):
    """
    Route reply (30 + 4n bytes).

    Besides the usual reply fields the header carries the sender's
    one-hop neighbor list, which downstream relays cross-check.

    Fields:
        flags: bit6 acknowledgement required
        prefix_size: Always 0
        hop_count: Hops from the replying node
        dst: Destination the route leads to
        dst_seq: Destination sequence number
        origin: Originator of the request being answered
        lifetime: Route lifetime in milliseconds
        neighbor_count: Number of entries in neighbors
        reply_id: Identifier of this reply
        next_node: Reserved next-node address
        forwarded: Set when the reply travelled through a tunnel
        neighbors: One-hop neighbors of the last relay
    """

    name = "RouteReply"
    fields_desc = [
        ByteField("flags", 0),
        ByteField("prefix_size", 0),
        ByteField("hop_count", 0),
        IPField("dst", "0.0.0.0"),
        IntField("dst_seq", 0),
        IPField("origin", "0.0.0.0"),
        IntField("lifetime", 0),
        FieldLenField("neighbor_count", None, count_of="neighbors", fmt="H"),
        IntField("reply_id", 0),
        IPField("next_node", "0.0.0.0"),
        ByteField("forwarded", 0),
        FieldListField(
            "neighbors", [], IPField("", "0.0.0.0"),
            count_from=lambda pkt: pkt.neighbor_count,
            max_count=MAX_NEIGHBOR_LIST,
        ),
    ]

    @property
    def ack_required(self) -> bool:
        return _flag(self.flags, REP_FLAG_ACK_REQUIRED)

    @ack_required.setter
    def ack_required(self, on: bool) -> None:
        self.flags = _with_flag(self.flags, REP_FLAG_ACK_REQUIRED, on)

    @property
    def lifetime_seconds(self) -> float:
        return self.lifetime / 1000.0

    @property
    def is_hello(self) -> bool:
        return self.dst == self.origin

    def set_neighbors(self, neighbors: Iterable[str]) -> None:
        """Replace the embedded neighbor list, keeping the count field in sync."""
        neighbors = list(neighbors)
        if len(neighbors) > MAX_NEIGHBOR_LIST:
            raise ValueError(f"neighbor list too long: {len(neighbors)}")
        self.neighbors = neighbors
        self.neighbor_count = None

    def extract_padding(self, s):
        return b"", s


class ReplyAckHeader(Packet):
    """Route reply acknowledgement (1 reserved byte)."""

    name = "RouteReplyAck"
    fields_desc = [
        ByteField("reserved", 0),
    ]

    def extract_padding(self, s):
        return b"", s


class UnreachableDestination(Packet):
    name = "UnreachableDestination"
    fields_desc = [
        IPField("address", "0.0.0.0"),
        IntField("seq", 0),
    ]

    def extract_padding(self, s):
        return b"", s


class ErrorHeader(Packet):
    """
    Route error (3 + 8n bytes).

    Fields:
        flags: bit0 no-delete
        reserved: Always 0
        dest_count: Number of unreachable destinations (at most 255)
        unreachable: (address, seq) pairs
    """

    name = "RouteError"
    fields_desc = [
        ByteField("flags", 0),
        ByteField("reserved", 0),
        FieldLenField("dest_count", None, count_of="unreachable", fmt="B"),
        PacketListField(
            "unreachable", [], UnreachableDestination,
            count_from=lambda pkt: pkt.dest_count,
            max_count=MAX_ERROR_DESTINATIONS,
        ),
    ]

    @property
    def no_delete(self) -> bool:
        return _flag(self.flags, ERR_FLAG_NO_DELETE)

    @no_delete.setter
    def no_delete(self, on: bool) -> None:
        self.flags = _with_flag(self.flags, ERR_FLAG_NO_DELETE, on)

    def add_unreachable(self, address: str, seq: int) -> bool:
        """
        Append an unreachable destination.

        Returns:
            False if the message already holds the maximum number of entries
        """
        if any(u.address == address for u in self.unreachable):
            return True
        if len(self.unreachable) >= MAX_ERROR_DESTINATIONS:
            return False
        self.unreachable = list(self.unreachable) + [
            UnreachableDestination(address=address, seq=seq & 0xFFFFFFFF)
        ]
        self.dest_count = None
        return True

    def remove_unreachable(self) -> Optional[Tuple[str, int]]:
        """Pop the first unreachable destination, if any."""
        if not self.unreachable:
            return None
        first, rest = self.unreachable[0], list(self.unreachable[1:])
        self.unreachable = rest
        self.dest_count = None
        return first.address, first.seq

    def destinations(self) -> List[Tuple[str, int]]:
        return [(u.address, u.seq) for u in self.unreachable]

    def clear(self) -> None:
        self.flags = 0
        self.unreachable = []
        self.dest_count = None

    def count(self) -> int:
        return len(self.unreachable)

    def extract_padding(self, s):
        return b"", s


class WormholeCheckHeader(Packet):
    """
    Neighbor-list cross-check request (12 bytes).

    Fields:
        check_id: Identifier of the suppressed reply being checked
        dst_seq: Destination sequence number of that reply
        origin: Originator of that reply's request
    """

    name = "WormholeCheck"
    fields_desc = [
        IntField("check_id", 0),
        IntField("dst_seq", 0),
        IPField("origin", "0.0.0.0"),
    ]

    def extract_padding(self, s):
        return b"", s


class WormholeEvidenceHeader(Packet):
    """
    Neighbor-list cross-check answer (14 + 4n bytes).

    Fields:
        check_id: Identifier copied from the check
        origin: Originator copied from the check
        neighbor_count: Number of entries in neighbors
        target: Node that sent the check
        neighbors: One-hop neighbors of the answering node
    """

    name = "WormholeEvidence"
    fields_desc = [
        IntField("check_id", 0),
        IPField("origin", "0.0.0.0"),
        FieldLenField("neighbor_count", None, count_of="neighbors", fmt="H"),
        IPField("target", "0.0.0.0"),
        FieldListField(
            "neighbors", [], IPField("", "0.0.0.0"),
            count_from=lambda pkt: pkt.neighbor_count,
            max_count=MAX_NEIGHBOR_LIST,
        ),
    ]

    def extract_padding(self, s):
        return b"", s


bind_layers(TypeHeader, RequestHeader, type=MSG_REQUEST)
bind_layers(TypeHeader, ReplyHeader, type=MSG_REPLY)
bind_layers(TypeHeader, ErrorHeader, type=MSG_ERROR)
bind_layers(TypeHeader, ReplyAckHeader, type=MSG_REPLY_ACK)
bind_layers(TypeHeader, WormholeCheckHeader, type=MSG_WH_CHECK)
bind_layers(TypeHeader, WormholeEvidenceHeader, type=MSG_WH_EVIDENCE)

HEADER_CLASSES = {
    MessageType.REQUEST: RequestHeader,
    MessageType.REPLY: ReplyHeader,
    MessageType.ERROR: ErrorHeader,
    MessageType.REPLY_ACK: ReplyAckHeader,
    MessageType.WH_CHECK: WormholeCheckHeader,
    MessageType.WH_EVIDENCE: WormholeEvidenceHeader,
}
MESSAGE_TYPES = {cls: t for t, cls in HEADER_CLASSES.items()}


@dataclass
class Message:
    """A decoded control message."""

    msg_type: int
    header: Optional[Packet]
    size: int

    @property
    def valid(self) -> bool:
        return self.header is not None


def message_type_of(header: Packet) -> MessageType:
    try:
        return MESSAGE_TYPES[type(header)]
    except KeyError:
        raise TypeError(f"not a control header: {type(header).__name__}") from None


def encode_message(header: Packet) -> bytes:
    """Serialize a control header with its type tag."""
    return bytes(TypeHeader(type=int(message_type_of(header))) / header)


def wire_size(header: Packet) -> int:
    """Encoded size of a control header including the type tag."""
    return 1 + len(bytes(header))


def _required_length(msg_type: int, body: bytes) -> int:
    """Return the body length the counts in ``body`` call for."""
    try:
        if msg_type == MSG_REQUEST:
            return REQUEST_SIZE
        if msg_type == MSG_REPLY_ACK:
            return REPLY_ACK_SIZE
        if msg_type == MSG_WH_CHECK:
            return WH_CHECK_SIZE
        if msg_type == MSG_REPLY:
            (count,) = struct.unpack_from("!H", body, 19)
            return REPLY_BASE_SIZE + 4 * count
        if msg_type == MSG_ERROR:
            (count,) = struct.unpack_from("!B", body, 2)
            return ERROR_BASE_SIZE + ERROR_ENTRY_SIZE * count
        if msg_type == MSG_WH_EVIDENCE:
            (count,) = struct.unpack_from("!H", body, 8)
            return WH_EVIDENCE_BASE_SIZE + 4 * count
    except struct.error as e:
        raise PacketParseError(f"truncated {MESSAGE_NAMES[msg_type]} header") from e
    raise PacketParseError(f"unknown message type {msg_type}")


def decode_message(data: bytes) -> Message:
    """
    Decode a control message.

    An unknown type tag is not an error: the returned message has
    ``valid`` False and no header.

    Raises:
        PacketParseError: If the buffer is empty or shorter than its header
    """
    if not data:
        raise PacketParseError("empty control message")

    msg_type = data[0]
    if msg_type not in MESSAGE_NAMES:
        return Message(msg_type=msg_type, header=None, size=len(data))

    body = data[1:]
    needed = _required_length(msg_type, body)
    if len(body) < needed:
        raise PacketParseError(
            f"{MESSAGE_NAMES[msg_type]} needs {needed} bytes, got {len(body)}"
        )

    try:
        header = HEADER_CLASSES[MessageType(msg_type)](body[:needed])
    except (Scapy_Exception, struct.error) as e:
        raise PacketParseError(f"cannot dissect {MESSAGE_NAMES[msg_type]}: {e}") from e
    header.remove_payload()
    return Message(msg_type=msg_type, header=header, size=1 + needed)


def make_request(**kwargs) -> RequestHeader:
    return RequestHeader(**kwargs)


def make_reply(neighbors: Iterable[str] = (), **kwargs) -> ReplyHeader:
    reply = ReplyHeader(**kwargs)
    reply.set_neighbors(neighbors)
    return reply
