"""
Tests for wormwatch.protocol module.
"""

import pytest

from wormwatch.config import LOOPBACK, ProtocolConfig
from wormwatch.exceptions import NoRouteError
from wormwatch.packets import (
    ErrorHeader,
    MessageType,
    ReplyAckHeader,
    encode_message,
    make_reply,
    make_request,
)
from wormwatch.routing import RouteEntry, RouteFlag, seq_next
from wormwatch.transport import IpHeader

ME = "10.0.0.5"
BCAST = "10.0.0.255"
ORIGIN = "10.0.0.1"
DEST = "10.0.0.9"


def add_route(engine, dst, next_hop, hops=1, seq=1, precursors=()):
    engine.routing_table.update(RouteEntry(
        destination=dst, next_hop=next_hop, interface=engine.main_address,
        hops=hops, seq_no=seq, valid_seq_no=True, lifetime=100.0,
        precursors=list(precursors),
    ))


def request_from(origin=ORIGIN, dst=DEST, request_id=1, hop_count=0,
                 origin_seq=1, dst_seq=0, unknown=True, **flags):
    req = make_request(origin=origin, dst=dst, request_id=request_id,
                       hop_count=hop_count, origin_seq=origin_seq, dst_seq=dst_seq)
    req.unknown_seq = unknown
    for name, value in flags.items():
        setattr(req, name, value)
    return encode_message(req)


def error_with(entries):
    error = ErrorHeader()
    for dst, seq in entries:
        error.add_unreachable(dst, seq)
    return encode_message(error)


class Recorder:
    """Collects IP layer callbacks."""

    def __init__(self):
        self.forwarded = []
        self.delivered = []
        self.errors = []

    def unicast_forward(self, route, packet, header):
        self.forwarded.append((route, packet))

    def local_deliver(self, packet, header, iface):
        self.delivered.append(packet)

    def error(self, packet, header, exc):
        self.errors.append(exc)


class TestRouteDiscovery:
    """Tests for expanding ring search."""

    def test_expanding_ring_ttls(self, make_engine, scheduler):
        """Test request TTLs grow 1, 3, 5, 7 then jump to the network diameter."""
        engine, transport, stats = make_engine()
        engine.start()
        engine.send_request(DEST)

        scheduler.advance(11.0)

        requests = transport.frames(MessageType.REQUEST)
        assert [f.ttl for f in requests] == [1, 3, 5, 7, 35, 35]
        assert all(f.destination == BCAST for f in requests)
        assert 4.71 < requests[-1].time < 4.74
        assert engine.routing_table.lookup(DEST) is None
        assert stats.stats.discoveries_failed == 1

    def test_request_fields(self, make_engine, scheduler):
        engine, transport, _ = make_engine()
        engine.send_request(DEST)
        scheduler.advance(0.02)

        req = transport.frames(MessageType.REQUEST)[0].header
        assert req.dst == DEST
        assert req.origin == ME
        assert req.unknown_seq
        assert req.gratuitous
        assert req.request_id == 1
        assert req.origin_seq == engine.seq_no == 1

        route = engine.routing_table.lookup(DEST)
        assert route.in_search

    def test_failed_discovery_drops_queued_packets(self, make_engine, scheduler):
        """Test packets waiting for a route are failed when discovery gives up."""
        engine, _, _ = make_engine()
        engine.start()
        rec = Recorder()
        header = IpHeader(source=ME, destination=DEST)

        result = engine.route_output(b"payload", header)
        assert result.deferred
        assert not result.ok
        assert engine.route_input(b"payload", header, LOOPBACK, rec.unicast_forward,
                                  rec.local_deliver, rec.error, deferred=True)

        scheduler.advance(11.0)

        assert len(rec.errors) == 1
        assert isinstance(rec.errors[0], NoRouteError)
        assert rec.forwarded == []

    def test_reply_completes_discovery(self, make_engine, scheduler):
        """Test a reply for our own request installs the route and releases the queue."""
        engine, transport, stats = make_engine()
        engine.start()
        rec = Recorder()
        header = IpHeader(source=ME, destination=DEST)
        engine.route_output(b"payload", header)
        engine.route_input(b"payload", header, LOOPBACK, rec.unicast_forward,
                           rec.local_deliver, rec.error, deferred=True)
        scheduler.advance(0.1)

        reply = make_reply(dst=DEST, origin=ME, dst_seq=3, hop_count=1, lifetime=11200)
        engine.recv_control(encode_message(reply), "10.0.0.2", ME, ttl=1)

        route = engine.routing_table.lookup_valid(DEST)
        assert route is not None
        assert route.next_hop == "10.0.0.2"
        assert route.hops == 2
        assert route.seq_no == 3
        assert len(rec.forwarded) == 1
        assert rec.forwarded[0][0].gateway == "10.0.0.2"
        assert stats.stats.routes_established == 1

        sent = len(transport.frames(MessageType.REQUEST))
        scheduler.advance(5.0)
        assert len(transport.frames(MessageType.REQUEST)) == sent

    def test_reply_route_update_rules(self, make_engine):
        """Test a reply replaces a route only if fresher or shorter."""
        engine, _, _ = make_engine()
        add_route(engine, DEST, "10.0.0.6", hops=3, seq=5)

        older = make_reply(dst=DEST, origin=ME, dst_seq=4, hop_count=0, lifetime=5000)
        engine.recv_control(encode_message(older), "10.0.0.2", ME)
        assert engine.routing_table.lookup(DEST).next_hop == "10.0.0.6"

        shorter = make_reply(dst=DEST, origin=ME, dst_seq=5, hop_count=0, lifetime=5000)
        engine.recv_control(encode_message(shorter), "10.0.0.2", ME)
        route = engine.routing_table.lookup(DEST)
        assert route.next_hop == "10.0.0.2"
        assert route.hops == 1

        newer = make_reply(dst=DEST, origin=ME, dst_seq=6, hop_count=4, lifetime=5000)
        engine.recv_control(encode_message(newer), "10.0.0.7", ME)
        route = engine.routing_table.lookup(DEST)
        assert route.next_hop == "10.0.0.7"
        assert route.hops == 5


class TestRequests:
    """Tests for route request handling."""

    def test_rebroadcast_and_duplicate(self, make_engine, scheduler):
        """Test a request is rebroadcast once with a decremented TTL."""
        engine, transport, stats = make_engine()
        data = request_from()

        engine.recv_control(data, ORIGIN, ME, ttl=5)
        engine.recv_control(data, ORIGIN, ME, ttl=5)
        scheduler.advance(0.02)

        requests = transport.frames(MessageType.REQUEST)
        assert len(requests) == 1
        assert requests[0].ttl == 4
        assert requests[0].destination == BCAST
        assert requests[0].header.hop_count == 1
        assert stats.stats.duplicate_requests == 1

        reverse = engine.routing_table.lookup(ORIGIN)
        assert reverse.is_valid
        assert reverse.next_hop == ORIGIN
        assert reverse.hops == 1
        assert ORIGIN in engine.neighbors

    def test_ttl_exhausted(self, make_engine, scheduler):
        engine, transport, _ = make_engine()
        engine.recv_control(request_from(), ORIGIN, ME, ttl=1)
        scheduler.advance(0.02)
        assert transport.frames() == []

    def test_reverse_route_through_relay(self, make_engine, scheduler):
        engine, _, _ = make_engine()
        engine.recv_control(request_from(hop_count=2, origin_seq=9), "10.0.0.2", ME, ttl=5)

        reverse = engine.routing_table.lookup(ORIGIN)
        assert reverse.next_hop == "10.0.0.2"
        assert reverse.hops == 3
        assert reverse.seq_no == 9
        assert reverse.valid_seq_no

    def test_destination_replies(self, make_engine, scheduler):
        """Test the destination answers with a reply along the reverse route."""
        engine, transport, _ = make_engine()
        engine.recv_control(request_from(dst=ME, hop_count=2), "10.0.0.2", ME, ttl=5)
        scheduler.advance(0.02)

        replies = transport.frames(MessageType.REPLY)
        assert len(replies) == 1
        assert replies[0].destination == "10.0.0.2"
        assert replies[0].ttl == 3
        reply = replies[0].header
        assert reply.dst == ME
        assert reply.origin == ORIGIN
        assert reply.hop_count == 0
        assert reply.lifetime == 11200
        assert transport.frames(MessageType.REQUEST) == []

    def test_destination_bumps_sequence_number(self, make_engine, scheduler):
        engine, transport, _ = make_engine()
        expected = seq_next(engine.seq_no)
        engine.recv_control(
            request_from(dst=ME, dst_seq=expected, unknown=False), ORIGIN, ME, ttl=5)

        assert engine.seq_no == expected
        assert transport.frames(MessageType.REPLY)[0].header.dst_seq == expected

    def test_request_from_next_hop_dropped(self, make_engine, scheduler):
        """Test a request from our own next hop toward its destination is dropped."""
        engine, transport, _ = make_engine()
        add_route(engine, DEST, ORIGIN, hops=2, seq=4)

        engine.recv_control(request_from(), ORIGIN, ME, ttl=5)
        scheduler.advance(0.02)
        assert transport.frames() == []

    def test_intermediate_reply(self, make_engine, scheduler):
        """Test a node with a fresh route answers for the destination."""
        engine, transport, _ = make_engine()
        add_route(engine, DEST, DEST, hops=1, seq=10)

        engine.recv_control(
            request_from(dst_seq=8, unknown=False, gratuitous=True), ORIGIN, ME, ttl=5)
        scheduler.advance(0.02)

        replies = transport.frames(MessageType.REPLY)
        assert [f.destination for f in replies] == [ORIGIN, DEST]

        reply = replies[0].header
        assert reply.dst == DEST
        assert reply.dst_seq == 10
        assert reply.origin == ORIGIN
        assert reply.hop_count == 1
        assert reply.ack_required

        grat = replies[1].header
        assert grat.dst == ORIGIN
        assert grat.origin == DEST
        assert grat.hop_count == 1

        assert ORIGIN in engine.routing_table.lookup(DEST).precursors
        assert DEST in engine.routing_table.lookup(ORIGIN).precursors
        assert transport.frames(MessageType.REQUEST) == []

    def test_missing_ack_blacklists_neighbor(self, make_engine, scheduler):
        """Test an unacknowledged reply marks the link unidirectional."""
        engine, transport, _ = make_engine()
        add_route(engine, DEST, DEST, hops=1, seq=10)
        engine.recv_control(request_from(dst_seq=8, unknown=False), ORIGIN, ME, ttl=5)

        scheduler.advance(0.1)
        assert engine.routing_table.lookup(ORIGIN).is_unidirectional(scheduler.now())

        transport.clear()
        engine.recv_control(request_from(request_id=2), ORIGIN, ME, ttl=5)
        scheduler.advance(0.02)
        assert transport.frames() == []

    def test_ack_cancels_blacklisting(self, make_engine, scheduler):
        engine, _, _ = make_engine()
        add_route(engine, DEST, DEST, hops=1, seq=10)
        engine.recv_control(request_from(dst_seq=8, unknown=False), ORIGIN, ME, ttl=5)
        engine.recv_control(encode_message(ReplyAckHeader()), ORIGIN, ME)

        scheduler.advance(0.1)
        assert not engine.routing_table.lookup(ORIGIN).is_unidirectional(scheduler.now())

    def test_destination_only_forces_rebroadcast(self, make_engine, scheduler):
        engine, transport, _ = make_engine()
        add_route(engine, DEST, DEST, hops=1, seq=10)

        engine.recv_control(
            request_from(dst_seq=8, unknown=False, destination_only=True), ORIGIN, ME, ttl=5)
        scheduler.advance(0.02)

        assert transport.frames(MessageType.REPLY) == []
        forwarded = transport.frames(MessageType.REQUEST)[0].header
        assert forwarded.dst_seq == 10
        assert not forwarded.unknown_seq

    def test_ack_requested_by_reply(self, make_engine, scheduler):
        engine, transport, _ = make_engine()
        reply = make_reply(dst=DEST, origin=ME, dst_seq=1, lifetime=3000)
        reply.ack_required = True
        engine.recv_control(encode_message(reply), "10.0.0.2", ME)

        acks = transport.frames(MessageType.REPLY_ACK)
        assert len(acks) == 1
        assert acks[0].destination == "10.0.0.2"
        assert acks[0].ttl == 1


class TestRateLimits:
    """Tests for request and error rate limiting."""

    def test_rreq_rate_limit(self, make_engine, scheduler):
        """Test the eleventh request in a second waits for the next window."""
        engine, transport, stats = make_engine()
        engine.start()
        targets = [f"10.0.0.{20 + i}" for i in range(11)]
        for dst in targets:
            engine.send_request(dst)

        scheduler.run_until(0.1)
        sent = {f.header.dst for f in transport.frames(MessageType.REQUEST)}
        assert len(transport.frames(MessageType.REQUEST)) == 10
        assert targets[-1] not in sent
        assert stats.stats.rreq_rate_limited >= 1

        scheduler.run_until(2.5)
        sent = {f.header.dst for f in transport.frames(MessageType.REQUEST)}
        assert targets[-1] in sent

    def test_rerr_rate_limit(self, make_engine, scheduler):
        engine, transport, stats = make_engine()
        engine.start()
        for i in range(11):
            engine.send_rerr_when_no_route_to_forward(f"10.0.0.{20 + i}", 0, "10.0.1.1")

        assert len(transport.frames(MessageType.ERROR)) == 10
        assert stats.stats.rerr_rate_limited == 1

        scheduler.advance(1.0)
        engine.send_rerr_when_no_route_to_forward("10.0.0.40", 0, "10.0.1.1")
        assert len(transport.frames(MessageType.ERROR)) == 11


class TestRouteErrors:
    """Tests for route error generation and handling."""

    def test_link_break_error_split(self, make_engine, scheduler):
        """Test more than 255 broken destinations are split over two messages."""
        engine, transport, _ = make_engine()
        broken = "10.0.0.6"
        precursor = "10.0.0.3"
        add_route(engine, precursor, precursor)
        add_route(engine, broken, broken, precursors=[precursor])
        for i in range(300):
            add_route(engine, f"10.0.{1 + i // 200}.{i % 200 + 1}", broken,
                      hops=2, precursors=[precursor])

        engine.send_rerr_when_breaks_link_to_next_hop(broken)
        scheduler.advance(0.02)

        errors = transport.frames(MessageType.ERROR)
        assert [f.header.count() for f in errors] == [255, 46]
        assert all(f.destination == precursor for f in errors)
        listed = {dst for f in errors for dst, _ in f.header.destinations()}
        assert len(listed) == 301
        assert broken in listed

        assert engine.routing_table.lookup(broken).flag == RouteFlag.INVALID
        assert engine.routing_table.lookup("10.0.1.1").flag == RouteFlag.INVALID
        assert engine.routing_table.lookup(precursor).is_valid

    def test_link_break_without_precursors_is_silent(self, make_engine, scheduler):
        engine, transport, _ = make_engine()
        add_route(engine, "10.0.0.6", "10.0.0.6")
        add_route(engine, DEST, "10.0.0.6", hops=2)

        engine.send_rerr_when_breaks_link_to_next_hop("10.0.0.6")
        scheduler.advance(0.02)

        assert transport.frames() == []
        assert not engine.routing_table.lookup(DEST).is_valid

    def test_recv_error_affects_only_routes_via_sender(self, make_engine, scheduler):
        engine, transport, _ = make_engine()
        add_route(engine, "10.0.0.3", "10.0.0.3")
        add_route(engine, "10.0.0.20", "10.0.0.6", hops=2, precursors=["10.0.0.3"])
        add_route(engine, "10.0.0.21", "10.0.0.7", hops=2)

        error = error_with([("10.0.0.20", 7), ("10.0.0.21", 7)])
        engine.recv_control(error, "10.0.0.6", ME)
        scheduler.advance(0.02)

        first = engine.routing_table.lookup("10.0.0.20")
        assert first.flag == RouteFlag.INVALID
        assert first.seq_no == 7
        assert engine.routing_table.lookup("10.0.0.21").is_valid

        errors = transport.frames(MessageType.ERROR)
        assert len(errors) == 1
        assert errors[0].destination == "10.0.0.3"
        assert errors[0].header.destinations() == [("10.0.0.20", 7)]

    def test_full_error_message_received(self, make_engine, scheduler):
        """Test an error carrying the maximum number of destinations is processed."""
        engine, _, stats = make_engine()
        entries = [(f"10.0.{1 + i // 200}.{i % 200 + 1}", 2) for i in range(255)]
        for dst, _ in entries:
            add_route(engine, dst, "10.0.0.6", hops=2)

        engine.recv_control(error_with(entries), "10.0.0.6", ME)

        assert stats.stats.parse_errors == 0
        assert engine.routing_table.lookup("10.0.1.1").flag == RouteFlag.INVALID
        assert engine.routing_table.lookup("10.0.2.55").flag == RouteFlag.INVALID

    def test_no_route_to_forward(self, make_engine, scheduler):
        """Test a transit packet without a route is failed and reported."""
        engine, transport, _ = make_engine()
        rec = Recorder()
        header = IpHeader(source=ORIGIN, destination=DEST)

        consumed = engine.route_input(b"x", header, ME, rec.unicast_forward,
                                      rec.local_deliver, rec.error)

        assert not consumed
        assert isinstance(rec.errors[0], NoRouteError)
        errors = transport.frames(MessageType.ERROR)
        assert errors[0].destination == BCAST
        assert errors[0].header.destinations() == [(DEST, 0)]


class TestDataPlane:
    """Tests for route_output and route_input."""

    def test_route_output_with_valid_route(self, make_engine, scheduler):
        engine, _, _ = make_engine()
        add_route(engine, DEST, "10.0.0.6", hops=2)

        result = engine.route_output(b"x", IpHeader(source=ME, destination=DEST))

        assert result.ok
        assert result.route.gateway == "10.0.0.6"
        assert result.route.source == ME

    def test_local_delivery(self, make_engine):
        engine, _, _ = make_engine()
        rec = Recorder()
        header = IpHeader(source=ORIGIN, destination=ME)

        assert engine.route_input(b"hi", header, ME, rec.unicast_forward,
                                  rec.local_deliver, rec.error)
        assert rec.delivered == [b"hi"]

    def test_forward_along_route(self, make_engine):
        engine, _, _ = make_engine()
        add_route(engine, DEST, "10.0.0.6", hops=2)
        rec = Recorder()

        assert engine.route_input(b"x", IpHeader(source=ORIGIN, destination=DEST), ME,
                                  rec.unicast_forward, rec.local_deliver, rec.error)
        assert rec.forwarded[0][0].gateway == "10.0.0.6"

    def test_duplicate_broadcast_delivered_once(self, make_engine):
        engine, _, _ = make_engine()
        rec = Recorder()
        header = IpHeader(source=ORIGIN, destination=BCAST, identification=3)

        for _ in range(2):
            engine.route_input(b"b", header, ME, rec.unicast_forward,
                               rec.local_deliver, rec.error)
        assert rec.delivered == [b"b"]

    def test_own_packet_ignored(self, make_engine):
        engine, _, _ = make_engine()
        rec = Recorder()
        assert engine.route_input(b"x", IpHeader(source=ME, destination=DEST), ME,
                                  rec.unicast_forward, rec.local_deliver, rec.error)
        assert rec.forwarded == rec.delivered == rec.errors == []


class TestHello:
    """Tests for hello messages and neighbor expiry."""

    def test_periodic_hello(self, make_engine, scheduler):
        """Test a hello goes out shortly after start and every interval."""
        engine, transport, _ = make_engine(config=ProtocolConfig())
        engine.start()

        scheduler.run_until(1.12)

        hellos = transport.frames(MessageType.REPLY)
        assert len(hellos) == 2
        assert transport.frames(MessageType.REQUEST) == []
        for frame in hellos:
            assert frame.destination == BCAST
            assert frame.ttl == 1
            assert frame.header.is_hello
            assert frame.header.dst == ME
            assert frame.header.lifetime == 2000

    def test_broadcast_defers_hello(self, make_engine, scheduler):
        engine, transport, _ = make_engine(config=ProtocolConfig())
        engine.start()
        scheduler.run_until(0.2)
        engine.send_request(DEST)

        scheduler.run_until(1.12)
        assert len(transport.frames(MessageType.REPLY)) == 1

        # Hellos resume once discovery stops broadcasting
        scheduler.run_until(8.0)
        assert len(transport.frames(MessageType.REPLY)) > 1

    def test_hello_installs_neighbor(self, make_engine, scheduler):
        engine, _, stats = make_engine(config=ProtocolConfig())
        hello = make_reply(dst="10.0.0.6", origin="10.0.0.6", dst_seq=4, lifetime=2000)
        engine.recv_control(encode_message(hello), "10.0.0.6", ME)

        assert "10.0.0.6" in engine.neighbors
        route = engine.routing_table.lookup("10.0.0.6")
        assert route.is_valid
        assert route.hops == 1
        assert route.seq_no == 4
        assert stats.stats.hellos_received == 1

    def test_lost_neighbor_triggers_error(self, make_engine, scheduler):
        """Test a neighbor that stops sending hellos is reported to precursors."""
        engine, transport, _ = make_engine(config=ProtocolConfig())
        neighbor = "10.0.0.6"
        precursor = "10.0.0.3"
        add_route(engine, precursor, precursor)
        add_route(engine, neighbor, neighbor)
        add_route(engine, DEST, neighbor, hops=2, precursors=[precursor])
        engine.start()

        hello = make_reply(dst=neighbor, origin=neighbor, dst_seq=1, lifetime=2000)
        engine.recv_control(encode_message(hello), neighbor, ME)
        scheduler.run_until(3.05)

        assert neighbor not in engine.neighbors
        errors = transport.frames(MessageType.ERROR)
        assert len(errors) == 1
        assert errors[0].destination == precursor
        assert {d for d, _ in errors[0].header.destinations()} == {neighbor, DEST}
        assert not engine.routing_table.lookup(DEST).is_valid


class TestControlInput:
    """Tests for recv_control input checks."""

    def test_malformed_message(self, make_engine):
        engine, _, stats = make_engine()
        engine.recv_control(b"\x01\x00", ORIGIN, ME)
        assert stats.stats.parse_errors == 1

    def test_unknown_type(self, make_engine):
        engine, _, stats = make_engine()
        engine.recv_control(b"\x09abc", ORIGIN, ME)
        assert stats.stats.invalid_messages == 1

    def test_own_messages_ignored(self, make_engine, scheduler):
        engine, transport, stats = make_engine()
        engine.recv_control(request_from(origin=ME), ME, ME, ttl=5)
        scheduler.advance(0.02)
        assert transport.frames() == []
        assert stats.stats.control_received == 0

    def test_unknown_interface_ignored(self, make_engine):
        engine, _, stats = make_engine()
        engine.recv_control(request_from(), ORIGIN, "192.168.9.9", ttl=5)
        assert stats.stats.control_received == 0

    def test_any_control_message_refreshes_neighbor(self, make_engine):
        """Test replies, errors and acks all mark their sender as a live neighbor."""
        engine, _, _ = make_engine()
        reply = make_reply(dst=DEST, origin=ORIGIN, dst_seq=3, hop_count=1, lifetime=2000)
        engine.recv_control(encode_message(reply), "10.0.0.2", ME, ttl=5)
        engine.recv_control(error_with([(DEST, 4)]), "10.0.0.3", ME)
        engine.recv_control(encode_message(ReplyAckHeader()), "10.0.0.4", ME)
        engine.recv_control(b"\x02\x00", "10.0.0.6", ME)

        assert engine.neighbors.list() == ["10.0.0.2", "10.0.0.3", "10.0.0.4"]


class TestLifecycle:
    """Tests for start, stop and interfaces."""

    def test_stop_drops_pending_sends(self, make_engine, scheduler):
        engine, transport, _ = make_engine()
        engine.start()
        engine.send_request(DEST)
        engine.stop()

        scheduler.advance(11.0)
        assert transport.frames() == []
        assert not engine.running

    def test_stop_cancels_rate_limited_request(self, make_engine, scheduler):
        """Test a request waiting on the rate limit does not outlive the engine."""
        engine, transport, _ = make_engine(config=ProtocolConfig(rreq_rate_limit=1))
        engine.start()
        engine.send_request(DEST)
        engine.send_request("10.0.0.10")
        engine.stop()

        assert scheduler.run(max_events=100) < 100
        assert scheduler.pending() == 0
        assert transport.frames() == []

        engine.send_request("10.0.0.11")
        assert scheduler.pending() == 0

    def test_broadcast_route_installed(self, make_engine):
        engine, _, _ = make_engine()
        route = engine.routing_table.lookup(BCAST)
        assert route is not None
        assert route.is_valid

    def test_interface_down(self, make_engine):
        engine, _, _ = make_engine()
        add_route(engine, DEST, "10.0.0.6")
        engine.notify_interface_down(ME)

        assert engine.interfaces == []
        assert engine.routing_table.lookup(DEST) is None
        assert engine.main_address == "0.0.0.0"

    def test_repr_and_table(self, make_engine):
        engine, _, _ = make_engine()
        add_route(engine, DEST, "10.0.0.6")
        assert ME in repr(engine)
        assert DEST in engine.print_routing_table()
        assert any(r.destination == DEST for r in engine.snapshot())
