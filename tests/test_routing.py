"""
Tests for wormwatch.routing module.
"""

import pytest

from wormwatch.routing import (
    RouteEntry,
    RouteFlag,
    RoutingTable,
    seq_diff,
    seq_max,
    seq_newer,
    seq_next,
)
from wormwatch.scheduler import EventScheduler


def _entry(dst, next_hop="10.0.0.2", lifetime=10.0, **kw):
    return RouteEntry(destination=dst, next_hop=next_hop, interface="10.0.0.1",
                      lifetime=lifetime, **kw)


@pytest.fixture
def table():
    sched = EventScheduler()
    return RoutingTable(sched.now, bad_link_lifetime=15.0), sched


class TestSequenceNumbers:
    """Wrap-around sequence number comparison."""

    def test_simple_ordering(self):
        assert seq_newer(5, 4)
        assert not seq_newer(4, 5)
        assert not seq_newer(4, 4)
        assert seq_diff(10, 3) == 7

    def test_wraparound(self):
        assert seq_newer(0, 0xFFFFFFFF)
        assert seq_diff(2, 0xFFFFFFFE) == 4
        assert seq_max(1, 0xFFFFFFF0) == 1

    def test_next_wraps(self):
        assert seq_next(0xFFFFFFFF) == 0
        assert seq_next(7) == 8


class TestRouteEntry:
    """Tests for RouteEntry."""

    def test_precursors_unique(self):
        e = _entry("10.0.0.9")
        assert e.insert_precursor("10.0.0.3")
        assert not e.insert_precursor("10.0.0.3")
        assert e.precursors == ["10.0.0.3"]
        assert e.delete_precursor("10.0.0.3")
        assert not e.has_precursors()

    def test_extend_lifetime_never_shortens(self):
        e = _entry("10.0.0.9", lifetime=20.0)
        e.extend_lifetime(now=5.0, duration=3.0)
        assert e.lifetime == 20.0
        e.extend_lifetime(now=5.0, duration=30.0)
        assert e.lifetime == 35.0

    def test_invalidate(self):
        e = _entry("10.0.0.9", rreq_count=2)
        e.invalidate(now=1.0, bad_link_lifetime=15.0)

        assert e.flag == RouteFlag.INVALID
        assert e.lifetime == 16.0
        assert e.rreq_count == 0

    def test_blacklist_window(self):
        e = _entry("10.0.0.9", blacklisted=True, blacklist_until=5.0)
        assert e.is_unidirectional(4.9)
        assert not e.is_unidirectional(5.0)


class TestRoutingTable:
    """Tests for RoutingTable."""

    def test_add_and_lookup(self, table):
        rt, _ = table
        assert rt.add(_entry("10.0.0.9", hops=3))
        assert not rt.add(_entry("10.0.0.9", hops=1))

        found = rt.lookup("10.0.0.9")
        assert found.hops == 3
        assert "10.0.0.9" in rt
        assert len(rt) == 1

    def test_lookup_returns_copy(self, table):
        rt, _ = table
        rt.add(_entry("10.0.0.9"))

        copy = rt.lookup("10.0.0.9")
        copy.hops = 7
        copy.insert_precursor("10.0.0.3")

        stored = rt.lookup("10.0.0.9")
        assert stored.hops == 1
        assert stored.precursors == []

    def test_update_writes_back(self, table):
        rt, _ = table
        rt.add(_entry("10.0.0.9"))
        e = rt.lookup("10.0.0.9")
        e.hops = 4
        rt.update(e)

        assert rt.lookup("10.0.0.9").hops == 4

    def test_rreq_count_kept_only_while_searching(self, table):
        rt, _ = table
        rt.add(_entry("10.0.0.9", flag=RouteFlag.IN_SEARCH, rreq_count=1))
        assert rt.lookup("10.0.0.9").rreq_count == 1

        e = rt.lookup("10.0.0.9")
        e.flag = RouteFlag.VALID
        rt.update(e)
        assert rt.lookup("10.0.0.9").rreq_count == 0

    def test_lookup_valid(self, table):
        rt, _ = table
        rt.add(_entry("10.0.0.9", flag=RouteFlag.IN_SEARCH))
        assert rt.lookup_valid("10.0.0.9") is None
        assert rt.lookup("10.0.0.9") is not None

    def test_expiry_lifecycle(self, table):
        rt, sched = table
        rt.add(_entry("10.0.0.9", lifetime=2.0))

        sched.run_until(2.5)
        e = rt.lookup("10.0.0.9")
        assert e.flag == RouteFlag.INVALID
        assert e.lifetime == pytest.approx(17.5)

        sched.run_until(18.0)
        assert rt.lookup("10.0.0.9") is None

    def test_in_search_routes_not_expired(self, table):
        rt, sched = table
        rt.add(_entry("10.0.0.9", lifetime=1.0, flag=RouteFlag.IN_SEARCH))
        sched.run_until(5.0)
        assert rt.lookup("10.0.0.9").in_search

    def test_routes_with_next_hop(self, table):
        rt, _ = table
        rt.add(_entry("10.0.0.9", next_hop="10.0.0.2", seq_no=4))
        rt.add(_entry("10.0.0.10", next_hop="10.0.0.2", seq_no=6))
        rt.add(_entry("10.0.0.11", next_hop="10.0.0.3"))
        rt.add(_entry("10.0.0.12", next_hop="10.0.0.2", flag=RouteFlag.INVALID))

        assert rt.routes_with_next_hop("10.0.0.2") == {"10.0.0.9": 4, "10.0.0.10": 6}

    def test_invalidate_all(self, table):
        rt, _ = table
        rt.add(_entry("10.0.0.9", seq_no=4))
        rt.add(_entry("10.0.0.10", seq_no=6))

        rt.invalidate_all({"10.0.0.9": 5})

        e = rt.lookup("10.0.0.9")
        assert e.flag == RouteFlag.INVALID
        assert e.seq_no == 5
        assert rt.lookup("10.0.0.10").is_valid

    def test_mark_unidirectional(self, table):
        rt, sched = table
        rt.add(_entry("10.0.0.2", lifetime=100.0))
        assert rt.mark_unidirectional("10.0.0.2", 3.0)
        assert rt.lookup("10.0.0.2").is_unidirectional(sched.now())

        sched.run_until(3.5)
        assert not rt.lookup("10.0.0.2").blacklisted
        assert not rt.mark_unidirectional("10.0.0.99", 3.0)

    def test_delete_routes_from_interface(self, table):
        rt, _ = table
        rt.add(_entry("10.0.0.9"))
        rt.add(RouteEntry("10.0.1.9", "10.0.1.2", "10.0.1.1", lifetime=10.0))

        assert rt.delete_routes_from_interface("10.0.0.1") == 1
        assert rt.destinations() == ["10.0.1.9"]

    def test_format_and_stats(self, table):
        rt, _ = table
        rt.add(_entry("10.0.0.9"))
        rt.add(_entry("10.0.0.10", flag=RouteFlag.IN_SEARCH))

        text = rt.format_table("Routes")
        assert text.startswith("[Routes]")
        assert "10.0.0.9" in text
        assert rt.stats() == {"valid": 1, "invalid": 0, "in_search": 1, "total": 2}
