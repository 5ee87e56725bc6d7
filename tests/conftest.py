"""
Pytest configuration and fixtures for wormwatch tests.
"""

import pytest
import os
import random
import sys
from dataclasses import dataclass
from typing import List, Optional

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from wormwatch.config import ProtocolConfig
from wormwatch.packets import MessageType, decode_message
from wormwatch.protocol import RoutingProtocol
from wormwatch.scheduler import EventScheduler
from wormwatch.stats import StatsCollector
from wormwatch.transport import Transport


@dataclass
class SentFrame:
    """One control message handed to the transport."""
    data: bytes
    destination: str
    interface: str
    ttl: int
    time: float

    @property
    def message(self):
        return decode_message(self.data)

    @property
    def msg_type(self) -> int:
        return self.data[0]

    @property
    def header(self):
        return self.message.header


class RecordingTransport(Transport):
    """Transport that records every send instead of transmitting it."""

    def __init__(self, clock):
        self.clock = clock
        self.sent: List[SentFrame] = []

    def send(self, data, destination, interface, ttl):
        self.sent.append(SentFrame(data, destination, interface.local, ttl, self.clock()))

    def frames(self, msg_type: Optional[MessageType] = None) -> List[SentFrame]:
        if msg_type is None:
            return list(self.sent)
        return [f for f in self.sent if f.msg_type == msg_type]

    def clear(self):
        self.sent.clear()


@pytest.fixture
def scheduler():
    """Virtual clock starting at zero."""
    return EventScheduler()


@pytest.fixture
def quiet_config():
    """Protocol configuration without hello messages."""
    return ProtocolConfig(enable_hello=False)


@pytest.fixture
def make_engine(scheduler):
    """Factory for engines on the shared scheduler with a recording transport."""

    def _make(address="10.0.0.5/24", config=None, seed=7):
        transport = RecordingTransport(scheduler.now)
        stats = StatsCollector(address)
        engine = RoutingProtocol(
            address,
            transport,
            scheduler,
            config=config or ProtocolConfig(enable_hello=False),
            stats=stats,
            rng=random.Random(seed),
        )
        return engine, transport, stats

    return _make
