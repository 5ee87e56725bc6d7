"""
Statistics and detection accounting for wormwatch.

The engine reports what happens through record_event(kind, **metadata).
StatsCollector turns those events into counters, the wormhole detection
confusion matrix and route discovery latency.
"""

from __future__ import annotations

import csv
import logging
import os
from dataclasses import dataclass, fields
from typing import Any, Dict, Iterable

logger = logging.getLogger(__name__)


# Event kinds
EV_CONTROL_SENT = "control_sent"
EV_CONTROL_RECEIVED = "control_received"
EV_PARSE_ERROR = "parse_error"
EV_INVALID_MESSAGE = "invalid_message"
EV_DUPLICATE_REQUEST = "duplicate_request"
EV_RREQ_DEFERRED = "rreq_deferred"
EV_RERR_SUPPRESSED = "rerr_suppressed"
EV_DISCOVERY_STARTED = "discovery_started"
EV_DISCOVERY_FAILED = "discovery_failed"
EV_ROUTE_ESTABLISHED = "route_established"
EV_REPLY_RELAYED = "reply_relayed"
EV_REPLY_SUPPRESSED = "reply_suppressed"
EV_REPLY_SUPERSEDED = "reply_superseded"
EV_HELLO_RECEIVED = "hello_received"
EV_DATA_DELIVERED = "data_delivered"
EV_DATA_DROPPED = "data_dropped"


@dataclass
class DetectionStats:
    """Counters for one node (or, merged, for a whole network)."""

    # Control traffic
    control_sent: int = 0
    control_received: int = 0
    control_bytes: int = 0
    requests_sent: int = 0
    replies_sent: int = 0
    errors_sent: int = 0
    acks_sent: int = 0
    checks_sent: int = 0
    evidence_sent: int = 0
    hellos_received: int = 0

    # Drops
    parse_errors: int = 0
    invalid_messages: int = 0
    duplicate_requests: int = 0
    rreq_rate_limited: int = 0
    rerr_rate_limited: int = 0

    # Discovery
    discoveries_started: int = 0
    discoveries_failed: int = 0
    routes_established: int = 0
    total_route_latency: float = 0.0

    # Detection outcomes
    detected: int = 0          # tunneled reply suppressed
    undetected: int = 0        # tunneled reply relayed
    false_positive: int = 0    # untunneled reply suppressed
    true_negative: int = 0     # untunneled reply relayed
    not_applicable: int = 0    # reply superseded before a decision

    # Data plane
    data_delivered: int = 0
    data_dropped: int = 0


_SENT_COUNTERS = {
    "REQUEST": "requests_sent",
    "REPLY": "replies_sent",
    "ERROR": "errors_sent",
    "REPLY_ACK": "acks_sent",
    "WH_CHECK": "checks_sent",
    "WH_EVIDENCE": "evidence_sent",
}


class StatsCollector:
    """
    Event sink that keeps DetectionStats.

    Provides the record_event interface the engine and detector call.
    """

    def __init__(self, name: str = ""):
        self.name = name
        self._stats = DetectionStats()

    def record_event(self, kind: str, **metadata: Any) -> None:
        s = self._stats
        if kind == EV_CONTROL_SENT:
            s.control_sent += 1
            s.control_bytes += int(metadata.get("size", 0))
            counter = _SENT_COUNTERS.get(metadata.get("msg_type", ""))
            if counter:
                setattr(s, counter, getattr(s, counter) + 1)
        elif kind == EV_CONTROL_RECEIVED:
            s.control_received += 1
        elif kind == EV_PARSE_ERROR:
            s.parse_errors += 1
        elif kind == EV_INVALID_MESSAGE:
            s.invalid_messages += 1
        elif kind == EV_DUPLICATE_REQUEST:
            s.duplicate_requests += 1
        elif kind == EV_RREQ_DEFERRED:
            s.rreq_rate_limited += 1
        elif kind == EV_RERR_SUPPRESSED:
            s.rerr_rate_limited += 1
        elif kind == EV_DISCOVERY_STARTED:
            s.discoveries_started += 1
        elif kind == EV_DISCOVERY_FAILED:
            s.discoveries_failed += 1
        elif kind == EV_ROUTE_ESTABLISHED:
            s.routes_established += 1
            s.total_route_latency += float(metadata.get("latency", 0.0))
        elif kind == EV_REPLY_RELAYED:
            if metadata.get("tunneled"):
                s.undetected += 1
            else:
                s.true_negative += 1
        elif kind == EV_REPLY_SUPPRESSED:
            if metadata.get("tunneled"):
                s.detected += 1
            else:
                s.false_positive += 1
        elif kind == EV_REPLY_SUPERSEDED:
            s.not_applicable += 1
        elif kind == EV_HELLO_RECEIVED:
            s.hellos_received += 1
        elif kind == EV_DATA_DELIVERED:
            s.data_delivered += 1
        elif kind == EV_DATA_DROPPED:
            s.data_dropped += 1
        else:
            logger.debug(f"Unrecognized stats event: {kind}")

    # ------------------------------------------------------------------

    @property
    def stats(self) -> DetectionStats:
        return self._stats

    @property
    def detection_rate(self) -> float:
        s = self._stats
        total = s.detected + s.undetected
        return s.detected / total if total else 0.0

    @property
    def false_positive_rate(self) -> float:
        s = self._stats
        total = s.false_positive + s.true_negative
        return s.false_positive / total if total else 0.0

    @property
    def average_route_latency(self) -> float:
        s = self._stats
        return s.total_route_latency / s.routes_established if s.routes_established else 0.0

    def get_stats(self) -> Dict[str, Any]:
        """Get a copy of all counters plus the derived rates."""
        result = {f.name: getattr(self._stats, f.name) for f in fields(self._stats)}
        result["detection_rate"] = self.detection_rate
        result["false_positive_rate"] = self.false_positive_rate
        result["average_route_latency"] = self.average_route_latency
        return result

    def merge(self, others: Iterable["StatsCollector"]) -> "StatsCollector":
        """Add the counters of others into this collector."""
        for other in others:
            for f in fields(self._stats):
                setattr(self._stats, f.name,
                        getattr(self._stats, f.name) + getattr(other.stats, f.name))
        return self

    def reset(self) -> None:
        self._stats = DetectionStats()

    def format_summary(self) -> str:
        """Format statistics as a human-readable summary."""
        st = self.get_stats()
        title = f"[STATS] {self.name}" if self.name else "[STATS]"
        return "\n".join([
            title,
            f"  Control: sent={st['control_sent']} recv={st['control_received']} "
            f"bytes={st['control_bytes']}",
            f"  Messages: rreq={st['requests_sent']} rrep={st['replies_sent']} "
            f"rerr={st['errors_sent']} ack={st['acks_sent']} "
            f"whc={st['checks_sent']} whe={st['evidence_sent']}",
            f"  Discovery: started={st['discoveries_started']} "
            f"established={st['routes_established']} failed={st['discoveries_failed']} "
            f"avg_latency={st['average_route_latency']:.4f}s",
            f"  Detection: tp={st['detected']} fn={st['undetected']} "
            f"fp={st['false_positive']} tn={st['true_negative']} na={st['not_applicable']}",
            f"  Rates: detection={st['detection_rate']:.3f} "
            f"false_positive={st['false_positive_rate']:.3f}",
            f"  Drops: parse={st['parse_errors']} invalid={st['invalid_messages']} "
            f"dup_rreq={st['duplicate_requests']} rreq_rl={st['rreq_rate_limited']} "
            f"rerr_rl={st['rerr_rate_limited']}",
            f"  Data: delivered={st['data_delivered']} dropped={st['data_dropped']}",
        ])


class NullStats:
    """Discards every event."""

    def record_event(self, kind: str, **metadata: Any) -> None:
        pass


CSV_COLUMNS = [
    "seed", "nodes", "topology", "wormhole", "detection",
    "tp", "fn", "fp", "tn",
    "wh_detection_rate", "false_positive_rate",
    "total_ctrl_bytes", "avg_route_latency",
]


def write_report_row(path: str, collector: StatsCollector, **scenario: Any) -> None:
    """Append one result row to a CSV file, writing the header if the file is new."""
    need_header = not os.path.exists(path) or os.path.getsize(path) == 0
    st = collector.get_stats()
    row = {
        "seed": scenario.get("seed", ""),
        "nodes": scenario.get("nodes", ""),
        "topology": scenario.get("topology", ""),
        "wormhole": int(bool(scenario.get("wormhole", False))),
        "detection": int(bool(scenario.get("detection", True))),
        "tp": st["detected"],
        "fn": st["undetected"],
        "fp": st["false_positive"],
        "tn": st["true_negative"],
        "wh_detection_rate": f"{st['detection_rate']:.6f}",
        "false_positive_rate": f"{st['false_positive_rate']:.6f}",
        "total_ctrl_bytes": st["control_bytes"],
        "avg_route_latency": f"{st['average_route_latency']:.6f}",
    }
    with open(path, "a", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=CSV_COLUMNS)
        if need_header:
            writer.writeheader()
        writer.writerow(row)
