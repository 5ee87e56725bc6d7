"""
Event scheduling for wormwatch.

EventScheduler is a single-threaded priority queue of callbacks on a
virtual clock; the simulation advances it explicitly and the UDP serve
loop drives it from the wall clock. KeyedTimers keeps at most one pending
timer per key, which is how per-destination discovery retries and
per-neighbor acknowledgement timeouts are tracked.
"""

from __future__ import annotations

import heapq
import itertools
import logging
from typing import Any, Callable, Dict, Hashable, List, Optional, Tuple

logger = logging.getLogger(__name__)


class TimerHandle:
    """A scheduled callback that can be cancelled."""

    __slots__ = ("when", "callback", "args", "cancelled", "fired")

    def __init__(self, when: float, callback: Callable, args: Tuple[Any, ...]):
        self.when = when
        self.callback = callback
        self.args = args
        self.cancelled = False
        self.fired = False

    @property
    def active(self) -> bool:
        return not (self.cancelled or self.fired)

    def cancel(self) -> None:
        self.cancelled = True

    def __repr__(self) -> str:
        name = getattr(self.callback, "__name__", repr(self.callback))
        state = "active" if self.active else ("fired" if self.fired else "cancelled")
        return f"<TimerHandle {name} at {self.when:.4f} {state}>"


class EventScheduler:
    """
    Virtual-time event queue.

    Callbacks scheduled for the same instant run in scheduling order.
    """

    def __init__(self, start: float = 0.0):
        self._now = start
        self._heap: List[Tuple[float, int, TimerHandle]] = []
        self._counter = itertools.count()
        self.events_run = 0

    def now(self) -> float:
        return self._now

    def schedule_after(self, delay: float, callback: Callable, *args: Any) -> TimerHandle:
        """Run callback(*args) `delay` seconds from now."""
        if delay < 0:
            delay = 0.0
        handle = TimerHandle(self._now + delay, callback, args)
        heapq.heappush(self._heap, (handle.when, next(self._counter), handle))
        return handle

    def call_soon(self, callback: Callable, *args: Any) -> TimerHandle:
        return self.schedule_after(0.0, callback, *args)

    def cancel(self, handle: Optional[TimerHandle]) -> None:
        if handle is not None:
            handle.cancel()

    def next_deadline(self) -> Optional[float]:
        """Time of the earliest pending event, or None if idle."""
        self._drop_cancelled()
        return self._heap[0][0] if self._heap else None

    def pending(self) -> int:
        return sum(1 for _, _, h in self._heap if h.active)

    def _drop_cancelled(self) -> None:
        while self._heap and not self._heap[0][2].active:
            heapq.heappop(self._heap)

    def _run_one(self) -> None:
        when, _, handle = heapq.heappop(self._heap)
        self._now = max(self._now, when)
        handle.fired = True
        self.events_run += 1
        handle.callback(*handle.args)

    def run_until(self, until: float) -> int:
        """
        Run every event due at or before `until`, then set the clock to it.

        Returns:
            Number of callbacks run
        """
        count = 0
        while True:
            self._drop_cancelled()
            if not self._heap or self._heap[0][0] > until:
                break
            self._run_one()
            count += 1
        self._now = max(self._now, until)
        return count

    def advance(self, delta: float) -> int:
        return self.run_until(self._now + delta)

    def run(self, max_events: Optional[int] = None) -> int:
        """Run until the queue is empty (or max_events callbacks have run)."""
        count = 0
        while max_events is None or count < max_events:
            self._drop_cancelled()
            if not self._heap:
                break
            self._run_one()
            count += 1
        return count


class KeyedTimers:
    """
    At most one pending timer per key.

    Scheduling a key that already has a timer replaces it.
    """

    def __init__(self, scheduler: EventScheduler):
        self._scheduler = scheduler
        self._timers: Dict[Hashable, TimerHandle] = {}

    def schedule(self, key: Hashable, delay: float, callback: Callable, *args: Any) -> TimerHandle:
        self.cancel(key)
        handle = self._scheduler.schedule_after(delay, self._fire, key, callback, args)
        self._timers[key] = handle
        return handle

    def _fire(self, key: Hashable, callback: Callable, args: Tuple[Any, ...]) -> None:
        self._timers.pop(key, None)
        callback(*args)

    def cancel(self, key: Hashable) -> bool:
        handle = self._timers.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return handle.fired is False

    def cancel_all(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

    def active(self, key: Hashable) -> bool:
        handle = self._timers.get(key)
        return handle is not None and handle.active

    def remaining(self, key: Hashable) -> Optional[float]:
        handle = self._timers.get(key)
        if handle is None or not handle.active:
            return None
        return max(0.0, handle.when - self._scheduler.now())

    def keys(self) -> List[Hashable]:
        return [k for k, h in self._timers.items() if h.active]

    def __contains__(self, key: Hashable) -> bool:
        return self.active(key)

    def __len__(self) -> int:
        return len(self.keys())
