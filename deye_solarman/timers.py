"""Clock and cancellable timer capability.

The transport and the polling scheduler never call ``time`` or
``threading.Timer`` directly; they receive a ``Timers`` object so the host
environment (or a test) decides how time passes.
"""

import heapq
import itertools
import threading
import time
from typing import Callable, List, Tuple


class TimerHandle:
    """Handle returned by ``schedule_after``; ``cancel()`` is idempotent."""

    def cancel(self):
        raise NotImplementedError


class Timers:
    """Clock + schedule-after capability."""

    def now(self) -> float:
        """Current time as a POSIX timestamp."""
        raise NotImplementedError

    def schedule_after(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        """Run ``callback`` once after ``delay`` seconds."""
        raise NotImplementedError


class _ThreadingTimerHandle(TimerHandle):
    def __init__(self, timer: threading.Timer):
        self._timer = timer

    def cancel(self):
        self._timer.cancel()


class RealTimers(Timers):
    """Wall clock with ``threading.Timer`` callbacks."""

    def now(self) -> float:
        return time.time()

    def schedule_after(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        timer = threading.Timer(max(delay, 0.0), callback)
        timer.daemon = True
        timer.start()
        return _ThreadingTimerHandle(timer)


class _VirtualTimerHandle(TimerHandle):
    def __init__(self):
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class VirtualTimers(Timers):
    """Deterministic virtual time for tests.

    Callbacks only run from ``advance()``, in due-time order, on the
    calling thread.
    """

    def __init__(self, start: float = 0.0):
        self._now = float(start)
        self._queue: List[Tuple[float, int, _VirtualTimerHandle, Callable[[], None]]] = []
        self._counter = itertools.count()

    def now(self) -> float:
        return self._now

    def schedule_after(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        handle = _VirtualTimerHandle()
        heapq.heappush(self._queue, (self._now + max(delay, 0.0), next(self._counter), handle, callback))
        return handle

    @property
    def pending(self) -> int:
        """Number of scheduled, not yet cancelled callbacks."""
        return sum(1 for _, _, handle, _ in self._queue if not handle.cancelled)

    def advance(self, seconds: float):
        """Move the clock forward, firing every callback that falls due."""
        target = self._now + seconds
        while self._queue and self._queue[0][0] <= target:
            due, _, handle, callback = heapq.heappop(self._queue)
            self._now = max(self._now, due)
            if not handle.cancelled:
                callback()
        self._now = target
