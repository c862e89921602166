"""Plumbing shared by the MQTT and InfluxDB outputs.

Both outputs try a bounded number of connects at startup with growing
pauses, then leave a background monitor to recover the connection, and
both suppress values that did not change since the last send.
"""

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, Iterator, Optional

from .logging_setup import get_logger


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 10
    initial_delay: float = 2.0
    max_delay: float = 60.0
    factor: float = 2.0

    def pauses(self) -> Iterator[float]:
        """Pause before each retry, one fewer than ``attempts``."""
        pause = self.initial_delay
        for _ in range(self.attempts - 1):
            yield pause
            pause = min(pause * self.factor, self.max_delay)


def connect_with_retry(attempt: Callable[[], bool], policy: RetryPolicy, label: str,
                       sleep: Callable[[float], None] = time.sleep) -> bool:
    """Call ``attempt`` until it returns True or the policy is exhausted."""
    log = get_logger()
    pauses = policy.pauses()
    for number in range(1, policy.attempts + 1):
        if attempt():
            return True
        pause = next(pauses, None)
        if pause is None:
            break
        log.info(f"{label}: attempt {number} of {policy.attempts} did not connect, next in {pause:g}s")
        sleep(pause)
    log.warning(f"{label}: gave up after {policy.attempts} attempts, recovery continues in background")
    return False


class ReconnectMonitor:
    """Daemon thread calling ``check`` every ``interval`` seconds.

    With ``until_success`` the thread ends on the first check returning
    True; otherwise it runs until :meth:`stop`.
    """

    def __init__(self, name: str, check: Callable[[], bool], interval: float = 30.0,
                 until_success: bool = False):
        self.name = name
        self.check = check
        self.interval = interval
        self.until_success = until_success
        self._halt = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            return
        self._halt.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        get_logger().debug(f"{self.name} monitor started")

    def _run(self):
        while not self._halt.is_set():
            if self.check() and self.until_success:
                return
            self._halt.wait(self.interval)

    def stop(self, timeout: float = 2.0):
        self._halt.set()
        if self.running:
            self._thread.join(timeout=timeout)


class ChangeFilter:
    """Last value seen per key; ``mode='all'`` lets everything through."""

    def __init__(self, mode: str = 'changed'):
        self.mode = mode
        self._seen: Dict[Hashable, Any] = {}
        self._lock = threading.Lock()

    def changed(self, key: Hashable, value: Any) -> bool:
        """True when ``value`` differs from the last one recorded for ``key``."""
        if self.mode == 'all':
            return True
        with self._lock:
            if key in self._seen and self._seen[key] == value:
                return False
            self._seen[key] = value
        return True

    def reset(self):
        with self._lock:
            self._seen.clear()
