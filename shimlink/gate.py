"""Connection gate: serializes connection attempts against the local adapter.

Opening an RFCOMM socket while another connect (or a discovery scan) is in
flight on the same adapter is unreliable, so every local channel acquires
the gate around its whole connect sequence. Waiters are served in arrival
order.
"""

from __future__ import annotations

import collections
import logging
import threading
from typing import Optional

logger = logging.getLogger(__name__)


class ConnectionGate:
    """FIFO bounded semaphore with usage counters.

    Usage:
        gate = ConnectionGate()
        with gate:
            ...  # at most ``capacity`` threads here at once
    """

    def __init__(self, capacity: int = 1, name: str = "adapter"):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._capacity = capacity
        self._name = name
        self._cond = threading.Condition()
        self._waiters: collections.deque = collections.deque()
        self._active = 0
        self._max_seen = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def active(self) -> int:
        """Number of current holders."""
        with self._cond:
            return self._active

    @property
    def max_concurrency_seen(self) -> int:
        """Highest number of simultaneous holders since creation."""
        with self._cond:
            return self._max_seen

    def acquire(self, timeout: Optional[float] = None) -> bool:
        """Wait for a slot. Returns False only if ``timeout`` elapsed."""
        ticket = object()
        with self._cond:
            self._waiters.append(ticket)
            try:
                ok = self._cond.wait_for(
                    lambda: self._waiters[0] is ticket and self._active < self._capacity,
                    timeout=timeout,
                )
            finally:
                self._waiters.remove(ticket)
                # Next waiter in line may be able to proceed now.
                self._cond.notify_all()
            if not ok:
                logger.debug("Gate %s: acquire timed out", self._name)
                return False
            self._active += 1
            self._max_seen = max(self._max_seen, self._active)
            return True

    def release(self) -> None:
        with self._cond:
            if self._active <= 0:
                raise RuntimeError("ConnectionGate released too many times")
            self._active -= 1
            self._cond.notify_all()

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


_default_gate: Optional[ConnectionGate] = None
_default_lock = threading.Lock()


def default_gate() -> ConnectionGate:
    """Process-wide gate shared by channels that were not given one."""
    global _default_gate
    with _default_lock:
        if _default_gate is None:
            _default_gate = ConnectionGate()
        return _default_gate
