"""Ordered, timed, fall-back connection establishment.

A channel describes each way it knows to reach the device as a
:class:`ConnectionAttempt`. :func:`connect_first` tries them strictly in
order, each under a hard timeout, and returns the first connected handle.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence

from .errors import ChannelIOError
from .interfaces import ClockInterface

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT_MS = 8000
MIN_CONNECT_TIMEOUT_MS = 2000
RETRY_BACKOFF_S = 0.2


def clamp_timeout_ms(timeout_ms: Optional[int]) -> int:
    """Apply the default and the 2 s floor to a connect timeout."""
    if timeout_ms is None:
        return DEFAULT_CONNECT_TIMEOUT_MS
    return max(MIN_CONNECT_TIMEOUT_MS, int(timeout_ms))


@dataclass
class ConnectionAttempt:
    """One candidate strategy.

    Attributes:
        name: Label used in logs and error messages.
        create: Builds an unconnected handle (socket, port object).
        connect: Blocking connect on the handle.
        close: Releases the handle; must unblock a pending ``connect``.
        is_connected: Post-connect check; a False result counts as failure.
    """
    name: str
    create: Callable[[], Any]
    connect: Callable[[Any], None]
    close: Callable[[Any], None]
    is_connected: Callable[[Any], bool] = field(default=lambda handle: True)


def _run_with_timeout(attempt: ConnectionAttempt, handle: Any, timeout_s: float) -> None:
    """Run ``attempt.connect(handle)`` in a worker thread, bounded by ``timeout_s``.

    On timeout only the waiting side gives up; the caller closes the handle,
    which makes the abandoned blocking call return.
    """
    outcome: dict = {}
    done = threading.Event()

    def worker() -> None:
        try:
            attempt.connect(handle)
        except BaseException as e:  # re-raised on the caller's thread
            outcome["error"] = e
        finally:
            done.set()

    thread = threading.Thread(target=worker, name=f"connect-{attempt.name}", daemon=True)
    thread.start()

    if not done.wait(timeout_s):
        raise TimeoutError(f"Timeout ({int(timeout_s * 1000)} ms) during connect")
    if "error" in outcome:
        raise outcome["error"]


def connect_first(
    target: str,
    attempts: Sequence[ConnectionAttempt],
    clock: ClockInterface,
    timeout_ms: Optional[int] = None,
    backoff_s: float = RETRY_BACKOFF_S,
) -> Any:
    """Try ``attempts`` in order and return the first connected handle.

    Raises:
        ChannelIOError: every attempt failed. The message names ``target``
            and the last error, which is also chained as ``__cause__``.
    """
    timeout_s = clamp_timeout_ms(timeout_ms) / 1000.0
    last: Optional[BaseException] = None

    for attempt in attempts:
        handle = None
        try:
            handle = attempt.create()
            _run_with_timeout(attempt, handle, timeout_s)
            if not attempt.is_connected(handle):
                raise ChannelIOError("Socket not connected after connect()")
            logger.info("Connected to %s via %s", target, attempt.name)
            return handle
        except Exception as e:
            last = e
            logger.warning("Connect attempt %s to %s failed: %s", attempt.name, target, e)
            if handle is not None:
                try:
                    attempt.close(handle)
                except Exception as close_err:
                    logger.debug("Closing failed candidate %s: %s", attempt.name, close_err)
            clock.sleep(backoff_s)

    raise ChannelIOError(f"Unable to connect to {target}. Last error: {last}") from last
