"""
Synchronous TransportChannel over a relay bridge session.

The BridgeSession is asyncio-based; RelayChannel runs it on a private
event loop thread so the rest of the stack (and the legacy driver) can
keep treating the relay like any other byte channel. Binary data-plane
frames from the relay feed ``read_byte``; ``write_bytes`` sends binary
frames back.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Awaitable, Callable, Optional

from .bridge.session import BridgeSession
from .config import RelayEndpoint, SensorFlags
from .errors import ChannelIOError
from .interfaces import TransportChannel

logger = logging.getLogger(__name__)

READ_POLL_S = 0.1
LOOP_JOIN_TIMEOUT_S = 2.0


class RelayChannel(TransportChannel):
    """
    Args:
        endpoint: Relay WebSocket endpoint.
        mac: Device address the relay subscribes to.
        sensors: Sensor toggles pushed during the handshake.
        sampling_rate: Sampling rate pushed during the handshake.
        call_timeout: Upper bound for any one blocking call into the
            session. Must exceed the longest handshake step.
        session_factory: Builds the BridgeSession (tests inject a
            custom ``connect``).
    """

    def __init__(
        self,
        endpoint: RelayEndpoint,
        mac: str,
        sensors: Optional[SensorFlags] = None,
        sampling_rate: float = 51.2,
        call_timeout: float = 60.0,
        session_factory: Optional[Callable[..., BridgeSession]] = None,
    ):
        self._endpoint = endpoint
        self._mac = mac
        self._sensors = sensors
        self._sampling_rate = sampling_rate
        self._call_timeout = call_timeout
        self._session_factory = session_factory or BridgeSession

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._session: Optional[BridgeSession] = None

        self._rx = bytearray()
        self._rx_cond = threading.Condition()
        self._bound = False

    @property
    def session(self) -> Optional[BridgeSession]:
        return self._session

    @property
    def is_open(self) -> bool:
        return self._bound and self._session is not None and self._session.connected

    @property
    def in_loop_thread(self) -> bool:
        """True when called from the relay loop (e.g. a sample callback)."""
        return self._thread is not None and threading.current_thread() is self._thread

    def call(self, coro: Awaitable[Any], timeout: Optional[float] = None) -> Any:
        """
        Run a coroutine on the channel's loop and wait for its result.

        Raises ChannelIOError when called from the loop thread itself,
        where waiting would block the loop that has to run ``coro``.
        """
        if self._loop is None or self.in_loop_thread:
            if asyncio.iscoroutine(coro):
                coro.close()
            if self._loop is None:
                raise ChannelIOError("Relay channel is not open")
            raise ChannelIOError("Cannot wait on the relay from its own thread; use post()")
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        return future.result(self._call_timeout if timeout is None else timeout)

    def post(self, coro: Awaitable[Any]) -> None:
        """Schedule a coroutine on the channel's loop without waiting for it."""
        if self._loop is None:
            if asyncio.iscoroutine(coro):
                coro.close()
            raise ChannelIOError("Relay channel is not open")
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        future.add_done_callback(_log_failure)

    def open(self) -> None:
        if self.is_open:
            return
        if self._loop is None:
            self._start_loop()

        async def build() -> BridgeSession:
            return self._session_factory(
                self._endpoint,
                self._mac,
                sensors=self._sensors,
                sampling_rate=self._sampling_rate,
            )

        try:
            if self._session is None:
                self._session = self.call(build())
                self._session.add_binary_listener(self._on_binary)
            self.call(self._session.connect())
        except BaseException:
            self.close()
            raise

        with self._rx_cond:
            self._rx.clear()
            self._bound = True

    def close(self) -> None:
        session, self._session = self._session, None
        with self._rx_cond:
            self._bound = False
            self._rx.clear()
            self._rx_cond.notify_all()

        if self.in_loop_thread:
            # The loop is busy running our caller: hand it the teardown and return.
            loop, self._loop, self._thread = self._loop, None, None
            loop.create_task(self._shutdown(session))
            return

        if session is not None and self._loop is not None:
            session.remove_binary_listener(self._on_binary)
            try:
                self.call(session.disconnect())
            except Exception as e:
                logger.debug("Relay disconnect: %s", e)

        self._stop_loop()

    async def _shutdown(self, session: Optional[BridgeSession]) -> None:
        if session is not None:
            session.remove_binary_listener(self._on_binary)
            await session.disconnect()
        asyncio.get_running_loop().stop()

    def read_byte(self) -> int:
        with self._rx_cond:
            while not self._rx:
                if not self.is_open:
                    raise ChannelIOError("End of stream")
                self._rx_cond.wait(READ_POLL_S)
            value = self._rx[0]
            del self._rx[0]
            return value

    def write_bytes(self, buffer: bytes, offset: int = 0, length: Optional[int] = None) -> None:
        session = self._session
        if session is None or not self._bound:
            raise ChannelIOError("Output stream not available")
        end = len(buffer) if length is None else offset + length
        try:
            self.call(session.send_binary(bytes(buffer[offset:end])))
        except ChannelIOError:
            raise
        except Exception as e:
            raise ChannelIOError(f"Write to relay failed: {e}") from e

    def flush(self) -> None:
        pass

    def flush_input(self) -> None:
        with self._rx_cond:
            self._rx.clear()

    def _on_binary(self, data: bytes) -> None:
        with self._rx_cond:
            if self._bound:
                self._rx.extend(data)
                self._rx_cond.notify_all()

    def _start_loop(self) -> None:
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(
            target=_run_loop,
            args=(self._loop,),
            name=f"relay-{self._mac}",
            daemon=True,
        )
        self._thread.start()

    def _stop_loop(self) -> None:
        loop, self._loop = self._loop, None
        thread, self._thread = self._thread, None
        if loop is None:
            return
        loop.call_soon_threadsafe(loop.stop)
        if thread is not None:
            thread.join(LOOP_JOIN_TIMEOUT_S)


def _run_loop(loop: asyncio.AbstractEventLoop) -> None:
    try:
        loop.run_forever()
    finally:
        loop.close()


def _log_failure(future) -> None:
    if not future.cancelled() and future.exception() is not None:
        logger.warning("Relay request failed: %s", future.exception())
