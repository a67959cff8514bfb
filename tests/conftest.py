"""Shared pytest configuration for shimlink tests."""

from __future__ import annotations

import asyncio
import json
import threading

import pytest
import pytest_asyncio
import websockets

from shimlink.config import RelayEndpoint
from shimlink.device_lock import DeviceLock


def pytest_addoption(parser):
    parser.addoption(
        "--hw",
        action="store_true",
        default=False,
        help="Run hardware-in-the-loop tests (requires a paired sensor)",
    )


@pytest.fixture(autouse=True)
def isolate_lock_dir(tmp_path, monkeypatch):
    """Redirect the device lock dir to tmp_path for every test."""
    lock_dir = str(tmp_path / "shimlink-locks")
    monkeypatch.setattr(DeviceLock, "LOCK_DIR", lock_dir)
    return lock_dir


# ---------------------------------------------------------------------------
# Relay stub
# ---------------------------------------------------------------------------


def _applied(msg):
    divider = max(1, int(32768.0 / msg["sr"] + 0.5))
    return [{"type": "set_sampling_rate_ack", "ok": True, "applied": 32768.0 / divider}]


DEFAULT_REPLIES = {
    "hello": [{"type": "hello_ack", "ok": True}],
    "open": [{"type": "open_ack", "ok": True}],
    "set_config": [{"type": "config_ack", "ok": True}],
    "start": [{"type": "start_ack", "ok": True}],
    "set_sampling_rate": _applied,
}


class RelayStub:
    """
    In-process relay. Replies to each command from ``replies`` (falling
    back to DEFAULT_REPLIES); a reply is a list of frames or a callable
    returning one. Dicts are sent as JSON text, str/bytes as-is. Binary
    frames from the client are echoed back.
    """

    def __init__(self):
        self.replies = {}
        self.received = []
        self.received_binary = []

    def types(self):
        return [m["type"] for m in self.received]

    async def handler(self, ws):
        try:
            async for frame in ws:
                if isinstance(frame, bytes):
                    self.received_binary.append(frame)
                    await ws.send(frame)
                    continue
                msg = json.loads(frame)
                self.received.append(msg)
                reply = self.replies.get(msg["type"], DEFAULT_REPLIES.get(msg["type"], []))
                if callable(reply):
                    reply = reply(msg)
                for out in reply:
                    await ws.send(json.dumps(out) if isinstance(out, dict) else out)
        except websockets.exceptions.ConnectionClosed:
            pass


@pytest_asyncio.fixture
async def relay():
    """RelayStub served on the test's event loop; yields (stub, endpoint)."""
    stub = RelayStub()
    async with websockets.serve(stub.handler, "127.0.0.1", 0) as server:
        port = server.sockets[0].getsockname()[1]
        yield stub, RelayEndpoint(host="127.0.0.1", port=port)


@pytest.fixture
def threaded_relay():
    """RelayStub served from its own thread, for synchronous callers."""
    stub = RelayStub()
    loop = asyncio.new_event_loop()
    ready = threading.Event()
    state = {}

    async def serve():
        async with websockets.serve(stub.handler, "127.0.0.1", 0) as server:
            state["port"] = server.sockets[0].getsockname()[1]
            state["stop"] = loop.create_future()
            ready.set()
            await state["stop"]

    thread = threading.Thread(target=loop.run_until_complete, args=(serve(),), daemon=True)
    thread.start()
    assert ready.wait(5), "relay stub did not start"

    yield stub, RelayEndpoint(host="127.0.0.1", port=state["port"])

    loop.call_soon_threadsafe(state["stop"].set_result, None)
    thread.join(5)
    loop.close()
