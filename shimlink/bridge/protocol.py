"""Relay control protocol.

Every control message is a JSON object with a ``type`` key. Commands go
from this side to the relay, acks and events come back::

    hello                         -> hello_ack{ok}
    open{mac}                     -> open_ack{ok}
    set_config{Enable*..., SamplingRate} -> config_ack{ok, error?}
    get_config{mac}               -> config_changed{cfg}
    set_sampling_rate{mac, sr}    -> set_sampling_rate_ack{ok, applied}
    start{mac}                    -> start_ack{ok}
    stop, close

Unsolicited from the relay: ``sample``, ``config_changed``, ``error``.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any, Optional, Union

from ..config import SensorFlags


class MessageType(str, Enum):
    HELLO = "hello"
    HELLO_ACK = "hello_ack"
    OPEN = "open"
    OPEN_ACK = "open_ack"
    SET_CONFIG = "set_config"
    CONFIG_ACK = "config_ack"
    GET_CONFIG = "get_config"
    CONFIG_CHANGED = "config_changed"
    SET_SAMPLING_RATE = "set_sampling_rate"
    SET_SAMPLING_RATE_ACK = "set_sampling_rate_ack"
    START = "start"
    START_ACK = "start_ack"
    STOP = "stop"
    CLOSE = "close"
    SAMPLE = "sample"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Outgoing commands
# ---------------------------------------------------------------------------


def hello() -> dict:
    return {"type": MessageType.HELLO.value}


def open_device(mac: str) -> dict:
    return {"type": MessageType.OPEN.value, "mac": mac}


def set_config(flags: SensorFlags, sampling_rate: float) -> dict:
    msg: dict[str, Any] = {"type": MessageType.SET_CONFIG.value}
    msg.update(flags.to_wire())
    msg["SamplingRate"] = sampling_rate
    return msg


def get_config(mac: str) -> dict:
    return {"type": MessageType.GET_CONFIG.value, "mac": mac}


def set_sampling_rate(mac: str, hz: float) -> dict:
    return {"type": MessageType.SET_SAMPLING_RATE.value, "mac": mac, "sr": hz}


def start(mac: str) -> dict:
    return {"type": MessageType.START.value, "mac": mac}


def stop() -> dict:
    return {"type": MessageType.STOP.value}


def close() -> dict:
    return {"type": MessageType.CLOSE.value}


def encode(msg: dict) -> str:
    return json.dumps(msg, separators=(",", ":"))


# ---------------------------------------------------------------------------
# Incoming frames
# ---------------------------------------------------------------------------


def looks_like_json(frame: bytes) -> bool:
    """Binary frames starting with ``{`` or ``[`` are JSON sent as binary."""
    return len(frame) > 0 and frame[:1] in (b"{", b"[")


def as_text(frame: Union[str, bytes]) -> Optional[str]:
    """Return the frame as control text, or None if it is a data frame."""
    if isinstance(frame, str):
        return frame
    if looks_like_json(frame):
        return frame.decode("utf-8", errors="replace")
    return None


def parse(text: str) -> Optional[dict]:
    """Parse a control frame. Anything but a JSON object with a string ``type`` is None."""
    try:
        msg = json.loads(text)
    except ValueError:
        return None
    if not isinstance(msg, dict) or not isinstance(msg.get("type"), str):
        return None
    return msg


def ack_ok(msg: dict) -> bool:
    """``ok`` counts only when it is literally true."""
    return msg.get("ok") is True


def applied_rate(msg: dict) -> float:
    """Applied sampling rate of a ``set_sampling_rate_ack``; -1.0 on failure."""
    if not ack_ok(msg):
        return -1.0
    applied = msg.get("applied")
    if isinstance(applied, bool) or not isinstance(applied, (int, float)):
        return 0.0
    return float(applied)


def error_text(msg: dict) -> str:
    value = msg.get("error")
    return value if isinstance(value, str) else ""
