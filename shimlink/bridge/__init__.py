"""Relay bridge: WebSocket control protocol and session state machine."""

from .protocol import MessageType
from .session import BridgeSession, BridgeState, PendingAcks

__all__ = ["BridgeSession", "BridgeState", "MessageType", "PendingAcks"]
