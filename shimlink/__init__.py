"""
shimlink - Shimmer3 sensor link

Serial, Bluetooth RFCOMM and WebSocket-relay transports behind one
channel interface, with decoded samples delivered to subscribers.
"""

from .interfaces import (
    BoardDetectionResult,
    BoardKind,
    ClockInterface,
    ConnectionState,
    ExpansionBoardCapability,
    FirmwareDriver,
    PortInfo,
    TransportChannel,
    TransportKind,
)
from .errors import (
    ChannelIOError,
    ConfigurationError,
    HandshakeError,
    NotConnectedError,
    ShimlinkError,
)
from .config import DeviceConfig, RelayEndpoint, SensorFlags, load_config
from .decoder import SampleRecord, Vector3
from .gate import ConnectionGate, default_gate
from .channels import BluetoothChannel, SerialChannel
from .relay_channel import RelayChannel
from .probe import ExpansionBoardProbe, classify_board
from .session import SensorSession, Subscription, create_channel

__version__ = "0.1.0"

__all__ = [
    "BoardDetectionResult",
    "BoardKind",
    "ClockInterface",
    "ConnectionState",
    "ExpansionBoardCapability",
    "FirmwareDriver",
    "PortInfo",
    "TransportChannel",
    "TransportKind",
    "ChannelIOError",
    "ConfigurationError",
    "HandshakeError",
    "NotConnectedError",
    "ShimlinkError",
    "DeviceConfig",
    "RelayEndpoint",
    "SensorFlags",
    "load_config",
    "SampleRecord",
    "Vector3",
    "ConnectionGate",
    "default_gate",
    "BluetoothChannel",
    "SerialChannel",
    "RelayChannel",
    "ExpansionBoardProbe",
    "classify_board",
    "SensorSession",
    "Subscription",
    "create_channel",
]
