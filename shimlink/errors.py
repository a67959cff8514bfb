"""Exception types raised across shimlink.

Hard failures (configuration problems, exhausted connection strategies,
failed bridge handshakes) surface as one of these. Soft failures are logged
and absorbed by the component that hit them.
"""

from __future__ import annotations


class ShimlinkError(RuntimeError):
    """Base class for all shimlink errors."""


class ConfigurationError(ShimlinkError):
    """Adapter or port unavailable/disabled, or an invalid target/config."""


class ChannelIOError(ShimlinkError, OSError):
    """I/O failure on a transport channel (EOF, unbound stream, connect failure)."""


class HandshakeError(ShimlinkError):
    """A bridge command was rejected or not acknowledged in time."""


class NotConnectedError(ShimlinkError):
    """The operation requires an established connection."""
