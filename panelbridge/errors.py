from typing import Optional


class BridgeError(Exception):
    """Base class for every error raised by the bridge core."""


class TransportError(BridgeError):
    """Connection-level failure: refused, auth failure, channel closed.

    Potentially recoverable through a reconnect.
    """


class FrameDecodeError(BridgeError):
    """Malformed or oversized frame. Always recovered inside the demultiplexer."""


class ProtocolError(BridgeError):
    """Well-formed JSON whose schema is invalid for a known event type."""

    def __init__(self, message: str, event_type: Optional[str] = None):
        super().__init__(message)
        self.event_type = event_type


class FatalSessionError(BridgeError):
    """Reconnect budget exhausted; the session was forced to disconnected."""

    def __init__(self, message: str, server: str = "", attempts: int = 0):
        super().__init__(message)
        self.server = server
        self.attempts = attempts
