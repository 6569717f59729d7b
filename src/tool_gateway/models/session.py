"""SSE session models."""

from enum import Enum


class SessionState(str, Enum):
    """State of a streaming client session."""

    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"  # Terminal
