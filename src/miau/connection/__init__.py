"""Session lifecycle for the chat backend."""

from .disconnect import DisconnectKind, DisconnectReason, classify_disconnect
from .manager import (
    ConnectionFatalError,
    ConnectionManager,
    ConnectionState,
    ReconnectLimitExceeded,
)

__all__ = [
    "ConnectionFatalError",
    "ConnectionManager",
    "ConnectionState",
    "DisconnectKind",
    "DisconnectReason",
    "ReconnectLimitExceeded",
    "classify_disconnect",
]
