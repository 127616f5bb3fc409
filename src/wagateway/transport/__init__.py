"""
Transport layer: the narrow interface to the WhatsApp protocol library.

Usage:
    from wagateway.transport import BridgeTransport

    transport = BridgeTransport("http://localhost:8081", token="secret")
    handle = await transport.open_connection(session_id, phone, auth_state)
"""

from wagateway.transport.base import (
    ConnectionHandle,
    ConnectionUpdate,
    DisconnectReason,
    EventEmitter,
    FileAuthState,
    Transport,
)
from wagateway.transport.bridge import BridgeTransport

__all__ = [
    "BridgeTransport",
    "ConnectionHandle",
    "ConnectionUpdate",
    "DisconnectReason",
    "EventEmitter",
    "FileAuthState",
    "Transport",
]
