"""
Types and configuration for the chat-network bridge transport.

The bridge is a sidecar process that drives the actual chat client and
speaks JSON text frames over a single WebSocket:

- command: {"id": 7, "method": "sendMessage", "params": {...}}
- reply:   {"id": 7, "result": {...}} or {"id": 7, "error": {"message": "...", "code": "..."}}
- event:   {"event": "qr", "data": "..."}
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ConnectionState(str, Enum):
    """Bridge WebSocket connection state."""

    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"


class BridgeMethod(str, Enum):
    """Commands understood by the bridge."""

    INITIALIZE = "initialize"
    DESTROY = "destroy"
    PURGE_CREDENTIALS = "purgeCredentials"
    SEND_MESSAGE = "sendMessage"
    IS_REGISTERED_USER = "isRegisteredUser"
    GET_CHATS = "getChats"
    GET_CONTACTS = "getContacts"


class BridgeEvent(str, Enum):
    """Lifecycle events pushed by the bridge."""

    QR = "qr"
    AUTHENTICATED = "authenticated"
    READY = "ready"
    AUTH_FAILURE = "auth_failure"
    DISCONNECTED = "disconnected"
    LOADING_SCREEN = "loading_screen"


# Error codes the bridge may attach to a failed reply
ERROR_CODE_RATE_LIMITED = "rate_limited"
ERROR_CODE_NOT_REGISTERED = "not_registered"


@dataclass
class BridgeConfig:
    """
    Configuration for the bridge transport.

    Attributes:
        url: WebSocket URL of the bridge sidecar.
        request_timeout_ms: Max wait for a command reply.
        initialize_timeout_ms: Max wait for the initialize reply (browser launch).
        destroy_timeout_ms: Max wait for the destroy reply before closing anyway.
        heartbeat_ms: WebSocket ping interval.
    """

    url: str = "ws://127.0.0.1:8787/session"
    request_timeout_ms: int = 30000
    initialize_timeout_ms: int = 120000
    destroy_timeout_ms: int = 5000
    heartbeat_ms: int = 30000

    def __post_init__(self) -> None:
        if not self.url.startswith(("ws://", "wss://")):
            raise ValueError(f"bridge url must be ws:// or wss://, got {self.url!r}")
        for name in ("request_timeout_ms", "initialize_timeout_ms", "destroy_timeout_ms", "heartbeat_ms"):
            value = getattr(self, name)
            if value <= 0:
                raise ValueError(f"{name} must be > 0, got {value}")
