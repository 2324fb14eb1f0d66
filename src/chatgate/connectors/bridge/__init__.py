"""JSON-over-WebSocket transport to the chat-network bridge sidecar."""

from chatgate.connectors.bridge.client import BridgeTransport, translate_event
from chatgate.connectors.bridge.types import (
    BridgeConfig,
    BridgeEvent,
    BridgeMethod,
    ConnectionState,
)

__all__ = [
    "BridgeConfig",
    "BridgeEvent",
    "BridgeMethod",
    "BridgeTransport",
    "ConnectionState",
    "translate_event",
]
