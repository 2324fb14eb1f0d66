"""Wire contracts shared by the HTTP surface and event subscribers."""

from chatgate.contracts.events import (
    GatewayEvent,
    GatewayEventType,
    Identity,
    SendMessageRequest,
    SendMessageResponse,
    SessionPhase,
    StatusSnapshot,
)

__all__ = [
    "GatewayEvent",
    "GatewayEventType",
    "Identity",
    "SendMessageRequest",
    "SendMessageResponse",
    "SessionPhase",
    "StatusSnapshot",
]
