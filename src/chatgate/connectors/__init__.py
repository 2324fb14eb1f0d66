"""
Connectors to the remote chat network.

Transports (in-memory, bridge) and the local send-rate limiter.
"""

from chatgate.connectors.memory import InMemoryTransport
from chatgate.connectors.ratelimit import RateLimiter, RateLimiterConfig, RateWindow
from chatgate.connectors.transport import ChatSummary, ChatTransport, ContactSummary, SentMessage

__all__ = [
    "ChatSummary",
    "ChatTransport",
    "ContactSummary",
    "InMemoryTransport",
    "RateLimiter",
    "RateLimiterConfig",
    "RateWindow",
    "SentMessage",
]
