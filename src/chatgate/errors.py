"""
Error taxonomy for the gateway.

Every error surfaced to HTTP callers is a GatewayError carrying a stable
`kind` string. RateLimitError is internal: the send pipeline absorbs it with
a penalize-and-retry and never lets it reach a caller.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Stable error kinds exposed on the wire."""

    NOT_READY = "NotReady"
    INVALID_INPUT = "InvalidInput"
    UNREGISTERED_RECIPIENT = "UnregisteredRecipient"
    RATE_LIMITED = "RateLimited"
    TRANSPORT_ERROR = "TransportError"
    INITIALIZATION_FAILURE = "InitializationFailure"


class GatewayError(Exception):
    """Base class for all gateway errors."""

    kind: ErrorKind = ErrorKind.TRANSPORT_ERROR

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, str]:
        """Wire representation used by the HTTP layer."""
        return {"error": self.kind.value, "message": self.message}


class NotReadyError(GatewayError):
    """Session is not send-capable. Recoverable: caller retries later."""

    kind = ErrorKind.NOT_READY


class InvalidInputError(GatewayError):
    """Malformed recipient or body. Caller error, never retried."""

    kind = ErrorKind.INVALID_INPUT


class UnregisteredRecipientError(GatewayError):
    """Remote side confirmed the recipient is unreachable."""

    kind = ErrorKind.UNREGISTERED_RECIPIENT


class TransportError(GatewayError):
    """Unexpected failure from the remote transport."""

    kind = ErrorKind.TRANSPORT_ERROR


class InitializationFailure(GatewayError):
    """Remote session could not be started. Handled by supervisor backoff."""

    kind = ErrorKind.INITIALIZATION_FAILURE


class RateLimitError(GatewayError):
    """Remote side signalled throttling (rate limit, blocked, too many)."""

    kind = ErrorKind.RATE_LIMITED
