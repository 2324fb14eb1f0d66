"""
Rate-limited send pipeline.

send() runs the steps in order:
1. Reject with NotReady unless the session is send-capable (no queuing)
2. Normalize the recipient
3. Reserve a RateLimiter slot (serialized, FIFO)
4. Dispatch through the transport
5. Classify failures: rate-limit signals are penalized and retried once,
   unregistered recipients and other errors are surfaced without retry
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from chatgate.delivery.recipient import DEFAULT_COUNTRY_CODE, normalize_recipient
from chatgate.errors import (
    GatewayError,
    InvalidInputError,
    NotReadyError,
    RateLimitError,
    TransportError,
    UnregisteredRecipientError,
)

if TYPE_CHECKING:
    from chatgate.connectors.ratelimit import RateLimiter
    from chatgate.connectors.transport import ChatSummary, ChatTransport, ContactSummary
    from chatgate.session.supervisor import ConnectionSupervisor

logger = logging.getLogger(__name__)

_RATE_LIMIT_PATTERN = re.compile(r"rate[\s_-]?limit|too many|blocked|\b429\b|spam", re.I)
_UNREGISTERED_PATTERN = re.compile(
    r"not registered|invalid number|invalid wid|no lid|not on whatsapp|not a registered",
    re.I,
)


class FailureClass(str, Enum):
    """How a transport failure is handled."""

    RATE_LIMITED = "rate_limited"
    UNREGISTERED = "unregistered"
    OTHER = "other"


def classify_failure(error: BaseException) -> FailureClass:
    """Classify a transport exception by type, then by message pattern."""
    if isinstance(error, RateLimitError):
        return FailureClass.RATE_LIMITED
    if isinstance(error, UnregisteredRecipientError):
        return FailureClass.UNREGISTERED
    text = str(error)
    if _RATE_LIMIT_PATTERN.search(text):
        return FailureClass.RATE_LIMITED
    if _UNREGISTERED_PATTERN.search(text):
        return FailureClass.UNREGISTERED
    return FailureClass.OTHER


@dataclass
class PipelineConfig:
    """
    Send pipeline knobs.

    Attributes:
        default_country_code: Prepended to bare 10-digit local numbers.
        max_concurrent_messages: Sends in flight at once (serialized at 1).
        rate_limit_retries: Automatic retries after a remote rate-limit signal (0 or 1).
        max_body_length: Upper bound on message text length.
    """

    default_country_code: str = DEFAULT_COUNTRY_CODE
    max_concurrent_messages: int = 1
    rate_limit_retries: int = 1
    max_body_length: int = 65536

    def __post_init__(self) -> None:
        if not self.default_country_code.isdigit():
            raise ValueError(f"default_country_code must be digits, got {self.default_country_code!r}")
        if self.max_concurrent_messages < 1:
            raise ValueError(f"max_concurrent_messages must be >= 1, got {self.max_concurrent_messages}")
        if not 0 <= self.rate_limit_retries <= 1:
            raise ValueError(f"rate_limit_retries must be 0 or 1, got {self.rate_limit_retries}")


@dataclass
class OutboundMessage:
    """A send request for its lifetime in the pipeline."""

    recipient_raw: str
    body: str
    recipient_canonical: str = ""
    attempt: int = 0


@dataclass(frozen=True)
class SendReceipt:
    """Successful send outcome."""

    message_id: str
    timestamp: int
    recipient: str


@dataclass
class PipelineMetrics:
    """Counters for observability."""

    sent: int = 0
    rejected_not_ready: int = 0
    rejected_invalid: int = 0
    unregistered: int = 0
    transport_errors: int = 0
    rate_limit_retries: int = 0


class SendPipeline:
    """
    Composes readiness checks, rate limiting and the transport send.

    Usage:
        pipeline = SendPipeline(supervisor, limiter, transport)
        receipt = await pipeline.send("09876543210", "hi")
    """

    def __init__(
        self,
        supervisor: ConnectionSupervisor,
        limiter: RateLimiter,
        transport: ChatTransport,
        config: PipelineConfig | None = None,
    ) -> None:
        self._supervisor = supervisor
        self._limiter = limiter
        self._transport = transport
        self._config = config or PipelineConfig()
        self._semaphore: asyncio.Semaphore | None = None
        self.metrics = PipelineMetrics()

    def _get_semaphore(self) -> asyncio.Semaphore:
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self._config.max_concurrent_messages)
        return self._semaphore

    def normalize(self, recipient_raw: str) -> str:
        return normalize_recipient(recipient_raw, self._config.default_country_code)

    def _require_ready(self) -> None:
        if not self._supervisor.is_send_capable():
            self.metrics.rejected_not_ready += 1
            raise NotReadyError(
                f"Session is not ready (phase: {self._supervisor.current_phase().value})"
            )

    async def send(self, recipient_raw: str, body: str) -> SendReceipt:
        """
        Send one text message.

        Raises:
            NotReadyError: Session not send-capable; RateWindow untouched.
            InvalidInputError: Unusable recipient or body.
            UnregisteredRecipientError: Remote side rejected the recipient.
            TransportError: Any other remote failure, or a second consecutive
                rate-limit signal.
        """
        self._require_ready()

        message = OutboundMessage(recipient_raw=recipient_raw, body=body)
        try:
            message.recipient_canonical = self.normalize(recipient_raw)
            if not body or not body.strip():
                raise InvalidInputError("Message body must not be empty")
            if len(body) > self._config.max_body_length:
                raise InvalidInputError(
                    f"Message body exceeds {self._config.max_body_length} characters"
                )
        except InvalidInputError:
            self.metrics.rejected_invalid += 1
            raise

        async with self._get_semaphore():
            return await self._dispatch(message)

    async def _dispatch(self, message: OutboundMessage) -> SendReceipt:
        max_attempts = 1 + self._config.rate_limit_retries
        while True:
            await self._limiter.reserve()
            try:
                sent = await self._transport.send_message(message.recipient_canonical, message.body)
            except Exception as e:
                failure = classify_failure(e)
                message.attempt += 1

                if failure == FailureClass.RATE_LIMITED:
                    self._limiter.penalize()
                    if message.attempt < max_attempts:
                        self.metrics.rate_limit_retries += 1
                        logger.warning(
                            "Remote rate limit, retrying after cooldown",
                            extra={"attempt": message.attempt, "error": str(e)},
                        )
                        continue
                    self.metrics.transport_errors += 1
                    logger.error(
                        "Remote rate limit persisted after retry",
                        extra={"attempt": message.attempt, "error": str(e)},
                    )
                    raise TransportError(f"Rate limited by remote: {e}") from e

                if failure == FailureClass.UNREGISTERED:
                    self.metrics.unregistered += 1
                    logger.info("Recipient not registered", extra={"error": str(e)})
                    raise UnregisteredRecipientError(
                        f"The number {message.recipient_raw} is not registered"
                    ) from e

                self.metrics.transport_errors += 1
                logger.error("Send failed", extra={"attempt": message.attempt, "error": str(e)})
                if isinstance(e, GatewayError):
                    raise TransportError(e.message) from e
                raise TransportError(str(e) or type(e).__name__) from e

            self.metrics.sent += 1
            logger.info(
                "Message sent",
                extra={"message_id": sent.id, "attempt": message.attempt},
            )
            return SendReceipt(
                message_id=sent.id,
                timestamp=sent.timestamp,
                recipient=message.recipient_canonical,
            )

    # -- diagnostics -------------------------------------------------------------

    async def check_registered(self, recipient_raw: str) -> tuple[str, bool]:
        """
        Check whether a recipient exists on the network.

        When the check itself fails the recipient is assumed registered.
        """
        self._require_ready()
        canonical = self.normalize(recipient_raw)
        try:
            registered = await self._transport.is_registered_user(canonical)
        except Exception as e:
            logger.warning("Registration check failed, assuming registered", extra={"error": str(e)})
            return canonical, True
        return canonical, registered

    async def list_chats(self, limit: int = 10) -> tuple[int, list[ChatSummary]]:
        """Total chat count and the first `limit` chats."""
        self._require_ready()
        try:
            chats = await self._transport.get_chats()
        except Exception as e:
            raise TransportError(str(e)) from e
        return len(chats), chats[:limit]

    async def list_contacts(self, limit: int = 50) -> tuple[int, list[ContactSummary]]:
        """Total contact count and the first `limit` contacts."""
        self._require_ready()
        try:
            contacts = await self._transport.get_contacts()
        except Exception as e:
            raise TransportError(str(e)) from e
        return len(contacts), contacts[:limit]
