"""
In-memory chat transport.

Used for dry runs (no remote network) and for tests. The lifecycle is driven
explicitly through the issue_challenge/authenticate/become_ready/drop helpers,
or automatically when auto_ready is set.
"""

from __future__ import annotations

import itertools
import logging
import time
from collections import deque
from collections.abc import Callable

from chatgate.connectors.transport import ChatSummary, ChatTransport, ContactSummary, SentMessage
from chatgate.contracts.events import Identity
from chatgate.errors import InitializationFailure, TransportError
from chatgate.session.types import (
    AuthFailed,
    Authenticated,
    ChallengeIssued,
    Disconnected,
    Loading,
    Ready,
)

logger = logging.getLogger(__name__)

DEFAULT_IDENTITY = Identity(display_name="dry-run", account_id="910000000000", platform="memory")


class InMemoryTransport(ChatTransport):
    """
    Transport that keeps everything in process.

    Attributes:
        sent: (canonical_id, body) pairs accepted by send_message().
        initialize_calls / destroy_calls / purge_calls: call counters.
    """

    def __init__(
        self,
        *,
        auto_ready: bool = False,
        identity: Identity | None = None,
        time_fn: Callable[[], int] | None = None,
    ) -> None:
        super().__init__()
        self._auto_ready = auto_ready
        self._identity = identity or DEFAULT_IDENTITY
        self._time_fn = time_fn
        self._open = False
        self._has_credentials = False
        self._ids = itertools.count(1)

        self._init_failures: deque[Exception] = deque()
        self._send_failures: deque[Exception] = deque()

        self.unregistered: set[str] = set()
        self.chats: list[ChatSummary] = []
        self.contacts: list[ContactSummary] = []

        self.sent: list[tuple[str, str]] = []
        self.initialize_calls = 0
        self.destroy_calls = 0
        self.purge_calls = 0

    @property
    def name(self) -> str:
        return "memory"

    def _now_ms(self) -> int:
        if self._time_fn is not None:
            return self._time_fn()
        return int(time.time() * 1000)

    # -- failure injection -------------------------------------------------

    def fail_next_initialize(self, error: Exception | None = None) -> None:
        """Make the next initialize_session() raise."""
        self._init_failures.append(error or InitializationFailure("browser failed to launch"))

    def fail_next_send(self, error: Exception) -> None:
        """Make the next send_message() raise error."""
        self._send_failures.append(error)

    # -- lifecycle drivers -------------------------------------------------

    def issue_challenge(self, token: str) -> None:
        self._emit(ChallengeIssued(token=token))

    def authenticate(self) -> None:
        self._has_credentials = True
        self._emit(Authenticated())

    def become_ready(self, identity: Identity | None = None) -> None:
        self._open = True
        self._emit(Ready(identity=identity or self._identity))

    def report_loading(self, percent: int, message: str = "") -> None:
        self._emit(Loading(percent=percent, message=message))

    def fail_auth(self, reason: str = "auth failure") -> None:
        self._open = False
        self._emit(AuthFailed(reason=reason))

    def drop(self, reason: str = "connection lost") -> None:
        """Simulate a remote disconnect."""
        self._open = False
        self._emit(Disconnected(reason=reason))

    def close_page_silently(self) -> None:
        """Close the session handle without emitting an event."""
        self._open = False

    # -- ChatTransport -----------------------------------------------------

    async def initialize_session(self) -> None:
        self.initialize_calls += 1
        if self._init_failures:
            raise self._init_failures.popleft()
        logger.info("In-memory session initialized")
        if self._auto_ready:
            self.authenticate()
            self.become_ready()

    async def send_message(self, canonical_id: str, body: str) -> SentMessage:
        if self._send_failures:
            raise self._send_failures.popleft()
        if not self._open:
            raise TransportError("Session closed")
        self.sent.append((canonical_id, body))
        return SentMessage(id=f"true_{canonical_id}_{next(self._ids):08d}", timestamp=self._now_ms() // 1000)

    def is_session_open(self) -> bool:
        return self._open

    async def destroy_session(self) -> None:
        self.destroy_calls += 1
        self._open = False

    async def purge_credentials(self) -> None:
        self.purge_calls += 1
        self._has_credentials = False

    @property
    def has_credentials(self) -> bool:
        return self._has_credentials

    async def is_registered_user(self, canonical_id: str) -> bool:
        return canonical_id not in self.unregistered

    async def get_chats(self) -> list[ChatSummary]:
        return list(self.chats)

    async def get_contacts(self) -> list[ContactSummary]:
        return list(self.contacts)
