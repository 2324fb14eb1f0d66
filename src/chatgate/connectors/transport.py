"""
Abstract remote chat transport.

The chat-network client is an external collaborator. Concrete transports
wrap it behind this interface and report lifecycle changes through the
registered listener.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from chatgate.session.types import LifecycleEvent

logger = logging.getLogger(__name__)

LifecycleListener = Callable[["LifecycleEvent"], None]


@dataclass(frozen=True)
class SentMessage:
    """Acknowledgement of a dispatched message."""

    id: str
    timestamp: int


@dataclass(frozen=True)
class ChatSummary:
    """Diagnostic view of a chat."""

    id: str
    name: str
    is_group: bool = False
    unread_count: int = 0


@dataclass(frozen=True)
class ContactSummary:
    """Diagnostic view of a contact."""

    id: str
    name: str | None = None
    is_my_contact: bool = False


class ChatTransport(ABC):
    """Abstract base class for chat-network transports."""

    def __init__(self) -> None:
        self._listener: LifecycleListener | None = None

    @property
    @abstractmethod
    def name(self) -> str:
        """Short transport name for logs and status."""
        ...

    def set_lifecycle_listener(self, listener: LifecycleListener | None) -> None:
        """Register the single consumer of lifecycle events."""
        self._listener = listener

    def _emit(self, event: LifecycleEvent) -> None:
        """Deliver a lifecycle event to the listener, if any."""
        if self._listener is None:
            logger.debug("Lifecycle event dropped, no listener", extra={"event": type(event).__name__})
            return
        self._listener(event)

    @abstractmethod
    async def initialize_session(self) -> None:
        """
        Begin establishing the remote session.

        Lifecycle events may be emitted while this is in progress.

        Raises:
            InitializationFailure: If the session could not be started.
        """
        ...

    @abstractmethod
    async def send_message(self, canonical_id: str, body: str) -> SentMessage:
        """Send a text message to a canonical recipient id."""
        ...

    @abstractmethod
    def is_session_open(self) -> bool:
        """Whether the underlying session handle is open right now."""
        ...

    @abstractmethod
    async def destroy_session(self) -> None:
        """Tear down the session handle. Safe to call when not started."""
        ...

    @abstractmethod
    async def purge_credentials(self) -> None:
        """Delete persisted credentials so the next start needs a new scan."""
        ...

    @abstractmethod
    async def is_registered_user(self, canonical_id: str) -> bool:
        """Whether the recipient exists on the network."""
        ...

    @abstractmethod
    async def get_chats(self) -> list[ChatSummary]:
        ...

    @abstractmethod
    async def get_contacts(self) -> list[ContactSummary]:
        ...

    async def close(self) -> None:
        """Release any resources held by this transport."""
        await self.destroy_session()

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name!r})"
