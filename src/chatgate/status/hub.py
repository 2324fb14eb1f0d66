"""
Publish/subscribe hub for gateway events.

Broadcast is fire-and-forget per subscriber: every publish spawns one
delivery task per subscriber, so a slow subscriber never delays the others.
A subscriber whose delivery raises, or does not finish within the delivery
timeout, is unsubscribed.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from chatgate.contracts.events import GatewayEvent

logger = logging.getLogger(__name__)

DELIVERY_TIMEOUT_S = 10.0


class Subscriber(ABC):
    """Receiver of gateway events."""

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    async def deliver(self, event: GatewayEvent) -> None:
        """Deliver one event. Raising unsubscribes this subscriber."""
        ...

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name!r})"


class EventHub:
    """Explicit list of subscriber channels with broadcast delivery."""

    def __init__(self, delivery_timeout_s: float = DELIVERY_TIMEOUT_S) -> None:
        if delivery_timeout_s <= 0:
            raise ValueError(f"delivery_timeout_s must be positive, got {delivery_timeout_s}")
        self._delivery_timeout_s = delivery_timeout_s
        self._subscribers: list[Subscriber] = []
        self._pending: set[asyncio.Task[None]] = set()
        self.events_published = 0
        self.deliveries_failed = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, subscriber: Subscriber) -> None:
        if subscriber not in self._subscribers:
            self._subscribers.append(subscriber)
            logger.info(
                "Subscriber connected",
                extra={"subscriber": subscriber.name, "subscribers": len(self._subscribers)},
            )

    def unsubscribe(self, subscriber: Subscriber) -> None:
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)
            logger.info(
                "Subscriber disconnected",
                extra={"subscriber": subscriber.name, "subscribers": len(self._subscribers)},
            )

    def publish(self, event: GatewayEvent) -> None:
        """Push event to every current subscriber without waiting."""
        self.events_published += 1
        for subscriber in list(self._subscribers):
            self.send_to(subscriber, event)

    def send_to(self, subscriber: Subscriber, event: GatewayEvent) -> None:
        """Push event to one subscriber without waiting."""
        task = asyncio.ensure_future(self._deliver(subscriber, event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, subscriber: Subscriber, event: GatewayEvent) -> None:
        try:
            await asyncio.wait_for(subscriber.deliver(event), timeout=self._delivery_timeout_s)
        except Exception as e:
            self.deliveries_failed += 1
            logger.warning(
                "Event delivery failed, dropping subscriber",
                extra={"subscriber": subscriber.name, "error": str(e) or type(e).__name__},
            )
            self.unsubscribe(subscriber)

    async def flush(self) -> None:
        """Wait for all deliveries spawned so far."""
        while True:
            pending = [task for task in self._pending if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def close(self) -> None:
        """Cancel outstanding deliveries and forget all subscribers."""
        for task in list(self._pending):
            task.cancel()
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
        self._subscribers.clear()
