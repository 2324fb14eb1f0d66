"""
Gateway composition root.

Wires scheduler, transport, supervisor, limiter, pipeline, projector, hub and
metrics exporter from a GatewayConfig. The HTTP layer only talks to this
object.
"""

from __future__ import annotations

import logging
from typing import Any

from prometheus_client.registry import CollectorRegistry

from chatgate.config import GatewayConfig
from chatgate.connectors.bridge import BridgeTransport
from chatgate.connectors.memory import InMemoryTransport
from chatgate.connectors.ratelimit import RateLimiter
from chatgate.connectors.transport import ChatTransport
from chatgate.delivery.pipeline import SendPipeline
from chatgate.scheduler import AsyncioScheduler, Scheduler
from chatgate.server.exporter import MetricsExporter
from chatgate.session.supervisor import ConnectionSupervisor
from chatgate.status.hub import EventHub
from chatgate.status.projector import ChallengeEncoder, StatusProjector

logger = logging.getLogger(__name__)


def build_transport(config: GatewayConfig, scheduler: Scheduler) -> ChatTransport:
    """Create the transport selected by config.transport."""
    if config.transport == "bridge":
        return BridgeTransport(config.bridge)
    return InMemoryTransport(auto_ready=config.auto_ready, time_fn=scheduler.now_ms)


class Gateway:
    """
    Owns every long-lived component of the gateway.

    Usage:
        gateway = Gateway(GatewayConfig.from_env())
        await gateway.start()
        ...
        await gateway.stop()
    """

    def __init__(
        self,
        config: GatewayConfig | None = None,
        *,
        transport: ChatTransport | None = None,
        scheduler: Scheduler | None = None,
        registry: CollectorRegistry | None = None,
        challenge_encoder: ChallengeEncoder | None = None,
    ) -> None:
        self.config = config or GatewayConfig()
        self.scheduler = scheduler or AsyncioScheduler()
        self.transport = transport or build_transport(self.config, self.scheduler)

        self.limiter = RateLimiter(scheduler=self.scheduler, config=self.config.rate_limit)
        self.supervisor = ConnectionSupervisor(self.transport, self.scheduler, self.config.supervisor)
        self.pipeline = SendPipeline(self.supervisor, self.limiter, self.transport, self.config.pipeline)
        self.hub = EventHub()
        self.projector = StatusProjector(
            self.supervisor,
            self.limiter,
            self.hub,
            self.scheduler,
            challenge_encoder=challenge_encoder,
        )
        self.projector.attach()
        self.exporter = MetricsExporter(registry=registry)

        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        """Start the window timer and begin session establishment."""
        if self._started:
            return
        self._started = True
        logger.info(
            "Gateway starting",
            extra={"transport": self.transport.name, "max_per_window": self.config.rate_limit.max_per_window},
        )
        self.limiter.start()
        await self.supervisor.start()

    async def stop(self) -> None:
        """Stop timers, tear down the session and disconnect subscribers."""
        if not self._started:
            return
        self._started = False
        self.limiter.stop()
        await self.supervisor.stop()
        await self.hub.close()
        await self.transport.close()
        if isinstance(self.scheduler, AsyncioScheduler):
            await self.scheduler.shutdown()
        logger.info("Gateway stopped")

    def refresh_metrics(self) -> None:
        self.exporter.update(
            supervisor=self.supervisor,
            limiter=self.limiter,
            pipeline=self.pipeline,
            hub=self.hub,
        )

    def health(self) -> dict[str, Any]:
        """Health info for /healthz."""
        return {
            "status": "ok",
            "phase": self.supervisor.current_phase().value,
            "send_capable": self.supervisor.is_send_capable(),
            "reconnect_pending": self.supervisor.reconnect_pending,
            "manual_operation": self.supervisor.manual_operation_in_flight,
            "rate_limit": self.limiter.get_status(),
            "subscribers": self.hub.subscriber_count,
        }
