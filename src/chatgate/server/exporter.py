"""
Prometheus metrics exporter for the gateway.

Exports low-cardinality metrics only. The one labelled gauge is the session
phase (five fixed values); failures are labelled by error kind (fixed enum).
Recipients, message ids and subscriber names never become labels.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from prometheus_client import Counter, Gauge
from prometheus_client.registry import CollectorRegistry

from chatgate.contracts.events import SessionPhase

if TYPE_CHECKING:
    from chatgate.connectors.ratelimit import RateLimiter
    from chatgate.delivery.pipeline import SendPipeline
    from chatgate.session.supervisor import ConnectionSupervisor
    from chatgate.status.hub import EventHub


# Labels that must never be attached to a gateway metric
FORBIDDEN_LABELS = frozenset(
    {
        "recipient",
        "number",
        "chat_id",
        "message_id",
        "subscriber",
        "ip",
        "token",
    }
)

# PipelineMetrics attribute -> failure kind label
_FAILURE_KINDS: dict[str, str] = {
    "rejected_not_ready": "not_ready",
    "rejected_invalid": "invalid_input",
    "unregistered": "unregistered_recipient",
    "transport_errors": "transport_error",
}


class MetricsExporter:
    """
    Syncs component counters into a Prometheus registry.

    Components keep plain dataclass counters; update() copies gauges and
    advances Prometheus counters by the delta since the previous call.

    Usage:
        exporter = MetricsExporter(registry=CollectorRegistry())
        exporter.update(supervisor=sup, limiter=lim, pipeline=pipe, hub=hub)
        # generate_latest(exporter.registry) -> bytes for /metrics
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self._registry = registry or CollectorRegistry()

        # Session
        self._session_phase = Gauge(
            "chatgate_session_phase",
            "1 for the current session phase, 0 otherwise",
            ["phase"],
            registry=self._registry,
        )
        self._session_send_capable = Gauge(
            "chatgate_session_send_capable",
            "1 if the session can send right now",
            registry=self._registry,
        )
        self._session_disconnects = Counter(
            "chatgate_session_disconnects",
            "Remote disconnect events",
            registry=self._registry,
        )
        self._session_init_failures = Counter(
            "chatgate_session_init_failures",
            "Failed session initializations",
            registry=self._registry,
        )
        self._session_reconnect_attempts = Counter(
            "chatgate_session_reconnect_attempts",
            "Automatic reconnect attempts",
            registry=self._registry,
        )

        # Rate limiter
        self._window_count = Gauge(
            "chatgate_rate_window_count",
            "Messages sent in the current window",
            registry=self._registry,
        )
        self._window_max = Gauge(
            "chatgate_rate_window_max",
            "Configured messages per window",
            registry=self._registry,
        )
        self._penalized = Gauge(
            "chatgate_rate_penalized",
            "1 while a remote rate-limit penalty is pending",
            registry=self._registry,
        )
        self._penalties = Counter(
            "chatgate_rate_penalties",
            "Confirmed remote rate-limit signals",
            registry=self._registry,
        )
        self._wait_ms = Counter(
            "chatgate_rate_wait_ms",
            "Total milliseconds sends spent waiting in the limiter",
            registry=self._registry,
        )

        # Sends
        self._messages_sent = Counter(
            "chatgate_messages_sent",
            "Messages accepted by the remote network",
            registry=self._registry,
        )
        self._send_failures = Counter(
            "chatgate_send_failures",
            "Rejected or failed sends by error kind",
            ["kind"],
            registry=self._registry,
        )

        # Subscribers
        self._subscribers = Gauge(
            "chatgate_event_subscribers",
            "Connected event subscribers",
            registry=self._registry,
        )
        self._events_published = Counter(
            "chatgate_events_published",
            "Events broadcast to subscribers",
            registry=self._registry,
        )

        self._last: dict[str, int] = {}

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def _advance(self, key: str, counter: Counter, current: int) -> None:
        """Counters are monotonic: increment by the delta since last sync."""
        delta = current - self._last.get(key, 0)
        if delta > 0:
            counter.inc(delta)
        self._last[key] = current

    def update(
        self,
        supervisor: ConnectionSupervisor | None = None,
        limiter: RateLimiter | None = None,
        pipeline: SendPipeline | None = None,
        hub: EventHub | None = None,
    ) -> None:
        """Sync all metrics. Call on every scrape."""
        if supervisor is not None:
            self._update_session(supervisor)
        if limiter is not None:
            self._update_limiter(limiter)
        if pipeline is not None:
            self._update_pipeline(pipeline)
        if hub is not None:
            self._subscribers.set(hub.subscriber_count)
            self._advance("events_published", self._events_published, hub.events_published)

    def _update_session(self, supervisor: ConnectionSupervisor) -> None:
        current = supervisor.current_phase()
        for phase in SessionPhase:
            self._session_phase.labels(phase=phase.value).set(1 if phase == current else 0)
        self._session_send_capable.set(1 if supervisor.is_send_capable() else 0)

        m = supervisor.metrics
        self._advance("disconnects", self._session_disconnects, m.disconnects)
        self._advance("init_failures", self._session_init_failures, m.init_failures)
        self._advance("reconnect_attempts", self._session_reconnect_attempts, m.reconnect_attempts)

    def _update_limiter(self, limiter: RateLimiter) -> None:
        window = limiter.snapshot()
        self._window_count.set(window.count_in_window)
        self._window_max.set(limiter.config.max_per_window)
        self._penalized.set(1 if window.penalized else 0)

        self._advance("penalties", self._penalties, limiter.metrics.penalties)
        self._advance("total_wait_ms", self._wait_ms, limiter.metrics.total_wait_ms)

    def _update_pipeline(self, pipeline: SendPipeline) -> None:
        m = pipeline.metrics
        self._advance("sent", self._messages_sent, m.sent)
        for attr, kind in _FAILURE_KINDS.items():
            self._advance(f"failures.{kind}", self._send_failures.labels(kind=kind), getattr(m, attr))

    def reset_counter_tracking(self) -> None:
        """Forget last-seen values. Does NOT reset the Prometheus counters."""
        self._last.clear()


# Counters are exported with the _total suffix by prometheus_client
REQUIRED_METRIC_NAMES: frozenset[str] = frozenset(
    {
        "chatgate_session_phase",
        "chatgate_session_send_capable",
        "chatgate_session_disconnects_total",
        "chatgate_session_init_failures_total",
        "chatgate_session_reconnect_attempts_total",
        "chatgate_rate_window_count",
        "chatgate_rate_window_max",
        "chatgate_rate_penalized",
        "chatgate_rate_penalties_total",
        "chatgate_rate_wait_ms_total",
        "chatgate_messages_sent_total",
        "chatgate_send_failures_total",
        "chatgate_event_subscribers",
        "chatgate_events_published_total",
    }
)
