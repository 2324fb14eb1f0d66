"""
Status projection.

Derives the externally visible StatusSnapshot from the supervisor's session
snapshot and the limiter's rate window. Holds no mutable state of its own;
on every transition (and for every new subscriber) it pushes the current
challenge, if any, the status snapshot and a human-readable notice through
the EventHub.
"""

from __future__ import annotations

import base64
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from chatgate.contracts.events import GatewayEvent, SessionPhase, StatusSnapshot

if TYPE_CHECKING:
    from chatgate.connectors.ratelimit import RateLimiter, RateWindow
    from chatgate.scheduler import Scheduler
    from chatgate.session.supervisor import ConnectionSupervisor
    from chatgate.session.types import Loading, SessionSnapshot, Transition
    from chatgate.status.hub import EventHub, Subscriber

logger = logging.getLogger(__name__)

# Turns the raw scan challenge into something a browser can display
ChallengeEncoder = Callable[[str], str]

GREETING_NOTICE = "Connected to gateway"

# Notice pushed when the session enters a phase
PHASE_NOTICES: dict[SessionPhase, str] = {
    SessionPhase.AWAITING_SCAN: "Scan the challenge to link this device",
    SessionPhase.AUTHENTICATED: "Authenticated, loading session",
    SessionPhase.READY: "Ready to send messages",
    SessionPhase.DISCONNECTED: "Disconnected",
    SessionPhase.FAILED: "Session failed to start, retrying",
}
AUTH_FAILED_NOTICE = "Authentication failed, scan again"


def transition_notice(transition: Transition) -> str | None:
    """Notice text for a phase change; None when the phase did not change."""
    if transition.previous == transition.current:
        return None
    if transition.reason == "auth_failed":
        return AUTH_FAILED_NOTICE
    return PHASE_NOTICES.get(transition.current)


def encode_challenge_data_url(token: str) -> str:
    """Default encoder: the raw challenge as a base64 text/plain data URL."""
    encoded = base64.b64encode(token.encode("utf-8")).decode("ascii")
    return f"data:text/plain;base64,{encoded}"


def project_status(
    session: SessionSnapshot,
    window: RateWindow,
    max_per_window: int,
    now_ms: int,
) -> StatusSnapshot:
    """Pure derivation of the status snapshot."""
    return StatusSnapshot(
        phase=session.phase,
        identity=session.identity,
        has_challenge=session.has_challenge,
        messages_this_window=window.count_in_window,
        max_per_window=max_per_window,
        timestamp=now_ms,
    )


class StatusProjector:
    """Builds and broadcasts status snapshots."""

    def __init__(
        self,
        supervisor: ConnectionSupervisor,
        limiter: RateLimiter,
        hub: EventHub,
        scheduler: Scheduler,
        *,
        challenge_encoder: ChallengeEncoder | None = None,
    ) -> None:
        self._supervisor = supervisor
        self._limiter = limiter
        self._hub = hub
        self._scheduler = scheduler
        self._encode = challenge_encoder or encode_challenge_data_url

    def snapshot(self) -> StatusSnapshot:
        return project_status(
            self._supervisor.snapshot(),
            self._limiter.snapshot(),
            self._limiter.config.max_per_window,
            self._scheduler.now_ms(),
        )

    def _events(self, session: SessionSnapshot) -> list[GatewayEvent]:
        events: list[GatewayEvent] = []
        if session.pending_challenge is not None:
            try:
                events.append(GatewayEvent.challenge(self._encode(session.pending_challenge)))
            except Exception as e:
                logger.error("Challenge encoding failed", extra={"error": str(e)})
        events.append(GatewayEvent.status(self.snapshot()))
        return events

    def on_transition(self, transition: Transition) -> None:
        """Transition listener: broadcast to all subscribers."""
        for event in self._events(transition.snapshot):
            self._hub.publish(event)
        notice = transition_notice(transition)
        if notice is not None:
            self._hub.publish(GatewayEvent.notice(notice))

    def on_loading(self, loading: Loading) -> None:
        """Loading listener: broadcast progress."""
        self._hub.publish(GatewayEvent.loading(loading.percent, loading.message))

    def greet(self, subscriber: Subscriber) -> None:
        """Send the current challenge, status and a greeting to a new subscriber."""
        for event in self._events(self._supervisor.snapshot()):
            self._hub.send_to(subscriber, event)
        self._hub.send_to(subscriber, GatewayEvent.notice(GREETING_NOTICE))

    def attach(self) -> None:
        """Register as the supervisor's transition and loading listener."""
        self._supervisor.add_transition_listener(self.on_transition)
        self._supervisor.add_loading_listener(self.on_loading)
