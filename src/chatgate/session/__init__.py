"""Remote session lifecycle: events, state and the supervising state machine."""

from chatgate.session.supervisor import (
    ConnectionSupervisor,
    SupervisorConfig,
    SupervisorMetrics,
)
from chatgate.session.types import (
    AuthFailed,
    Authenticated,
    ChallengeIssued,
    Disconnected,
    LifecycleEvent,
    Loading,
    Ready,
    SessionSnapshot,
    SessionState,
    Transition,
)

__all__ = [
    "AuthFailed",
    "Authenticated",
    "ChallengeIssued",
    "ConnectionSupervisor",
    "Disconnected",
    "LifecycleEvent",
    "Loading",
    "Ready",
    "SessionSnapshot",
    "SessionState",
    "SupervisorConfig",
    "SupervisorMetrics",
    "Transition",
]
