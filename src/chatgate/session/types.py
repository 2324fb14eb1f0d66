"""
Types for the remote session lifecycle.

Lifecycle events are emitted by the transport and consumed by
ConnectionSupervisor.on_lifecycle_event(); SessionState is owned by the
supervisor and only leaves it as a frozen SessionSnapshot.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from chatgate.contracts.events import Identity, SessionPhase

# Phases in which start() is a no-op
ACTIVE_PHASES: frozenset[SessionPhase] = frozenset(
    {
        SessionPhase.AWAITING_SCAN,
        SessionPhase.AUTHENTICATED,
        SessionPhase.READY,
    }
)


@dataclass(frozen=True)
class ChallengeIssued:
    """Transport produced a scan challenge (QR payload)."""

    token: str


@dataclass(frozen=True)
class Authenticated:
    """Scan accepted or persisted credentials restored."""


@dataclass(frozen=True)
class Ready:
    """Session fully loaded and able to send."""

    identity: Identity


@dataclass(frozen=True)
class AuthFailed:
    """Credentials rejected by the remote side."""

    reason: str = ""


@dataclass(frozen=True)
class Disconnected:
    """Remote session dropped."""

    reason: str = ""


@dataclass(frozen=True)
class Loading:
    """Progress report while the remote session loads. No phase change."""

    percent: int
    message: str = ""


LifecycleEvent = ChallengeIssued | Authenticated | Ready | AuthFailed | Disconnected | Loading


@dataclass(frozen=True)
class TransitionRecord:
    """When and why the phase last changed."""

    at_ms: int
    reason: str


@dataclass
class SessionState:
    """Mutable session state. Mutated only by ConnectionSupervisor."""

    phase: SessionPhase = SessionPhase.DISCONNECTED
    pending_challenge: str | None = None
    identity: Identity | None = None
    last_transition: TransitionRecord = field(
        default_factory=lambda: TransitionRecord(at_ms=0, reason="init")
    )


@dataclass(frozen=True)
class SessionSnapshot:
    """Read-only view of SessionState handed to other components."""

    phase: SessionPhase
    pending_challenge: str | None
    identity: Identity | None
    last_transition: TransitionRecord

    @property
    def has_challenge(self) -> bool:
        return self.pending_challenge is not None


@dataclass(frozen=True)
class Transition:
    """A state change applied by the supervisor, delivered to listeners."""

    previous: SessionPhase
    current: SessionPhase
    reason: str
    snapshot: SessionSnapshot
