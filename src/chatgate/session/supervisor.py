"""
Connection supervisor for the remote chat session.

Owns the session lifecycle state machine:

    DISCONNECTED -> AWAITING_SCAN -> AUTHENTICATED -> READY

and the recovery policy around it:
- Unscheduled disconnect: exactly one reconnect after a fixed delay (5s)
- Initialization failure: FAILED, retry after a longer fixed delay (10s),
  indefinitely, so the gateway self-heals when the remote side comes back
- Manual restart / clear-session: tear down, reset, settle, start again.
  While one is in flight, automatic reconnects are suppressed.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from chatgate.contracts.events import SessionPhase
from chatgate.session.types import (
    ACTIVE_PHASES,
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
    TransitionRecord,
)

if TYPE_CHECKING:
    from chatgate.connectors.transport import ChatTransport
    from chatgate.scheduler import Scheduler, TimerHandle

logger = logging.getLogger(__name__)

TransitionListener = Callable[[Transition], None]
LoadingListener = Callable[[Loading], None]

# Phases from which a fresh challenge or authentication is accepted
_PRE_AUTH_PHASES = frozenset(
    {SessionPhase.DISCONNECTED, SessionPhase.FAILED, SessionPhase.AWAITING_SCAN}
)


@dataclass
class SupervisorConfig:
    """
    Timing knobs for session recovery.

    Attributes:
        reconnect_delay_ms: Delay before reconnecting after a disconnect.
        init_retry_delay_ms: Delay before retrying a failed initialization.
        settle_delay_ms: Pause between teardown and start on manual operations.
    """

    reconnect_delay_ms: int = 5000
    init_retry_delay_ms: int = 10000
    settle_delay_ms: int = 2500

    def __post_init__(self) -> None:
        for name in ("reconnect_delay_ms", "init_retry_delay_ms", "settle_delay_ms"):
            value = getattr(self, name)
            if value < 0:
                raise ValueError(f"{name} must be >= 0, got {value}")


@dataclass
class SupervisorMetrics:
    """Counters for observability."""

    transitions: int = 0
    disconnects: int = 0
    init_failures: int = 0
    reconnects_scheduled: int = 0
    reconnect_attempts: int = 0
    reconnects_suppressed: int = 0
    manual_operations: int = 0


class ConnectionSupervisor:
    """
    Single owner of SessionState.

    All state changes go through on_lifecycle_event(), start(), restart(),
    clear_session() and stop(). Other components read snapshot().
    """

    def __init__(
        self,
        transport: ChatTransport,
        scheduler: Scheduler,
        config: SupervisorConfig | None = None,
    ) -> None:
        self._transport = transport
        self._scheduler = scheduler
        self._config = config or SupervisorConfig()

        self._state = SessionState(
            last_transition=TransitionRecord(at_ms=scheduler.now_ms(), reason="init"),
        )
        self._starting = False
        self._stopped = False
        self._manual_op: str | None = None
        self._reconnect_handle: TimerHandle | None = None
        self._background_tasks: set[asyncio.Task[None]] = set()

        self._transition_listeners: list[TransitionListener] = []
        self._loading_listeners: list[LoadingListener] = []

        self.metrics = SupervisorMetrics()

        transport.set_lifecycle_listener(self.on_lifecycle_event)

    # -- read side -----------------------------------------------------------

    def current_phase(self) -> SessionPhase:
        return self._state.phase

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            phase=self._state.phase,
            pending_challenge=self._state.pending_challenge,
            identity=self._state.identity,
            last_transition=self._state.last_transition,
        )

    def is_send_capable(self) -> bool:
        """
        True iff the lifecycle says READY and the transport handle is open.

        The transport flag alone can be stale after a silent disconnect, and
        the phase alone lags a page that closed without an event.
        """
        return self._state.phase == SessionPhase.READY and self._transport.is_session_open()

    @property
    def manual_operation_in_flight(self) -> bool:
        return self._manual_op is not None

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None and not self._reconnect_handle.cancelled

    def add_transition_listener(self, listener: TransitionListener) -> None:
        self._transition_listeners.append(listener)

    def add_loading_listener(self, listener: LoadingListener) -> None:
        self._loading_listeners.append(listener)

    # -- lifecycle -------------------------------------------------------------

    async def start(self) -> None:
        """
        Begin session establishment. Idempotent.

        No-op while a session is awaiting scan, authenticated or ready, or
        while another start is in progress. Initialization failures are not
        raised: the supervisor enters FAILED and schedules a retry.
        """
        self._stopped = False
        if self._state.phase in ACTIVE_PHASES or self._starting:
            logger.debug(
                "Start ignored, session already active",
                extra={"phase": self._state.phase.value, "starting": self._starting},
            )
            return

        self._starting = True
        logger.info("Initializing session", extra={"transport": self._transport.name})
        try:
            await self._transport.initialize_session()
        except Exception as e:
            self.metrics.init_failures += 1
            logger.error(
                "Session initialization failed",
                extra={"error": str(e), "retry_delay_ms": self._config.init_retry_delay_ms},
            )
            self._transition(SessionPhase.FAILED, "init_failed")
            self._schedule_reconnect(self._config.init_retry_delay_ms, "init_failed")
        finally:
            self._starting = False

    def on_lifecycle_event(self, event: LifecycleEvent) -> None:
        """Apply one lifecycle event to the state machine."""
        phase = self._state.phase

        if isinstance(event, Loading):
            for loading_listener in self._loading_listeners:
                loading_listener(event)
            return

        if isinstance(event, ChallengeIssued):
            if phase not in _PRE_AUTH_PHASES:
                self._ignore(event)
                return
            self._state.pending_challenge = event.token
            self._transition(SessionPhase.AWAITING_SCAN, "challenge_issued")

        elif isinstance(event, Authenticated):
            if phase == SessionPhase.AUTHENTICATED:
                return
            if phase not in _PRE_AUTH_PHASES:
                self._ignore(event)
                return
            self._transition(SessionPhase.AUTHENTICATED, "authenticated")

        elif isinstance(event, Ready):
            if phase != SessionPhase.AUTHENTICATED:
                self._ignore(event)
                return
            self._state.identity = event.identity
            self._transition(SessionPhase.READY, "ready")

        elif isinstance(event, AuthFailed):
            logger.error("Authentication failed", extra={"reason": event.reason})
            self._state.identity = None
            self._transition(SessionPhase.DISCONNECTED, "auth_failed")

        elif isinstance(event, Disconnected):
            self.metrics.disconnects += 1
            logger.warning("Session disconnected", extra={"reason": event.reason})
            self._transition(SessionPhase.DISCONNECTED, "disconnected")
            if self._manual_op is not None:
                self.metrics.reconnects_suppressed += 1
                logger.info(
                    "Reconnect suppressed, manual operation in flight",
                    extra={"operation": self._manual_op},
                )
            else:
                self._schedule_reconnect(self._config.reconnect_delay_ms, "disconnected")

    # -- manual operations -----------------------------------------------------

    def request_restart(self) -> bool:
        """Start a restart in the background. False if one is already running."""
        return self._spawn_manual("restart", purge=False)

    def request_clear_session(self) -> bool:
        """Start a clear-session in the background. False if busy."""
        return self._spawn_manual("clear_session", purge=True)

    async def restart(self) -> None:
        """Tear down the session and start again after the settle delay."""
        if self._acquire_manual("restart"):
            await self._manual_cycle("restart", purge=False)

    async def clear_session(self) -> None:
        """Like restart(), but forget identity and purge stored credentials."""
        if self._acquire_manual("clear_session"):
            await self._manual_cycle("clear_session", purge=True)

    async def stop(self) -> None:
        """Stop supervising: cancel timers and tear down the session."""
        self._stopped = True
        self._cancel_reconnect()
        for task in list(self._background_tasks):
            task.cancel()
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
        try:
            await self._transport.destroy_session()
        except Exception as e:
            logger.warning("Session teardown failed", extra={"error": str(e)})
        logger.info("Supervisor stopped")

    def _acquire_manual(self, name: str) -> bool:
        if self._manual_op is not None:
            logger.info(
                "Manual operation already in progress",
                extra={"operation": self._manual_op, "requested": name},
            )
            return False
        self._manual_op = name
        self.metrics.manual_operations += 1
        return True

    def _spawn_manual(self, name: str, *, purge: bool) -> bool:
        if not self._acquire_manual(name):
            return False
        task = asyncio.create_task(self._manual_cycle(name, purge=purge))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return True

    async def _manual_cycle(self, name: str, *, purge: bool) -> None:
        """Teardown, reset, optional purge, settle, start. Guard is held by caller."""
        try:
            logger.info("Manual session operation", extra={"operation": name})
            self._cancel_reconnect()
            try:
                await self._transport.destroy_session()
            except Exception as e:
                logger.warning("Session teardown failed", extra={"error": str(e)})

            if purge:
                self._state.identity = None
            self._transition(SessionPhase.DISCONNECTED, name)

            if purge:
                try:
                    await self._transport.purge_credentials()
                except Exception as e:
                    logger.error("Credential purge failed", extra={"error": str(e)})

            await self._scheduler.sleep(self._config.settle_delay_ms)
        finally:
            self._manual_op = None

        if not self._stopped:
            await self.start()

    # -- internals -------------------------------------------------------------

    def _transition(self, phase: SessionPhase, reason: str) -> None:
        previous = self._state.phase
        if phase != SessionPhase.AWAITING_SCAN:
            self._state.pending_challenge = None
        self._state.phase = phase
        self._state.last_transition = TransitionRecord(at_ms=self._scheduler.now_ms(), reason=reason)
        self.metrics.transitions += 1

        logger.info(
            "Session phase changed",
            extra={"old_phase": previous.value, "new_phase": phase.value, "reason": reason},
        )

        transition = Transition(previous=previous, current=phase, reason=reason, snapshot=self.snapshot())
        for listener in self._transition_listeners:
            listener(transition)

    def _ignore(self, event: LifecycleEvent) -> None:
        logger.warning(
            "Lifecycle event ignored in current phase",
            extra={"event": type(event).__name__, "phase": self._state.phase.value},
        )

    def _schedule_reconnect(self, delay_ms: int, reason: str) -> None:
        if self._stopped:
            return
        if self.reconnect_pending:
            logger.debug("Reconnect already scheduled", extra={"reason": reason})
            return
        self.metrics.reconnects_scheduled += 1
        logger.info("Reconnect scheduled", extra={"delay_ms": delay_ms, "reason": reason})
        self._reconnect_handle = self._scheduler.call_later(delay_ms, self._run_reconnect)

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    async def _run_reconnect(self) -> None:
        self._reconnect_handle = None
        if self._stopped or self._manual_op is not None:
            return
        self.metrics.reconnect_attempts += 1
        logger.info("Reconnecting session")
        await self.start()
