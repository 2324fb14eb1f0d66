"""
Outbound send rate limiter.

Protects the remote chat network from abusive traffic:
- Minimum spacing between consecutive sends
- Fixed 60s counting window with a per-window cap
- Punitive cooldown after the remote side confirms throttling

The window is reset by a periodic timer, not a sliding decay. A full burst at
second 59 followed by another at second 61 is therefore allowed.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from chatgate.scheduler import Scheduler, TimerHandle

logger = logging.getLogger(__name__)


@dataclass
class RateLimiterConfig:
    """
    Rate limiter knobs.

    Attributes:
        max_per_window: Sends allowed per window before a forced wait.
        min_spacing_ms: Floor between consecutive send attempts.
        cooldown_ms: Penalty wait after a confirmed remote rate-limit signal.
        window_ms: Length of the fixed counting window.
        window_cooldown_ms: Wait imposed when the window cap is reached.
    """

    max_per_window: int = 10
    min_spacing_ms: int = 3000
    cooldown_ms: int = 30000
    window_ms: int = 60000
    window_cooldown_ms: int = 61000

    def __post_init__(self) -> None:
        if self.max_per_window < 1:
            raise ValueError(f"max_per_window must be >= 1, got {self.max_per_window}")
        if self.min_spacing_ms < 0:
            raise ValueError(f"min_spacing_ms must be >= 0, got {self.min_spacing_ms}")
        if self.cooldown_ms < 0:
            raise ValueError(f"cooldown_ms must be >= 0, got {self.cooldown_ms}")
        if self.window_ms <= 0:
            raise ValueError(f"window_ms must be > 0, got {self.window_ms}")
        if self.window_cooldown_ms < 0:
            raise ValueError(f"window_cooldown_ms must be >= 0, got {self.window_cooldown_ms}")


@dataclass
class RateWindow:
    """Send cadence state. Mutated only by RateLimiter."""

    window_start_ms: int = 0
    count_in_window: int = 0
    last_send_at_ms: int = 0
    penalized: bool = False


@dataclass
class RateLimiterMetrics:
    """Counters for observability."""

    reservations: int = 0
    spacing_waits: int = 0
    window_waits: int = 0
    penalties: int = 0
    total_wait_ms: int = 0


@dataclass
class RateLimiter:
    """
    Gate for outbound sends.

    reserve() suspends cooperatively through the scheduler, so other work on
    the loop (status queries, lifecycle events) continues while a send waits.
    Concurrent callers are served one at a time in arrival order.

    Usage:
        limiter = RateLimiter(scheduler=scheduler)
        limiter.start()  # periodic window reset
        await limiter.reserve()
        # ... dispatch ...
    """

    scheduler: Scheduler
    config: RateLimiterConfig = field(default_factory=RateLimiterConfig)

    _window: RateWindow = field(default_factory=RateWindow, init=False)
    _lock: asyncio.Lock | None = field(default=None, init=False)
    _tick_handle: TimerHandle | None = field(default=None, init=False)

    metrics: RateLimiterMetrics = field(default_factory=RateLimiterMetrics, init=False)

    def __post_init__(self) -> None:
        self._window.window_start_ms = self.scheduler.now_ms()

    def _get_lock(self) -> asyncio.Lock:
        """Create the lock lazily so it binds to the running loop."""
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    def start(self) -> None:
        """Start the periodic window reset. Idempotent."""
        if self._tick_handle is not None and not self._tick_handle.cancelled:
            return
        self._tick_handle = self.scheduler.call_every(self.config.window_ms, self.on_window_tick)

    def stop(self) -> None:
        """Stop the periodic window reset."""
        if self._tick_handle is not None:
            self._tick_handle.cancel()
            self._tick_handle = None

    async def reserve(self) -> None:
        """
        Wait until one message may be sent, then record the slot.

        Never fails; always eventually returns.
        """
        async with self._get_lock():
            waited_ms = 0

            if self._window.penalized or self._window.count_in_window >= self.config.max_per_window:
                if self._window.penalized:
                    delay_ms = self.config.cooldown_ms
                else:
                    delay_ms = self.config.window_cooldown_ms
                    self.metrics.window_waits += 1
                logger.warning(
                    "Send window exhausted, cooling down",
                    extra={
                        "delay_ms": delay_ms,
                        "penalized": self._window.penalized,
                        "count_in_window": self._window.count_in_window,
                    },
                )
                await self.scheduler.sleep(delay_ms)
                waited_ms += delay_ms
                self._window.count_in_window = 0
                self._window.penalized = False

            if self._window.last_send_at_ms > 0:
                elapsed_ms = self.scheduler.now_ms() - self._window.last_send_at_ms
                if elapsed_ms < self.config.min_spacing_ms:
                    delay_ms = self.config.min_spacing_ms - elapsed_ms
                    self.metrics.spacing_waits += 1
                    logger.debug("Spacing sends", extra={"delay_ms": delay_ms})
                    await self.scheduler.sleep(delay_ms)
                    waited_ms += delay_ms

            self._window.count_in_window += 1
            self._window.last_send_at_ms = self.scheduler.now_ms()
            self.metrics.reservations += 1
            self.metrics.total_wait_ms += waited_ms

    def on_window_tick(self) -> None:
        """Hard reset of the counting window. A pending penalty survives."""
        self._window.count_in_window = 0
        self._window.window_start_ms = self.scheduler.now_ms()
        logger.debug("Send window reset")

    def penalize(self) -> None:
        """React to a confirmed remote rate-limit signal."""
        self._window.count_in_window = self.config.max_per_window
        self._window.penalized = True
        self.metrics.penalties += 1
        logger.warning(
            "Remote rate limit confirmed, next send waits for cooldown",
            extra={"cooldown_ms": self.config.cooldown_ms},
        )

    def snapshot(self) -> RateWindow:
        """Read-only copy of the current window."""
        return replace(self._window)

    def get_status(self) -> dict[str, int | bool]:
        """Get current limiter status for observability."""
        return {
            "count_in_window": self._window.count_in_window,
            "max_per_window": self.config.max_per_window,
            "penalized": self._window.penalized,
            "last_send_at_ms": self._window.last_send_at_ms,
        }
