"""
Scheduling primitives for the gateway.

Every timed behaviour in the gateway (rate-limit waits, window resets,
reconnect delays, restart settle delays) goes through a Scheduler so that
production runs on the asyncio loop while tests advance time explicitly.

- AsyncioScheduler: wall clock + asyncio tasks.
- ManualScheduler: virtual clock, timers fire only inside advance().
"""

from __future__ import annotations

import asyncio
import heapq
import inspect
import itertools
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

# Callback may be a plain function or return an awaitable (coroutine)
TimerCallback = Callable[[], Awaitable[Any] | None]


class TimerHandle(ABC):
    """Handle returned for deferred and periodic callbacks."""

    @abstractmethod
    def cancel(self) -> None:
        """Cancel the timer. Idempotent."""
        ...

    @property
    @abstractmethod
    def cancelled(self) -> bool:
        """Whether cancel() was called."""
        ...


class Scheduler(ABC):
    """Clock, cooperative sleep, one-shot and periodic timers."""

    @abstractmethod
    def now_ms(self) -> int:
        """Current time in milliseconds."""
        ...

    @abstractmethod
    async def sleep(self, delay_ms: int) -> None:
        """Suspend the calling coroutine without blocking the loop."""
        ...

    @abstractmethod
    def call_later(self, delay_ms: int, callback: TimerCallback) -> TimerHandle:
        """Run callback once after delay_ms."""
        ...

    @abstractmethod
    def call_every(self, interval_ms: int, callback: TimerCallback) -> TimerHandle:
        """Run callback every interval_ms until cancelled."""
        ...


async def _invoke(callback: TimerCallback) -> None:
    """Run a timer callback, awaiting it if it returned an awaitable."""
    result = callback()
    if inspect.isawaitable(result):
        await result


class _TaskHandle(TimerHandle):
    def __init__(self, task: asyncio.Task[None]) -> None:
        self._task = task
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True
        if not self._task.done():
            self._task.cancel()

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class AsyncioScheduler(Scheduler):
    """Scheduler backed by the running asyncio loop and the wall clock."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[None]] = set()

    def now_ms(self) -> int:
        return int(time.time() * 1000)

    async def sleep(self, delay_ms: int) -> None:
        await asyncio.sleep(max(delay_ms, 0) / 1000)

    def _spawn(self, coro: Awaitable[None]) -> asyncio.Task[None]:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def call_later(self, delay_ms: int, callback: TimerCallback) -> TimerHandle:
        async def run() -> None:
            await asyncio.sleep(max(delay_ms, 0) / 1000)
            try:
                await _invoke(callback)
            except Exception as e:
                logger.error("Deferred callback failed", extra={"error": str(e)})

        return _TaskHandle(self._spawn(run()))

    def call_every(self, interval_ms: int, callback: TimerCallback) -> TimerHandle:
        if interval_ms <= 0:
            raise ValueError(f"interval_ms must be > 0, got {interval_ms}")

        async def run() -> None:
            while True:
                await asyncio.sleep(interval_ms / 1000)
                try:
                    await _invoke(callback)
                except Exception as e:
                    logger.error("Periodic callback failed", extra={"error": str(e)})

        return _TaskHandle(self._spawn(run()))

    async def shutdown(self) -> None:
        """Cancel every outstanding timer task."""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()


@dataclass(order=True)
class _ManualTimer:
    due_ms: int
    seq: int
    callback: TimerCallback = field(compare=False)
    interval_ms: int | None = field(default=None, compare=False)
    cancelled: bool = field(default=False, compare=False)


class _ManualHandle(TimerHandle):
    def __init__(self, timer: _ManualTimer) -> None:
        self._timer = timer

    def cancel(self) -> None:
        self._timer.cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._timer.cancelled


class ManualScheduler(Scheduler):
    """
    Deterministic scheduler with a virtual clock.

    Time only moves inside advance(). Timers due within the advanced span fire
    in (due time, registration order); coroutines suspended in sleep() resume
    when their wake-up time is reached. Between steps the loop is yielded to
    so that woken coroutines can run until their next suspension point.

    Usage:
        scheduler = ManualScheduler()
        task = asyncio.create_task(limiter.reserve())
        await scheduler.advance(3000)
    """

    # Loop iterations granted to woken coroutines per step
    SETTLE_ITERATIONS = 100

    def __init__(self, start_ms: int = 1_000_000) -> None:
        self._now_ms = start_ms
        self._timers: list[_ManualTimer] = []
        self._seq = itertools.count()
        self._tasks: set[asyncio.Task[None]] = set()

    def now_ms(self) -> int:
        return self._now_ms

    def _push(self, delay_ms: int, callback: TimerCallback, interval_ms: int | None) -> _ManualTimer:
        timer = _ManualTimer(
            due_ms=self._now_ms + max(delay_ms, 0),
            seq=next(self._seq),
            callback=callback,
            interval_ms=interval_ms,
        )
        heapq.heappush(self._timers, timer)
        return timer

    async def sleep(self, delay_ms: int) -> None:
        if delay_ms <= 0:
            await asyncio.sleep(0)
            return
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()

        def wake() -> None:
            if not future.done():
                future.set_result(None)

        self._push(delay_ms, wake, None)
        await future

    def call_later(self, delay_ms: int, callback: TimerCallback) -> TimerHandle:
        return _ManualHandle(self._push(delay_ms, callback, None))

    def call_every(self, interval_ms: int, callback: TimerCallback) -> TimerHandle:
        if interval_ms <= 0:
            raise ValueError(f"interval_ms must be > 0, got {interval_ms}")
        return _ManualHandle(self._push(interval_ms, callback, interval_ms))

    @property
    def pending_timers(self) -> int:
        """Number of live (not cancelled) timers."""
        return sum(1 for t in self._timers if not t.cancelled)

    async def settle(self) -> None:
        """Yield to the loop so runnable coroutines reach their next await."""
        for _ in range(self.SETTLE_ITERATIONS):
            await asyncio.sleep(0)

    def _fire(self, timer: _ManualTimer) -> None:
        result = timer.callback()
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def advance(self, delta_ms: int) -> None:
        """Move the clock forward by delta_ms, firing due timers in order."""
        if delta_ms < 0:
            raise ValueError(f"delta_ms must be >= 0, got {delta_ms}")
        target_ms = self._now_ms + delta_ms
        await self.settle()

        while self._timers and self._timers[0].due_ms <= target_ms:
            timer = heapq.heappop(self._timers)
            if timer.cancelled:
                continue
            self._now_ms = max(self._now_ms, timer.due_ms)
            if timer.interval_ms is not None:
                timer.due_ms += timer.interval_ms
                timer.seq = next(self._seq)
                heapq.heappush(self._timers, timer)
            self._fire(timer)
            await self.settle()

        self._now_ms = target_ms
        await self.settle()
