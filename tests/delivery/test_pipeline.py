"""
Tests for the rate-limited send pipeline.

Wires the real supervisor and limiter around the in-memory transport on a
virtual clock.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from chatgate.connectors.memory import InMemoryTransport
from chatgate.connectors.ratelimit import RateLimiter
from chatgate.connectors.transport import ChatSummary, ContactSummary
from chatgate.delivery.pipeline import (
    FailureClass,
    PipelineConfig,
    SendPipeline,
    classify_failure,
)
from chatgate.errors import (
    InvalidInputError,
    NotReadyError,
    RateLimitError,
    TransportError,
    UnregisteredRecipientError,
)
from chatgate.scheduler import ManualScheduler
from chatgate.session.supervisor import ConnectionSupervisor


class PipelineHarness:
    """Real components around an in-memory transport."""

    def __init__(self, config: PipelineConfig | None = None) -> None:
        self.sched = ManualScheduler()
        self.transport = InMemoryTransport(time_fn=self.sched.now_ms)
        self.sup = ConnectionSupervisor(self.transport, self.sched)
        self.limiter = RateLimiter(scheduler=self.sched)
        self.pipeline = SendPipeline(self.sup, self.limiter, self.transport, config)

    async def ready(self) -> None:
        await self.sup.start()
        self.transport.authenticate()
        self.transport.become_ready()


@pytest.fixture()
def h() -> PipelineHarness:
    return PipelineHarness()


class TestSend:
    """Happy path and input validation."""

    @pytest.mark.asyncio
    async def test_send_when_ready(self, h: PipelineHarness) -> None:
        """A ready session delivers and counts one send in the window."""
        await h.ready()

        receipt = await h.pipeline.send("09876543210", "hi")

        assert receipt.recipient == "919876543210@c.us"
        assert receipt.message_id.startswith("true_919876543210@c.us_")
        assert h.transport.sent == [("919876543210@c.us", "hi")]
        assert h.limiter.snapshot().count_in_window == 1
        assert h.pipeline.metrics.sent == 1

    @pytest.mark.asyncio
    async def test_not_ready_leaves_window_untouched(self, h: PipelineHarness) -> None:
        """NotReady is raised before any rate-limit bookkeeping."""
        before = h.limiter.snapshot()

        with pytest.raises(NotReadyError, match="disconnected"):
            await h.pipeline.send("09876543210", "hi")

        assert h.limiter.snapshot() == before
        assert h.transport.sent == []
        assert h.pipeline.metrics.rejected_not_ready == 1

    @pytest.mark.asyncio
    async def test_silently_closed_session_is_not_ready(self, h: PipelineHarness) -> None:
        """READY phase with a closed handle still rejects."""
        await h.ready()
        h.transport.close_page_silently()

        with pytest.raises(NotReadyError):
            await h.pipeline.send("09876543210", "hi")

    @pytest.mark.asyncio
    async def test_invalid_recipient(self, h: PipelineHarness) -> None:
        """A recipient without digits is rejected before reserving."""
        await h.ready()

        with pytest.raises(InvalidInputError):
            await h.pipeline.send("not a number", "hi")
        assert h.limiter.snapshot().count_in_window == 0

    @pytest.mark.parametrize("body", ["", "   "])
    @pytest.mark.asyncio
    async def test_blank_body(self, h: PipelineHarness, body: str) -> None:
        await h.ready()
        with pytest.raises(InvalidInputError, match="empty"):
            await h.pipeline.send("09876543210", body)

    @pytest.mark.asyncio
    async def test_oversized_body(self) -> None:
        h = PipelineHarness(PipelineConfig(max_body_length=5))
        await h.ready()
        with pytest.raises(InvalidInputError, match="exceeds"):
            await h.pipeline.send("09876543210", "too long")

    @pytest.mark.asyncio
    async def test_sends_are_serialized_and_spaced(self, h: PipelineHarness) -> None:
        """A second concurrent send waits for the minimum spacing."""
        await h.ready()

        first = asyncio.create_task(h.pipeline.send("09876543210", "one"))
        second = asyncio.create_task(h.pipeline.send("09876543210", "two"))
        await h.sched.advance(0)
        assert first.done()
        assert not second.done()

        await h.sched.advance(3000)
        assert second.done()
        assert [body for _, body in h.transport.sent] == ["one", "two"]


class TestFailures:
    """Remote failure handling."""

    @pytest.mark.asyncio
    async def test_unregistered_recipient(self, h: PipelineHarness) -> None:
        """'not registered' errors surface as UnregisteredRecipient, no retry."""
        await h.ready()
        h.transport.fail_next_send(RuntimeError("Error: The number is not registered"))

        with pytest.raises(UnregisteredRecipientError, match="09876543210"):
            await h.pipeline.send("09876543210", "hi")

        assert h.limiter.metrics.penalties == 0
        assert h.pipeline.metrics.unregistered == 1

    @pytest.mark.asyncio
    async def test_rate_limit_retried_once_after_cooldown(self, h: PipelineHarness) -> None:
        """One remote rate-limit signal: penalize, wait cooldown, resend."""
        await h.ready()
        h.transport.fail_next_send(RateLimitError("Too many requests"))

        task = asyncio.create_task(h.pipeline.send("09876543210", "hi"))
        await h.sched.advance(29_999)
        assert not task.done()

        await h.sched.advance(1)
        assert task.done()
        receipt = task.result()
        assert receipt.recipient == "919876543210@c.us"
        assert h.limiter.metrics.penalties == 1
        assert h.pipeline.metrics.rate_limit_retries == 1
        assert len(h.transport.sent) == 1

    @pytest.mark.asyncio
    async def test_rate_limit_twice_is_transport_error(self, h: PipelineHarness) -> None:
        """A second consecutive rate-limit signal is surfaced as TransportError."""
        await h.ready()
        h.transport.fail_next_send(RuntimeError("rate limit exceeded"))
        h.transport.fail_next_send(RuntimeError("rate limit exceeded"))

        task = asyncio.create_task(h.pipeline.send("09876543210", "hi"))
        await h.sched.advance(30_000)

        assert task.done()
        with pytest.raises(TransportError, match="Rate limited"):
            await task
        assert h.limiter.metrics.penalties == 2
        assert h.limiter.snapshot().penalized

    @pytest.mark.asyncio
    async def test_other_errors_not_retried(self, h: PipelineHarness) -> None:
        """Unexpected errors become TransportError without penalty."""
        await h.ready()
        h.transport.fail_next_send(RuntimeError("Evaluation failed"))

        with pytest.raises(TransportError, match="Evaluation failed"):
            await h.pipeline.send("09876543210", "hi")
        assert h.limiter.metrics.penalties == 0
        assert h.pipeline.metrics.transport_errors == 1


class TestDiagnostics:
    """check_registered, list_chats, list_contacts."""

    @pytest.mark.asyncio
    async def test_check_registered(self, h: PipelineHarness) -> None:
        await h.ready()
        h.transport.unregistered.add("911111111111@c.us")

        assert await h.pipeline.check_registered("9876543210") == ("919876543210@c.us", True)
        assert await h.pipeline.check_registered("1111111111") == ("911111111111@c.us", False)

    @pytest.mark.asyncio
    async def test_check_failure_assumes_registered(self, h: PipelineHarness) -> None:
        """When the lookup itself fails the recipient is assumed registered."""
        await h.ready()
        h.transport.is_registered_user = AsyncMock(side_effect=RuntimeError("lookup failed"))  # type: ignore[method-assign]

        assert await h.pipeline.check_registered("9876543210") == ("919876543210@c.us", True)

    @pytest.mark.asyncio
    async def test_list_chats_limited(self, h: PipelineHarness) -> None:
        await h.ready()
        h.transport.chats = [ChatSummary(id=f"91{i:010d}@c.us", name=f"chat {i}") for i in range(15)]

        total, chats = await h.pipeline.list_chats()
        assert total == 15
        assert len(chats) == 10
        assert chats[0].name == "chat 0"

    @pytest.mark.asyncio
    async def test_list_contacts(self, h: PipelineHarness) -> None:
        await h.ready()
        h.transport.contacts = [ContactSummary(id="919876543210@c.us", name="Asha", is_my_contact=True)]

        total, contacts = await h.pipeline.list_contacts()
        assert total == 1
        assert contacts[0].name == "Asha"

    @pytest.mark.asyncio
    async def test_diagnostics_require_ready(self, h: PipelineHarness) -> None:
        with pytest.raises(NotReadyError):
            await h.pipeline.list_chats()
        with pytest.raises(NotReadyError):
            await h.pipeline.check_registered("9876543210")


class TestClassifyFailure:
    """Failure classification by type, then by message."""

    @pytest.mark.parametrize(
        ("error", "expected"),
        [
            (RateLimitError("x"), FailureClass.RATE_LIMITED),
            (UnregisteredRecipientError("x"), FailureClass.UNREGISTERED),
            (RuntimeError("You are being rate-limited"), FailureClass.RATE_LIMITED),
            (RuntimeError("Too Many Requests"), FailureClass.RATE_LIMITED),
            (RuntimeError("account blocked"), FailureClass.RATE_LIMITED),
            (RuntimeError("HTTP 429"), FailureClass.RATE_LIMITED),
            (RuntimeError("invalid number"), FailureClass.UNREGISTERED),
            (RuntimeError("Evaluation failed: t"), FailureClass.OTHER),
        ],
    )
    def test_classification(self, error: Exception, expected: FailureClass) -> None:
        assert classify_failure(error) == expected
