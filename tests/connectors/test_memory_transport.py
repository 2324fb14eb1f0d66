"""Tests for the in-memory chat transport."""

from __future__ import annotations

import pytest

from chatgate.connectors.memory import DEFAULT_IDENTITY, InMemoryTransport
from chatgate.connectors.transport import ChatSummary
from chatgate.contracts.events import Identity
from chatgate.errors import InitializationFailure, RateLimitError, TransportError
from chatgate.session.types import (
    AuthFailed,
    Authenticated,
    ChallengeIssued,
    Disconnected,
    LifecycleEvent,
    Loading,
    Ready,
)


@pytest.fixture()
def events() -> list[LifecycleEvent]:
    return []


@pytest.fixture()
def transport(events: list[LifecycleEvent]) -> InMemoryTransport:
    t = InMemoryTransport(time_fn=lambda: 1_700_000_000_000)
    t.set_lifecycle_listener(events.append)
    return t


class TestLifecycleDrivers:
    """Explicit lifecycle helpers emit the matching events."""

    def test_full_login_sequence(
        self, transport: InMemoryTransport, events: list[LifecycleEvent]
    ) -> None:
        """challenge -> authenticated -> ready, session opens on ready."""
        transport.issue_challenge("2@abc")
        transport.authenticate()
        assert not transport.is_session_open()

        transport.become_ready()

        assert events == [
            ChallengeIssued(token="2@abc"),
            Authenticated(),
            Ready(identity=DEFAULT_IDENTITY),
        ]
        assert transport.is_session_open()
        assert transport.has_credentials

    def test_drop_closes_session(
        self, transport: InMemoryTransport, events: list[LifecycleEvent]
    ) -> None:
        """drop() emits Disconnected and closes the handle."""
        transport.become_ready()
        transport.drop("NAVIGATION")

        assert events[-1] == Disconnected(reason="NAVIGATION")
        assert not transport.is_session_open()

    def test_fail_auth_and_loading(
        self, transport: InMemoryTransport, events: list[LifecycleEvent]
    ) -> None:
        """fail_auth() and report_loading() emit their events."""
        transport.report_loading(40, "Loading chats")
        transport.fail_auth("bad session")

        assert events == [Loading(percent=40, message="Loading chats"), AuthFailed(reason="bad session")]

    def test_close_page_silently_emits_nothing(
        self, transport: InMemoryTransport, events: list[LifecycleEvent]
    ) -> None:
        """The handle can close without any lifecycle event."""
        transport.become_ready()
        events.clear()

        transport.close_page_silently()
        assert events == []
        assert not transport.is_session_open()

    def test_no_listener_drops_events(self) -> None:
        """Emitting without a listener is harmless."""
        t = InMemoryTransport()
        t.issue_challenge("x")


class TestInitialize:
    """initialize_session()."""

    @pytest.mark.asyncio
    async def test_auto_ready(self, events: list[LifecycleEvent]) -> None:
        """auto_ready goes straight to Authenticated + Ready."""
        identity = Identity(display_name="Ops", account_id="919999999999")
        t = InMemoryTransport(auto_ready=True, identity=identity)
        t.set_lifecycle_listener(events.append)

        await t.initialize_session()

        assert events == [Authenticated(), Ready(identity=identity)]
        assert t.initialize_calls == 1

    @pytest.mark.asyncio
    async def test_injected_failure_raises_once(self, transport: InMemoryTransport) -> None:
        """fail_next_initialize() affects only the next call."""
        transport.fail_next_initialize()

        with pytest.raises(InitializationFailure):
            await transport.initialize_session()
        await transport.initialize_session()
        assert transport.initialize_calls == 2


class TestSend:
    """send_message()."""

    @pytest.mark.asyncio
    async def test_send_records_message(self, transport: InMemoryTransport) -> None:
        """Accepted messages are recorded with a unique id."""
        transport.become_ready()
        first = await transport.send_message("919876543210@c.us", "hi")
        second = await transport.send_message("919876543210@c.us", "again")

        assert transport.sent == [("919876543210@c.us", "hi"), ("919876543210@c.us", "again")]
        assert first.id != second.id
        assert first.timestamp == 1_700_000_000

    @pytest.mark.asyncio
    async def test_send_on_closed_session_fails(self, transport: InMemoryTransport) -> None:
        """Sending without an open session raises TransportError."""
        with pytest.raises(TransportError, match="closed"):
            await transport.send_message("919876543210@c.us", "hi")

    @pytest.mark.asyncio
    async def test_injected_send_failure(self, transport: InMemoryTransport) -> None:
        """fail_next_send() raises the given error, then recovers."""
        transport.become_ready()
        transport.fail_next_send(RateLimitError("rate limit exceeded"))

        with pytest.raises(RateLimitError):
            await transport.send_message("919876543210@c.us", "hi")
        await transport.send_message("919876543210@c.us", "hi")
        assert len(transport.sent) == 1


class TestTeardownAndQueries:
    """destroy/purge and read queries."""

    @pytest.mark.asyncio
    async def test_destroy_and_purge(self, transport: InMemoryTransport) -> None:
        """destroy closes the handle; purge forgets credentials."""
        transport.authenticate()
        transport.become_ready()

        await transport.destroy_session()
        assert not transport.is_session_open()
        assert transport.has_credentials

        await transport.purge_credentials()
        assert not transport.has_credentials
        assert (transport.destroy_calls, transport.purge_calls) == (1, 1)

    @pytest.mark.asyncio
    async def test_registration_and_listing(self, transport: InMemoryTransport) -> None:
        """Unregistered set and chat list drive the query methods."""
        transport.unregistered.add("911111111111@c.us")
        transport.chats.append(ChatSummary(id="919876543210@c.us", name="Asha"))

        assert await transport.is_registered_user("919876543210@c.us")
        assert not await transport.is_registered_user("911111111111@c.us")
        assert await transport.get_chats() == [ChatSummary(id="919876543210@c.us", name="Asha")]
        assert await transport.get_contacts() == []
