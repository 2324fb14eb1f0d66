"""
Bridge transport integration tests.

Uses a fake bridge sidecar (aiohttp.web WebSocket server on an ephemeral
port) to validate request/reply correlation, error mapping, lifecycle event
translation and socket-loss reporting.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any

import aiohttp
import aiohttp.web
import pytest

from chatgate.connectors.bridge import (
    BridgeConfig,
    BridgeTransport,
    ConnectionState,
    translate_event,
)
from chatgate.errors import (
    InitializationFailure,
    RateLimitError,
    TransportError,
    UnregisteredRecipientError,
)
from chatgate.session.types import (
    AuthFailed,
    Authenticated,
    ChallengeIssued,
    Disconnected,
    LifecycleEvent,
    Loading,
    Ready,
)

# Reply builder: params -> {"result": ...} / {"error": ...}, or None for no reply
ReplyFn = Callable[[dict[str, Any]], dict[str, Any] | None]


class FakeBridgeServer:
    """Minimal bridge: records commands, answers via per-method reply functions."""

    def __init__(self) -> None:
        self.requests: list[dict[str, Any]] = []
        self.replies: dict[str, ReplyFn] = {}
        self.connection_count = 0
        self._ws: aiohttp.web.WebSocketResponse | None = None
        self._runner: aiohttp.web.AppRunner | None = None
        self.port: int = 0

    async def _ws_handler(self, request: aiohttp.web.Request) -> aiohttp.web.WebSocketResponse:
        ws = aiohttp.web.WebSocketResponse()
        await ws.prepare(request)
        self.connection_count += 1
        self._ws = ws

        async for msg in ws:
            if msg.type != aiohttp.WSMsgType.TEXT:
                continue
            frame = json.loads(msg.data)
            self.requests.append(frame)
            reply_fn = self.replies.get(frame["method"], lambda params: {"result": None})
            reply = reply_fn(frame.get("params", {}))
            if reply is not None:
                await ws.send_json({"id": frame["id"], **reply})

        return ws

    async def push(self, event: str, data: Any = None) -> None:
        assert self._ws is not None
        await self._ws.send_json({"event": event, "data": data})

    async def drop(self) -> None:
        assert self._ws is not None
        await self._ws.close()

    def methods(self) -> list[str]:
        return [r["method"] for r in self.requests]

    async def start(self) -> None:
        app = aiohttp.web.Application()
        app.router.add_get("/session", self._ws_handler)
        self._runner = aiohttp.web.AppRunner(app)
        await self._runner.setup()
        site = aiohttp.web.TCPSite(self._runner, "127.0.0.1", 0)
        await site.start()
        assert self._runner.addresses
        self.port = self._runner.addresses[0][1]

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()

    @property
    def url(self) -> str:
        return f"ws://127.0.0.1:{self.port}/session"


async def wait_until(predicate: Callable[[], bool], timeout_s: float = 2.0) -> None:
    """Poll predicate until true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_s
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("condition not met in time")
        await asyncio.sleep(0.01)


class BridgeHarness:
    """Fake server + transport + recorded lifecycle events."""

    def __init__(self, **config: Any) -> None:
        self.server = FakeBridgeServer()
        self.events: list[LifecycleEvent] = []
        self._config = config
        self.transport: BridgeTransport | None = None

    async def __aenter__(self) -> BridgeHarness:
        await self.server.start()
        self.transport = BridgeTransport(BridgeConfig(url=self.server.url, **self._config))
        self.transport.set_lifecycle_listener(self.events.append)
        return self

    async def __aexit__(self, *exc: object) -> None:
        assert self.transport is not None
        await self.transport.close()
        await self.server.stop()

    @property
    def t(self) -> BridgeTransport:
        assert self.transport is not None
        return self.transport


class TestInitialize:
    """Connecting and initializing the remote session."""

    @pytest.mark.asyncio
    async def test_initialize_sends_command(self) -> None:
        """initialize_session() connects and issues the initialize command."""
        async with BridgeHarness() as h:
            await h.t.initialize_session()

            assert h.server.methods() == ["initialize"]
            assert h.t.state == ConnectionState.CONNECTED
            assert not h.t.is_session_open()

    @pytest.mark.asyncio
    async def test_initialize_error_reply_raises_initialization_failure(self) -> None:
        """An error reply to initialize becomes InitializationFailure, socket closed."""
        async with BridgeHarness() as h:
            h.server.replies["initialize"] = lambda params: {
                "error": {"message": "browser failed to launch"}
            }

            with pytest.raises(InitializationFailure, match="browser failed"):
                await h.t.initialize_session()
            assert h.t.state == ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_unreachable_bridge_raises_initialization_failure(self) -> None:
        """Connection refused surfaces as InitializationFailure."""
        transport = BridgeTransport(BridgeConfig(url="ws://127.0.0.1:1/session"))
        try:
            with pytest.raises(InitializationFailure, match="unreachable"):
                await transport.initialize_session()
        finally:
            await transport.close()


class TestLifecycleEvents:
    """Pushed bridge events become lifecycle events."""

    @pytest.mark.asyncio
    async def test_login_sequence(self) -> None:
        """qr -> authenticated -> ready, session opens on ready."""
        async with BridgeHarness() as h:
            await h.t.initialize_session()

            await h.server.push("qr", "2@abcdef")
            await h.server.push("authenticated")
            await h.server.push(
                "ready",
                {"pushname": "Ops", "wid": {"user": "919999999999"}, "platform": "android"},
            )
            await wait_until(lambda: len(h.events) == 3)

            assert h.events[0] == ChallengeIssued(token="2@abcdef")
            assert h.events[1] == Authenticated()
            ready = h.events[2]
            assert isinstance(ready, Ready)
            assert ready.identity.display_name == "Ops"
            assert ready.identity.account_id == "919999999999"
            assert ready.identity.platform == "android"
            assert h.t.is_session_open()

    @pytest.mark.asyncio
    async def test_remote_disconnect_event(self) -> None:
        """A disconnected event closes the session flag."""
        async with BridgeHarness() as h:
            await h.t.initialize_session()
            await h.server.push("ready", {"wid": "919999999999"})
            await h.server.push("disconnected", "LOGOUT")
            await wait_until(lambda: len(h.events) == 2)

            assert h.events[1] == Disconnected(reason="LOGOUT")
            assert not h.t.is_session_open()

    @pytest.mark.asyncio
    async def test_socket_loss_reported_as_disconnect(self) -> None:
        """The bridge closing the socket is a remote disconnect."""
        async with BridgeHarness() as h:
            await h.t.initialize_session()
            await h.server.push("ready", {"wid": "919999999999"})
            await wait_until(lambda: h.t.is_session_open())

            await h.server.drop()
            await wait_until(lambda: any(isinstance(e, Disconnected) for e in h.events))

            assert h.events[-1] == Disconnected(reason="bridge connection lost")
            assert not h.t.is_session_open()
            assert h.t.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_destroy_emits_no_disconnect(self) -> None:
        """Intentional teardown is not reported as a lifecycle event."""
        async with BridgeHarness() as h:
            await h.t.initialize_session()
            await h.t.destroy_session()

            await asyncio.sleep(0.05)
            assert "destroy" in h.server.methods()
            assert h.events == []
            assert h.t.state == ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_malformed_frames_ignored(self) -> None:
        """Unknown events and junk frames do not break the receive loop."""
        async with BridgeHarness() as h:
            await h.t.initialize_session()
            assert h.server._ws is not None
            await h.server._ws.send_str("not json")
            await h.server.push("change_battery", {"battery": 50})
            await h.server.push("authenticated")

            await wait_until(lambda: len(h.events) == 1)
            assert h.events == [Authenticated()]


class TestCommands:
    """Request/reply commands and error mapping."""

    @pytest.mark.asyncio
    async def test_send_message(self) -> None:
        """sendMessage carries chatId/content and returns the remote id."""
        async with BridgeHarness() as h:
            h.server.replies["sendMessage"] = lambda params: {
                "result": {"id": {"_serialized": "true_919876543210@c.us_3EB0"}, "timestamp": 1700000000}
            }
            await h.t.initialize_session()

            sent = await h.t.send_message("919876543210@c.us", "hello")

            assert sent.id == "true_919876543210@c.us_3EB0"
            assert sent.timestamp == 1700000000
            request = h.server.requests[-1]
            assert request["params"] == {"chatId": "919876543210@c.us", "content": "hello"}

    @pytest.mark.parametrize(
        ("error", "expected"),
        [
            ({"message": "Too many messages", "code": "rate_limited"}, RateLimitError),
            ({"message": "not registered", "code": "not_registered"}, UnregisteredRecipientError),
            ({"message": "Evaluation failed"}, TransportError),
        ],
    )
    @pytest.mark.asyncio
    async def test_error_codes_map_to_errors(
        self, error: dict[str, str], expected: type[Exception]
    ) -> None:
        """Reply error codes select the raised error type."""
        async with BridgeHarness() as h:
            h.server.replies["sendMessage"] = lambda params: {"error": error}
            await h.t.initialize_session()

            with pytest.raises(expected, match=error["message"]):
                await h.t.send_message("919876543210@c.us", "hello")

    @pytest.mark.asyncio
    async def test_request_timeout(self) -> None:
        """No reply within the timeout raises TransportError."""
        async with BridgeHarness(request_timeout_ms=100) as h:
            h.server.replies["getChats"] = lambda params: None
            await h.t.initialize_session()

            with pytest.raises(TransportError, match="did not answer"):
                await h.t.get_chats()

    @pytest.mark.asyncio
    async def test_request_when_not_connected(self) -> None:
        """Commands before initialize fail fast."""
        transport = BridgeTransport(BridgeConfig())
        with pytest.raises(TransportError, match="not connected"):
            await transport.send_message("919876543210@c.us", "hello")

    @pytest.mark.asyncio
    async def test_queries(self) -> None:
        """Registration check, chats and contacts are mapped to summaries."""
        async with BridgeHarness() as h:
            h.server.replies["isRegisteredUser"] = lambda params: {
                "result": params["id"] != "911111111111@c.us"
            }
            h.server.replies["getChats"] = lambda params: {
                "result": [
                    {"id": "919876543210@c.us", "name": "Asha", "isGroup": False, "unreadCount": 2},
                    {"id": "1203630@g.us", "name": "Ops", "isGroup": True},
                ]
            }
            h.server.replies["getContacts"] = lambda params: {
                "result": [{"id": "919876543210@c.us", "name": "Asha", "isMyContact": True}]
            }
            await h.t.initialize_session()

            assert await h.t.is_registered_user("919876543210@c.us")
            assert not await h.t.is_registered_user("911111111111@c.us")

            chats = await h.t.get_chats()
            assert [c.name for c in chats] == ["Asha", "Ops"]
            assert chats[0].unread_count == 2
            assert chats[1].is_group

            contacts = await h.t.get_contacts()
            assert contacts[0].is_my_contact

    @pytest.mark.asyncio
    async def test_purge_credentials(self) -> None:
        """purgeCredentials is forwarded to the bridge."""
        async with BridgeHarness() as h:
            await h.t.initialize_session()
            await h.t.purge_credentials()
            assert h.server.methods() == ["initialize", "purgeCredentials"]


class TestTranslateEvent:
    """Pure mapping of bridge events."""

    def test_loading_screen(self) -> None:
        assert translate_event("loading_screen", {"percent": 70, "message": "WhatsApp"}) == Loading(
            percent=70, message="WhatsApp"
        )

    def test_auth_failure(self) -> None:
        assert translate_event("auth_failure", "restore failed") == AuthFailed(reason="restore failed")

    def test_unknown_event(self) -> None:
        assert translate_event("message", {}) is None

    def test_ready_without_payload(self) -> None:
        """Missing identity fields degrade to empty values."""
        event = translate_event("ready", None)
        assert isinstance(event, Ready)
        assert event.identity.account_id == ""
        assert event.identity.display_name is None
