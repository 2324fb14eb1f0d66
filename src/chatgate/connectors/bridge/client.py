"""
Bridge transport - WebSocket client for the chat-network bridge sidecar.

Responsible for:
- Connection lifecycle of the bridge socket
- Request/reply correlation for commands
- Translating pushed bridge events into lifecycle events

Reconnection is not handled here: losing the socket is reported as a
Disconnected lifecycle event and the ConnectionSupervisor decides what to do.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any

import aiohttp
import orjson

from chatgate.connectors.bridge.types import (
    ERROR_CODE_NOT_REGISTERED,
    ERROR_CODE_RATE_LIMITED,
    BridgeConfig,
    BridgeEvent,
    BridgeMethod,
    ConnectionState,
)
from chatgate.connectors.transport import ChatSummary, ChatTransport, ContactSummary, SentMessage
from chatgate.contracts.events import Identity
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

logger = logging.getLogger(__name__)


def _identity_from_payload(data: Any) -> Identity:
    """Build an Identity from the bridge's ready payload."""
    if not isinstance(data, dict):
        data = {}
    wid = data.get("wid")
    if isinstance(wid, dict):
        account_id = str(wid.get("user") or wid.get("_serialized") or "")
    else:
        account_id = str(wid or data.get("accountId") or "")
    return Identity(
        display_name=data.get("pushname") or data.get("displayName"),
        account_id=account_id,
        platform=data.get("platform"),
    )


def translate_event(name: str, data: Any) -> LifecycleEvent | None:
    """Map a bridge event frame to a lifecycle event. None if unknown."""
    try:
        kind = BridgeEvent(name)
    except ValueError:
        return None

    if kind == BridgeEvent.QR:
        return ChallengeIssued(token=str(data))
    if kind == BridgeEvent.AUTHENTICATED:
        return Authenticated()
    if kind == BridgeEvent.READY:
        return Ready(identity=_identity_from_payload(data))
    if kind == BridgeEvent.AUTH_FAILURE:
        return AuthFailed(reason=str(data or ""))
    if kind == BridgeEvent.DISCONNECTED:
        return Disconnected(reason=str(data or ""))
    if kind == BridgeEvent.LOADING_SCREEN:
        payload = data if isinstance(data, dict) else {}
        return Loading(percent=int(payload.get("percent", 0)), message=str(payload.get("message", "")))
    return None


class BridgeTransport(ChatTransport):
    """Chat transport speaking JSON over a WebSocket to the bridge sidecar."""

    def __init__(self, config: BridgeConfig | None = None) -> None:
        super().__init__()
        self._config = config or BridgeConfig()
        self._state = ConnectionState.DISCONNECTED

        self._session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._receive_task: asyncio.Task[None] | None = None

        self._request_id = 0
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._page_open = False

    @property
    def name(self) -> str:
        return "bridge"

    @property
    def state(self) -> ConnectionState:
        return self._state

    def _set_state(self, state: ConnectionState) -> None:
        if self._state != state:
            old_state = self._state
            self._state = state
            logger.debug(
                "Bridge state changed",
                extra={"old_state": old_state.value, "new_state": state.value},
            )

    def _next_request_id(self) -> int:
        self._request_id += 1
        return self._request_id

    @property
    def _connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def _ensure_connected(self) -> None:
        """Open the bridge socket if needed."""
        if self._connected:
            return

        self._set_state(ConnectionState.CONNECTING)
        try:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession()
            logger.info("Connecting to bridge")
            self._ws = await self._session.ws_connect(
                self._config.url,
                heartbeat=self._config.heartbeat_ms / 1000,
            )
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
            self._set_state(ConnectionState.DISCONNECTED)
            raise InitializationFailure(f"Bridge unreachable: {e}") from e

        self._set_state(ConnectionState.CONNECTED)
        self._receive_task = asyncio.create_task(self._receive_loop(self._ws))
        logger.info("Bridge connected")

    async def _request(
        self,
        method: BridgeMethod,
        params: dict[str, Any] | None = None,
        *,
        timeout_ms: int | None = None,
    ) -> Any:
        """Send a command and wait for its reply."""
        if not self._connected or self._ws is None:
            raise TransportError("Bridge not connected")

        request_id = self._next_request_id()
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        timeout_s = (timeout_ms or self._config.request_timeout_ms) / 1000

        try:
            await self._ws.send_str(
                orjson.dumps({"id": request_id, "method": method.value, "params": params or {}}).decode()
            )
            return await asyncio.wait_for(future, timeout=timeout_s)
        except asyncio.TimeoutError as e:
            raise TransportError(f"Bridge did not answer {method.value} within {timeout_s:.0f}s") from e
        except (aiohttp.ClientError, ConnectionResetError) as e:
            raise TransportError(f"Bridge connection error: {e}") from e
        finally:
            self._pending.pop(request_id, None)

    def _resolve(self, data: dict[str, Any]) -> None:
        future = self._pending.get(data["id"])
        if future is None or future.done():
            logger.debug("Reply for unknown request", extra={"request_id": data["id"]})
            return

        error = data.get("error")
        if error is None:
            future.set_result(data.get("result"))
            return

        if isinstance(error, dict):
            message = str(error.get("message") or "bridge error")
            code = error.get("code")
        else:
            message, code = str(error), None

        if code == ERROR_CODE_RATE_LIMITED:
            future.set_exception(RateLimitError(message))
        elif code == ERROR_CODE_NOT_REGISTERED:
            future.set_exception(UnregisteredRecipientError(message))
        else:
            future.set_exception(TransportError(message))

    def _handle_event(self, name: str, data: Any) -> None:
        event = translate_event(name, data)
        if event is None:
            logger.debug("Unknown bridge event", extra={"event": name})
            return
        if isinstance(event, Ready):
            self._page_open = True
        elif isinstance(event, (Disconnected, AuthFailed)):
            self._page_open = False
        self._emit(event)

    async def _receive_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        """Main loop for bridge frames."""
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        data = orjson.loads(msg.data)
                    except orjson.JSONDecodeError:
                        logger.warning("Failed to parse bridge frame")
                        continue
                    if not isinstance(data, dict):
                        continue
                    if "id" in data:
                        self._resolve(data)
                    elif "event" in data:
                        self._handle_event(str(data["event"]), data.get("data"))

                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.error("Bridge socket error", extra={"error": str(ws.exception())})
                    break

        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Error in bridge receive loop", extra={"error": str(e)})

        self._fail_pending(TransportError("Bridge connection lost"))
        page_was_open = self._page_open
        self._page_open = False

        # Unintentional loss is a remote disconnect
        if self._state not in (ConnectionState.CLOSING, ConnectionState.CLOSED):
            self._set_state(ConnectionState.DISCONNECTED)
            logger.warning("Bridge connection lost", extra={"page_was_open": page_was_open})
            self._emit(Disconnected(reason="bridge connection lost"))

    def _fail_pending(self, error: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

    # -- ChatTransport -------------------------------------------------------

    async def initialize_session(self) -> None:
        await self._ensure_connected()
        try:
            await self._request(BridgeMethod.INITIALIZE, timeout_ms=self._config.initialize_timeout_ms)
        except TransportError as e:
            await self._close_socket()
            raise InitializationFailure(e.message) from e

    async def send_message(self, canonical_id: str, body: str) -> SentMessage:
        result = await self._request(
            BridgeMethod.SEND_MESSAGE,
            {"chatId": canonical_id, "content": body},
        )
        if not isinstance(result, dict) or "id" not in result:
            raise TransportError("Bridge returned no message id")
        message_id = result["id"]
        if isinstance(message_id, dict):
            message_id = message_id.get("_serialized", "")
        return SentMessage(id=str(message_id), timestamp=int(result.get("timestamp", 0)))

    def is_session_open(self) -> bool:
        return self._connected and self._page_open

    async def destroy_session(self) -> None:
        """Ask the bridge to tear down the chat client, then close the socket."""
        if self._connected:
            self._set_state(ConnectionState.CLOSING)
            try:
                await self._request(BridgeMethod.DESTROY, timeout_ms=self._config.destroy_timeout_ms)
            except TransportError as e:
                logger.warning("Bridge destroy failed", extra={"error": str(e)})
        await self._close_socket()

    async def _close_socket(self) -> None:
        self._set_state(ConnectionState.CLOSING)
        self._page_open = False

        if self._receive_task and not self._receive_task.done():
            self._receive_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._receive_task
        self._receive_task = None
        self._fail_pending(TransportError("Bridge connection closed"))

        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        self._ws = None

        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

        self._set_state(ConnectionState.CLOSED)
        logger.info("Bridge disconnected")

    async def purge_credentials(self) -> None:
        try:
            await self._ensure_connected()
        except InitializationFailure as e:
            raise TransportError(e.message) from e
        await self._request(BridgeMethod.PURGE_CREDENTIALS)

    async def is_registered_user(self, canonical_id: str) -> bool:
        result = await self._request(BridgeMethod.IS_REGISTERED_USER, {"id": canonical_id})
        return bool(result)

    async def get_chats(self) -> list[ChatSummary]:
        result = await self._request(BridgeMethod.GET_CHATS)
        return [
            ChatSummary(
                id=str(item.get("id", "")),
                name=str(item.get("name", "")),
                is_group=bool(item.get("isGroup", False)),
                unread_count=int(item.get("unreadCount", 0)),
            )
            for item in result or []
            if isinstance(item, dict)
        ]

    async def get_contacts(self) -> list[ContactSummary]:
        result = await self._request(BridgeMethod.GET_CONTACTS)
        return [
            ContactSummary(
                id=str(item.get("id", "")),
                name=item.get("name"),
                is_my_contact=bool(item.get("isMyContact", False)),
            )
            for item in result or []
            if isinstance(item, dict)
        ]

    async def close(self) -> None:
        await self._close_socket()
