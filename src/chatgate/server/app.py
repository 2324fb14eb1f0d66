"""
HTTP and event surface of the gateway.

Routes:
    GET  /status          current StatusSnapshot
    POST /send-message    send one text message
    POST /restart         tear down and re-establish the session
    POST /clear-session   like /restart, also forgets stored credentials
    GET  /check-number    is a recipient registered on the network
    GET  /debug/chats     first chats of the logged-in account
    GET  /debug/contacts  first contacts of the logged-in account
    GET  /events          WebSocket, pushes GatewayEvent JSON frames
    GET  /metrics         Prometheus exposition
    GET  /healthz         health JSON

Errors are always {"error": kind, "message": text}: caller-side kinds map to
400, remote failures to 500.
"""

from __future__ import annotations

import itertools
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

import orjson
from aiohttp import WSMsgType, web
from prometheus_client import generate_latest
from pydantic import ValidationError

from chatgate.contracts.events import SendMessageRequest, SendMessageResponse
from chatgate.errors import ErrorKind, GatewayError, InvalidInputError, TransportError
from chatgate.status.hub import Subscriber

if TYPE_CHECKING:
    from chatgate.contracts.events import GatewayEvent
    from chatgate.gateway import Gateway

logger = logging.getLogger(__name__)

_Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

_STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.NOT_READY: 400,
    ErrorKind.INVALID_INPUT: 400,
    ErrorKind.UNREGISTERED_RECIPIENT: 400,
    ErrorKind.RATE_LIMITED: 500,
    ErrorKind.TRANSPORT_ERROR: 500,
    ErrorKind.INITIALIZATION_FAILURE: 500,
}

DEBUG_CHATS_LIMIT = 10
DEBUG_CONTACTS_LIMIT = 50
EVENTS_HEARTBEAT_S = 30.0


def _json(data: Any, status: int = 200) -> web.Response:
    return web.Response(body=orjson.dumps(data), status=status, content_type="application/json")


def _error_response(error: GatewayError) -> web.Response:
    return _json(error.to_dict(), status=_STATUS_BY_KIND.get(error.kind, 500))


def _validation_message(error: ValidationError) -> str:
    first = error.errors()[0]
    field = ".".join(str(part) for part in first.get("loc", ())) or "payload"
    return f"{field}: {first.get('msg', 'invalid')}"


def _guarded(handler: _Handler) -> _Handler:
    """Map GatewayError to its HTTP status; anything else becomes a 500."""

    async def wrapper(request: web.Request) -> web.StreamResponse:
        try:
            return await handler(request)
        except GatewayError as e:
            return _error_response(e)
        except Exception as e:
            logger.exception("Unhandled error in request", extra={"endpoint": request.path})
            return _error_response(TransportError(str(e) or type(e).__name__))

    return wrapper


class WebSocketSubscriber(Subscriber):
    """Event subscriber backed by one /events WebSocket connection."""

    def __init__(self, ws: web.WebSocketResponse, name: str) -> None:
        self._ws = ws
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    async def deliver(self, event: GatewayEvent) -> None:
        if self._ws.closed:
            raise ConnectionResetError("subscriber socket closed")
        await self._ws.send_str(event.to_json().decode())


def _make_status_handler(gateway: Gateway) -> _Handler:
    async def handler(request: web.Request) -> web.Response:
        return _json(gateway.projector.snapshot().to_dict())

    return handler


def _make_send_handler(gateway: Gateway) -> _Handler:
    async def handler(request: web.Request) -> web.Response:
        try:
            payload = await request.json(loads=orjson.loads)
        except ValueError:
            raise InvalidInputError("Request body must be JSON") from None
        if not isinstance(payload, dict):
            raise InvalidInputError("Request body must be a JSON object")

        try:
            send_request = SendMessageRequest.from_payload(payload)
        except ValidationError as e:
            raise InvalidInputError(_validation_message(e)) from None

        receipt = await gateway.pipeline.send(send_request.recipient, send_request.body)
        response = SendMessageResponse(
            message_id=receipt.message_id,
            timestamp=receipt.timestamp,
            recipient=receipt.recipient,
        )
        return _json(response.to_dict())

    return handler


def _make_restart_handler(gateway: Gateway, *, purge: bool) -> _Handler:
    async def handler(request: web.Request) -> web.Response:
        if purge:
            started = gateway.supervisor.request_clear_session()
        else:
            started = gateway.supervisor.request_restart()
        # A second request while one is running joins the running operation
        return _json({"accepted": True, "alreadyInProgress": not started})

    return handler


def _make_check_number_handler(gateway: Gateway) -> _Handler:
    async def handler(request: web.Request) -> web.Response:
        raw = request.query.get("recipient") or request.query.get("number")
        if not raw or not raw.strip():
            raise InvalidInputError("Query parameter 'recipient' is required")
        canonical, registered = await gateway.pipeline.check_registered(raw)
        return _json({"recipient": canonical, "registered": registered})

    return handler


def _make_chats_handler(gateway: Gateway) -> _Handler:
    async def handler(request: web.Request) -> web.Response:
        total, chats = await gateway.pipeline.list_chats(DEBUG_CHATS_LIMIT)
        return _json(
            {
                "total": total,
                "chats": [
                    {
                        "id": chat.id,
                        "name": chat.name,
                        "isGroup": chat.is_group,
                        "unreadCount": chat.unread_count,
                    }
                    for chat in chats
                ],
            }
        )

    return handler


def _make_contacts_handler(gateway: Gateway) -> _Handler:
    async def handler(request: web.Request) -> web.Response:
        total, contacts = await gateway.pipeline.list_contacts(DEBUG_CONTACTS_LIMIT)
        return _json(
            {
                "total": total,
                "contacts": [
                    {"id": contact.id, "name": contact.name, "isMyContact": contact.is_my_contact}
                    for contact in contacts
                ],
            }
        )

    return handler


def _make_events_handler(gateway: Gateway) -> _Handler:
    ids = itertools.count(1)

    async def handler(request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=EVENTS_HEARTBEAT_S)
        await ws.prepare(request)

        subscriber = WebSocketSubscriber(ws, f"ws-{next(ids)}")
        gateway.hub.subscribe(subscriber)
        gateway.projector.greet(subscriber)
        try:
            async for msg in ws:
                # Clients only listen; inbound frames are ignored
                if msg.type == WSMsgType.ERROR:
                    logger.warning("Subscriber socket error", extra={"error": str(ws.exception())})
                    break
        finally:
            gateway.hub.unsubscribe(subscriber)
        return ws

    return handler


def _make_metrics_handler(gateway: Gateway) -> _Handler:
    async def handler(request: web.Request) -> web.Response:
        gateway.refresh_metrics()
        return web.Response(
            body=generate_latest(gateway.exporter.registry),
            content_type="text/plain; version=0.0.4",
            charset="utf-8",
        )

    return handler


def _make_healthz_handler(gateway: Gateway) -> _Handler:
    async def handler(request: web.Request) -> web.Response:
        return _json(gateway.health())

    return handler


def create_gateway_app(gateway: Gateway) -> web.Application:
    """
    Create the aiohttp Application for a gateway.

    The application does not start or stop the gateway; the caller owns its
    lifecycle.
    """
    app = web.Application()
    app.router.add_get("/status", _guarded(_make_status_handler(gateway)))
    app.router.add_post("/send-message", _guarded(_make_send_handler(gateway)))
    app.router.add_post("/restart", _guarded(_make_restart_handler(gateway, purge=False)))
    app.router.add_post("/clear-session", _guarded(_make_restart_handler(gateway, purge=True)))
    app.router.add_get("/check-number", _guarded(_make_check_number_handler(gateway)))
    app.router.add_get("/debug/chats", _guarded(_make_chats_handler(gateway)))
    app.router.add_get("/debug/contacts", _guarded(_make_contacts_handler(gateway)))
    app.router.add_get("/events", _make_events_handler(gateway))
    app.router.add_get("/metrics", _make_metrics_handler(gateway))
    app.router.add_get("/healthz", _make_healthz_handler(gateway))
    return app


async def start_server(
    gateway: Gateway,
    host: str = "0.0.0.0",
    port: int = 3000,
) -> web.AppRunner:
    """
    Start the HTTP server.

    Returns:
        AppRunner (pass to stop_server() on shutdown).
    """
    app = create_gateway_app(gateway)
    runner = web.AppRunner(app, access_log=None)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info("HTTP server started", extra={"host": host, "port": port})
    return runner


async def stop_server(runner: web.AppRunner) -> None:
    await runner.cleanup()
    logger.info("HTTP server stopped")
