"""
Wire contracts for the gateway HTTP and event surfaces.

These are the canonical schemas exchanged with polling clients, event
subscribers and senders. Field names on the wire are camelCase.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

import orjson
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class SessionPhase(str, Enum):
    """Lifecycle phase of the remote session."""

    DISCONNECTED = "disconnected"
    AWAITING_SCAN = "awaiting_scan"
    AUTHENTICATED = "authenticated"
    READY = "ready"
    FAILED = "failed"


class _WireModel(BaseModel):
    """Base for camelCase, immutable wire models."""

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_dict(self) -> dict[str, Any]:
        """Dump using wire (camelCase) names."""
        return self.model_dump(mode="json", by_alias=True)

    def to_json(self) -> bytes:
        """Serialize to JSON bytes using orjson."""
        return orjson.dumps(self.to_dict())


class Identity(_WireModel):
    """
    Account the session is logged in as.

    Attributes:
        display_name: Push name shown to contacts.
        account_id: Account identifier on the network (the phone number).
        platform: Platform reported by the device.
    """

    display_name: str | None = None
    account_id: str
    platform: str | None = None


class StatusSnapshot(_WireModel):
    """Externally visible status, served on /status and pushed to subscribers."""

    phase: SessionPhase
    identity: Identity | None = None
    has_challenge: bool = False
    messages_this_window: int = Field(..., ge=0)
    max_per_window: int = Field(..., ge=1)
    timestamp: int = Field(..., ge=0, description="Snapshot time (ms)")


class GatewayEventType(str, Enum):
    """Kinds of events pushed to subscribers."""

    STATUS = "status"
    CHALLENGE = "challenge"
    LOADING = "loading"
    NOTICE = "notice"


class GatewayEvent(_WireModel):
    """Envelope for events pushed on the subscription channel."""

    type: GatewayEventType
    data: Any = None

    @classmethod
    def status(cls, snapshot: StatusSnapshot) -> GatewayEvent:
        return cls(type=GatewayEventType.STATUS, data=snapshot.to_dict())

    @classmethod
    def challenge(cls, image: str) -> GatewayEvent:
        return cls(type=GatewayEventType.CHALLENGE, data=image)

    @classmethod
    def loading(cls, percent: int, message: str) -> GatewayEvent:
        return cls(type=GatewayEventType.LOADING, data={"percent": percent, "message": message})

    @classmethod
    def notice(cls, text: str) -> GatewayEvent:
        return cls(type=GatewayEventType.NOTICE, data=text)


class SendMessageRequest(BaseModel):
    """
    Body of POST /send-message.

    Accepts `recipient`/`body` and the legacy `number`/`message` names.
    """

    model_config = ConfigDict(frozen=True)

    recipient: str
    body: str

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> SendMessageRequest:
        """Build from a JSON payload, mapping legacy field names."""
        data = dict(payload)
        if "recipient" not in data and "number" in data:
            data["recipient"] = data.pop("number")
        if "body" not in data and "message" in data:
            data["body"] = data.pop("message")
        return cls.model_validate(data)

    @field_validator("recipient", "body", mode="before")
    @classmethod
    def coerce_scalar(cls, v: Any) -> Any:
        """Numbers are accepted for recipient; everything ends up as str."""
        if isinstance(v, bool):
            raise ValueError("must be a string")
        if isinstance(v, int):
            return str(v)
        return v

    @field_validator("recipient", "body")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be empty")
        return v


class SendMessageResponse(_WireModel):
    """200 body of POST /send-message."""

    message_id: str
    timestamp: int
    recipient: str
