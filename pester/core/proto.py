from __future__ import annotations

import time
from typing import Any, Annotated, Literal, Optional, Union

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    StringConstraints,
    TypeAdapter,
    ValidationError,
)
from pydantic.alias_generators import to_camel

from pester.utils import canonical


# ---------------------------------------------------------------------------
# Errors & clock
# ---------------------------------------------------------------------------

class ProtocolError(ValueError):
    """Client-facing failure. The message is sent back verbatim in an ``error`` event."""


MAX_MESSAGE_CHARS = 300

_last_ms = 0


def now_ms() -> int:
    """Milliseconds since the Unix epoch, never lower than a previous reading."""

    global _last_ms
    ms = int(time.time() * 1000)
    if ms < _last_ms:
        ms = _last_ms
    _last_ms = ms
    return ms


def _id_or_none(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


# Identifier fields are self-asserted strings; anything else counts as missing.
OptionalId = Annotated[Optional[str], BeforeValidator(_id_or_none)]


# ---------------------------------------------------------------------------
# Client -> server
# ---------------------------------------------------------------------------

class _Inbound(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore", frozen=True)


class RegisterRequest(_Inbound):
    type: Literal["register"]
    user_id: OptionalId = None


class OpenChannelRequest(_Inbound):
    type: Literal["open_channel"]
    friend_id: OptionalId = None


class MessageRequest(_Inbound):
    type: Literal["message"]
    channel_id: OptionalId = None
    target_user_id: OptionalId = None
    text: Any = None


class TypingRequest(_Inbound):
    type: Literal["typing"]
    channel_id: OptionalId = None
    target_user_id: OptionalId = None


class CloseChannelRequest(_Inbound):
    type: Literal["close_channel"]
    channel_id: OptionalId = None


InboundEvent = Annotated[
    Union[RegisterRequest, OpenChannelRequest, MessageRequest, TypingRequest, CloseChannelRequest],
    Field(discriminator="type"),
]

_INBOUND = TypeAdapter(InboundEvent)


def parse_event(raw: bytes | str) -> InboundEvent:
    """Decode one wire frame into an inbound event.

    Raises ProtocolError("Invalid JSON") for undecodable input or a non-object
    payload, and ProtocolError("Unknown message type: ...") for a missing or
    unrecognised ``type``.
    """

    try:
        data = canonical.loads(raw)
    except canonical.JSONDecodeError:
        raise ProtocolError("Invalid JSON") from None
    if not isinstance(data, dict):
        raise ProtocolError("Invalid JSON")
    try:
        return _INBOUND.validate_python(data)
    except ValidationError:
        raise ProtocolError(f"Unknown message type: {data.get('type')}") from None


# ---------------------------------------------------------------------------
# Message text
# ---------------------------------------------------------------------------

MessageText = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]

_TEXT = TypeAdapter(MessageText)

_TEXT_ERRORS = {
    "string_too_short": "Message cannot be empty",
}


def utf16_length(text: str) -> int:
    """Length as browser clients count it: astral characters take two units."""
    return len(text.encode("utf-16-le")) // 2


def clean_message_text(value: Any) -> str:
    """Return the trimmed text or raise ProtocolError with a user-readable reason."""

    try:
        text = _TEXT.validate_python(value, strict=True)
    except ValidationError as exc:
        kind = exc.errors()[0]["type"]
        raise ProtocolError(_TEXT_ERRORS.get(kind, "Invalid message text")) from None
    if utf16_length(text) > MAX_MESSAGE_CHARS:
        raise ProtocolError(f"Message must be {MAX_MESSAGE_CHARS} characters or less")
    return text


# ---------------------------------------------------------------------------
# Server -> client
# ---------------------------------------------------------------------------

class _Outbound(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)


class Registered(_Outbound):
    type: Literal["registered"] = "registered"
    user_id: str
    timestamp: int


class Kicked(_Outbound):
    type: Literal["kicked"] = "kicked"
    message: str = "Logged in from another client"


class ChannelOpened(_Outbound):
    type: Literal["channel_opened"] = "channel_opened"
    channel_id: str
    friend_id: str
    friend_online: bool
    timestamp: int


class ChannelInvite(_Outbound):
    type: Literal["channel_invite"] = "channel_invite"
    channel_id: str
    from_user_id: str
    timestamp: int


class ChatMessage(_Outbound):
    type: Literal["message"] = "message"
    channel_id: str
    from_user_id: str
    text: str
    timestamp: int


class TypingNotice(_Outbound):
    type: Literal["typing"] = "typing"
    channel_id: str
    user_id: str
    timestamp: int


class UserLeft(_Outbound):
    type: Literal["user_left"] = "user_left"
    channel_id: str
    user_id: str
    timestamp: int


class UserOnline(_Outbound):
    type: Literal["user_online"] = "user_online"
    channel_id: str
    user_id: str
    timestamp: int


class ChannelClosed(_Outbound):
    type: Literal["channel_closed"] = "channel_closed"
    channel_id: str
    timestamp: int


class ErrorEvent(_Outbound):
    type: Literal["error"] = "error"
    message: str


def error_frame(message: str) -> dict:
    return ErrorEvent(message=message).to_wire()


__all__ = [
    "ProtocolError",
    "MAX_MESSAGE_CHARS",
    "now_ms",
    "RegisterRequest",
    "OpenChannelRequest",
    "MessageRequest",
    "TypingRequest",
    "CloseChannelRequest",
    "InboundEvent",
    "parse_event",
    "clean_message_text",
    "utf16_length",
    "Registered",
    "Kicked",
    "ChannelOpened",
    "ChannelInvite",
    "ChatMessage",
    "TypingNotice",
    "UserLeft",
    "UserOnline",
    "ChannelClosed",
    "ErrorEvent",
    "error_frame",
]
