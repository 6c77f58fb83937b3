"""Signaling protocol primitives shared between relay and clients.

Every frame is a single JSON object sent as a WebSocket text message. The
``type`` field selects the variant; the remaining fields are a flat envelope
(``roomId``, ``userId``, ``targetId`` ...) so browsers and Python clients can
speak the same protocol. This module centralises serialization helpers and
field requirements so both halves of the application remain in sync.
"""
from __future__ import annotations

import json
import random
import string
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class MessageType(str, Enum):
    """Signaling events exchanged over the relay socket."""

    # client -> server
    CREATE_ROOM = "create-room"
    JOIN_ROOM = "join-room"
    LEAVE_ROOM = "leave-room"
    PING = "ping"
    # both directions
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"
    CHAT_MESSAGE = "chat-message"
    # server -> client
    CONNECTED = "connected"
    ROOM_CREATED = "room-created"
    ROOM_JOINED = "room-joined"
    VIEWER_JOINED = "viewer-joined"
    VIEWER_LEFT = "viewer-left"
    HOST_LEFT = "host-left"
    ERROR = "error"


class Role(str, Enum):
    HOST = "host"
    VIEWER = "viewer"


RELAY_TYPES = frozenset({MessageType.OFFER, MessageType.ANSWER, MessageType.ICE_CANDIDATE})
MEMBERSHIP_TYPES = frozenset({MessageType.CREATE_ROOM, MessageType.JOIN_ROOM})

# Wire names of the envelope fields, keyed by dataclass attribute.
_WIRE_FIELDS = {
    "room_id": "roomId",
    "user_id": "userId",
    "target_id": "targetId",
    "from_id": "fromId",
    "data": "data",
    "text": "text",
    "username": "username",
    "timestamp": "timestamp",
    "message": "message",
}

# Envelope fields that must be strings when present.
_STRING_FIELDS = ("roomId", "userId", "targetId", "fromId", "username", "text", "message")

# Fields a client must supply for each inbound variant.
REQUIRED_FIELDS: Dict[MessageType, tuple[str, ...]] = {
    MessageType.CREATE_ROOM: ("roomId", "userId"),
    MessageType.JOIN_ROOM: ("roomId", "userId"),
    MessageType.OFFER: ("roomId", "targetId", "data"),
    MessageType.ANSWER: ("roomId", "targetId", "data"),
    MessageType.ICE_CANDIDATE: ("roomId", "targetId", "data"),
    MessageType.CHAT_MESSAGE: ("roomId", "userId", "username", "text"),
    MessageType.LEAVE_ROOM: ("roomId",),
    MessageType.PING: (),
}

ERROR_INVALID_FORMAT = "Invalid message format"
ERROR_ROOM_EXISTS = "Room already exists"
ERROR_ROOM_NOT_FOUND = "Room not found"
ERROR_NOT_IN_ROOM = "Not in this room"
CONNECTED_GREETING = "Connected to signaling server"

SERVICE_NAME = "WatchTogether Signaling Server"
SERVICE_VERSION = "1.0.0"

DEFAULT_PORT = 5000
DEFAULT_RELAY_URL = "ws://localhost:5000/ws"
DEFAULT_STUN_SERVERS = (
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
)
CHAT_CHANNEL_LABEL = "chat"
WILDCARD = "*"


class SignalingError(Exception):
    """Base class for errors reported back to the originating connection."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ProtocolError(SignalingError):
    """Raised when a frame cannot be decoded into a signaling message."""


class UnknownMessageType(ProtocolError):
    """Raised for well-formed frames carrying an unrecognised ``type``."""

    def __init__(self, type_name: object) -> None:
        super().__init__(f"Unknown message type: {type_name!r}")
        self.type_name = type_name


@dataclass(slots=True)
class SignalingMessage:
    """Tagged envelope for every signaling frame."""

    type: MessageType
    room_id: Optional[str] = None
    user_id: Optional[str] = None
    target_id: Optional[str] = None
    from_id: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    text: Optional[str] = None
    username: Optional[str] = None
    timestamp: Optional[int] = None
    message: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = dict(self.extra)
        payload["type"] = self.type.value
        for attr, wire_name in _WIRE_FIELDS.items():
            value = getattr(self, attr)
            if value is not None:
                payload[wire_name] = value
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SignalingMessage":
        if not isinstance(data, dict):
            raise ProtocolError(ERROR_INVALID_FORMAT)
        raw_type = data.get("type")
        try:
            message_type = MessageType(raw_type)
        except ValueError:
            raise UnknownMessageType(raw_type) from None
        for name in _STRING_FIELDS:
            if data.get(name) is not None and not isinstance(data[name], str):
                raise ProtocolError(ERROR_INVALID_FORMAT)
        if data.get("data") is not None and not isinstance(data["data"], dict):
            raise ProtocolError(ERROR_INVALID_FORMAT)
        known = {"type", *_WIRE_FIELDS.values()}
        kwargs = {attr: data.get(wire_name) for attr, wire_name in _WIRE_FIELDS.items()}
        extra = {key: value for key, value in data.items() if key not in known}
        return cls(type=message_type, extra=extra, **kwargs)

    def missing_fields(self) -> list[str]:
        """Return the required wire fields this message does not carry."""

        payload = self.to_dict()
        return [name for name in REQUIRED_FIELDS.get(self.type, ()) if payload.get(name) in (None, "")]

    def with_sender(self, from_id: str) -> "SignalingMessage":
        """Copy of this message annotated with the sender's peer id."""

        return SignalingMessage(
            type=self.type,
            room_id=self.room_id,
            user_id=self.user_id,
            target_id=self.target_id,
            from_id=from_id,
            data=self.data,
            text=self.text,
            username=self.username,
            timestamp=self.timestamp,
            message=self.message,
            extra=dict(self.extra),
        )


def encode_message(message: SignalingMessage) -> str:
    """Serialize a signaling message into a compact JSON text frame."""

    return json.dumps(message.to_dict(), separators=(",", ":"))


def decode_message(raw: str | bytes) -> SignalingMessage:
    """Parse a text frame; raises :class:`ProtocolError` on malformed input."""

    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            raise ProtocolError(ERROR_INVALID_FORMAT) from None
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        raise ProtocolError(ERROR_INVALID_FORMAT) from None
    return SignalingMessage.from_dict(data)


def error_message(text: str) -> SignalingMessage:
    return SignalingMessage(type=MessageType.ERROR, message=text)


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(slots=True)
class ChatMessage:
    """Chat payload carried over data channels and relay fallback."""

    id: str
    sender: str
    text: str
    timestamp: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sender": self.sender,
            "text": self.text,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatMessage":
        return cls(
            id=str(data["id"]),
            sender=str(data["sender"]),
            text=str(data["text"]),
            timestamp=int(data["timestamp"]),
        )

    @classmethod
    def create(cls, sender: str, text: str) -> "ChatMessage":
        timestamp = now_ms()
        return cls(id=f"msg_{_random_token(9)}_{timestamp}", sender=sender, text=text, timestamp=timestamp)


def _random_token(length: int) -> str:
    alphabet = string.ascii_lowercase + string.digits
    return "".join(random.choices(alphabet, k=length))


def generate_peer_id() -> str:
    """Return a fresh peer identifier, unique enough within one room."""

    return f"peer_{_random_token(9)}_{now_ms()}"


def generate_room_id() -> str:
    return _random_token(9)
