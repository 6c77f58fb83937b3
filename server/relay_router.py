from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict

from shared.protocol import (
    MessageType,
    ProtocolError,
    SignalingError,
    SignalingMessage,
    UnknownMessageType,
    decode_message,
    error_message,
    now_ms,
)

from .room_registry import Connection, RoomRegistry

logger = logging.getLogger(__name__)

Handler = Callable[[Connection, SignalingMessage], Awaitable[None]]


class RelayRouter:
    """Decodes inbound frames and applies them to the room registry.

    Errors are reported to the originating connection only; nothing raised
    here ever tears down the socket.
    """

    def __init__(self, registry: RoomRegistry) -> None:
        self._registry = registry
        self._handlers: Dict[MessageType, Handler] = {
            MessageType.CREATE_ROOM: self._handle_create_room,
            MessageType.JOIN_ROOM: self._handle_join_room,
            MessageType.OFFER: self._handle_signal,
            MessageType.ANSWER: self._handle_signal,
            MessageType.ICE_CANDIDATE: self._handle_signal,
            MessageType.CHAT_MESSAGE: self._handle_chat,
            MessageType.LEAVE_ROOM: self._handle_leave,
            MessageType.PING: self._handle_ping,
        }

    @property
    def registry(self) -> RoomRegistry:
        return self._registry

    async def handle_text(self, connection: Connection, raw: str | bytes) -> None:
        try:
            message = decode_message(raw)
        except UnknownMessageType as exc:
            logger.warning("Unknown message type %r from %s", exc.type_name, connection.connection_id)
            return
        except ProtocolError as exc:
            logger.warning("Malformed frame from %s", connection.connection_id)
            await connection.send(error_message(exc.message))
            return

        logger.debug("Received %s for room %s", message.type.value, message.room_id)
        handler = self._handlers.get(message.type)
        if handler is None:
            # Server-to-client variants sent upstream are ignored like unknown types.
            logger.warning("Ignoring %s sent by client %s", message.type.value, connection.connection_id)
            return

        missing = message.missing_fields()
        if missing:
            await connection.send(error_message(f"Missing required field: {missing[0]}"))
            return

        try:
            await handler(connection, message)
        except SignalingError as exc:
            logger.info("Rejected %s from %s: %s", message.type.value, connection.connection_id, exc.message)
            await connection.send(error_message(exc.message))

    async def _handle_create_room(self, connection: Connection, message: SignalingMessage) -> None:
        ack = await self._registry.create_room(connection.connection_id, message.room_id, message.user_id)
        await connection.send(ack)

    async def _handle_join_room(self, connection: Connection, message: SignalingMessage) -> None:
        ack = await self._registry.join_room(connection.connection_id, message.room_id, message.user_id)
        await connection.send(ack)

    async def _handle_signal(self, connection: Connection, message: SignalingMessage) -> None:
        await self._registry.route_signal(connection.connection_id, message)

    async def _handle_chat(self, connection: Connection, message: SignalingMessage) -> None:
        recipients = await self._registry.chat_recipients(connection.connection_id, message.room_id)
        chat = SignalingMessage(
            type=MessageType.CHAT_MESSAGE,
            room_id=message.room_id,
            user_id=message.user_id,
            username=message.username,
            text=message.text,
            timestamp=now_ms(),
            extra=dict(message.extra),
        )
        # Fire-and-forget: each open recipient gets at most one copy.
        await asyncio.gather(*(recipient.send(chat) for recipient in recipients), return_exceptions=True)

    async def _handle_leave(self, connection: Connection, message: SignalingMessage) -> None:
        await self._registry.leave(connection.connection_id, message.room_id)

    async def _handle_ping(self, connection: Connection, message: SignalingMessage) -> None:
        await self._registry.mark_seen(connection.connection_id)
