from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from starlette.websockets import WebSocket, WebSocketState

from shared.protocol import (
    ERROR_NOT_IN_ROOM,
    ERROR_ROOM_EXISTS,
    ERROR_ROOM_NOT_FOUND,
    MessageType,
    Role,
    SignalingError,
    SignalingMessage,
    encode_message,
)

logger = logging.getLogger(__name__)


class RoomExistsError(SignalingError):
    def __init__(self, room_id: str) -> None:
        super().__init__(ERROR_ROOM_EXISTS)
        self.room_id = room_id


class RoomNotFoundError(SignalingError):
    def __init__(self, room_id: Optional[str]) -> None:
        super().__init__(ERROR_ROOM_NOT_FOUND)
        self.room_id = room_id


class NotInRoomError(SignalingError):
    def __init__(self, room_id: Optional[str]) -> None:
        super().__init__(ERROR_NOT_IN_ROOM)
        self.room_id = room_id


@dataclass(slots=True)
class Membership:
    room_id: str
    role: Role
    user_id: str


@dataclass(slots=True)
class Connection:
    """One live relay socket and the room membership it currently holds."""

    connection_id: str
    websocket: WebSocket
    membership: Optional[Membership] = None
    connected_at: float = field(default_factory=lambda: time.time())
    last_seen: float = field(default_factory=lambda: time.monotonic())

    @property
    def is_open(self) -> bool:
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    def touch(self) -> None:
        self.last_seen = time.monotonic()

    async def send(self, message: SignalingMessage) -> bool:
        if not self.is_open:
            return False
        try:
            await self.websocket.send_text(encode_message(message))
        except Exception:
            logger.debug("Failed to deliver %s to %s", message.type.value, self.connection_id, exc_info=True)
            return False
        return True


@dataclass(slots=True)
class Room:
    room_id: str
    host_connection_id: str
    host_user_id: str
    # user_id -> connection_id, in join order
    viewers: Dict[str, str] = field(default_factory=dict)
    created_at: float = field(default_factory=lambda: time.time())


Delivery = Tuple[Connection, SignalingMessage]


class RoomRegistry:
    """In-memory mapping of rooms to their host and viewer connections.

    Every public mutation runs under a single lock and returns the messages it
    produced; those are delivered after the lock is released so a slow or
    dead socket never stalls other rooms.
    """

    def __init__(self) -> None:
        self._connections: Dict[str, Connection] = {}
        self._rooms: Dict[str, Room] = {}
        self._lock = asyncio.Lock()

    async def attach(self, websocket: WebSocket) -> Connection:
        async with self._lock:
            connection = Connection(connection_id=uuid.uuid4().hex, websocket=websocket)
            self._connections[connection.connection_id] = connection
            logger.info("Attached connection %s", connection.connection_id)
            return connection

    async def get(self, connection_id: str) -> Optional[Connection]:
        async with self._lock:
            return self._connections.get(connection_id)

    async def has_room(self, room_id: str) -> bool:
        async with self._lock:
            return room_id in self._rooms

    async def room_count(self) -> int:
        async with self._lock:
            return len(self._rooms)

    async def create_room(self, connection_id: str, room_id: str, user_id: str) -> SignalingMessage:
        async with self._lock:
            connection = self._require_connection(connection_id)
            if room_id in self._rooms:
                raise RoomExistsError(room_id)
            deliveries = self._release_membership(connection)
            self._rooms[room_id] = Room(room_id=room_id, host_connection_id=connection_id, host_user_id=user_id)
            connection.membership = Membership(room_id=room_id, role=Role.HOST, user_id=user_id)
            logger.info("Room created: %s by host %s", room_id, user_id)
        await self._deliver(deliveries)
        return SignalingMessage(type=MessageType.ROOM_CREATED, room_id=room_id, user_id=user_id)

    async def join_room(self, connection_id: str, room_id: str, user_id: str) -> SignalingMessage:
        async with self._lock:
            connection = self._require_connection(connection_id)
            if room_id not in self._rooms:
                raise RoomNotFoundError(room_id)
            current = connection.membership
            if current is not None and current.room_id == room_id and current.role is Role.HOST:
                raise SignalingError("Already hosting this room")
            if current is not None and (current.room_id, current.role, current.user_id) == (room_id, Role.VIEWER, user_id):
                deliveries: List[Delivery] = []
            else:
                deliveries = self._release_membership(connection)
            room = self._rooms[room_id]
            previous_id = room.viewers.get(user_id)
            if previous_id is not None and previous_id != connection_id:
                # Last join wins: the older socket silently loses its membership.
                previous = self._connections.get(previous_id)
                if previous is not None:
                    previous.membership = None
                logger.info("Viewer %s rejoined room %s on a new connection", user_id, room_id)
            room.viewers[user_id] = connection_id
            connection.membership = Membership(room_id=room_id, role=Role.VIEWER, user_id=user_id)
            host = self._connections.get(room.host_connection_id)
            if host is not None:
                deliveries.append(
                    (host, SignalingMessage(type=MessageType.VIEWER_JOINED, room_id=room_id, user_id=user_id))
                )
            logger.info("Viewer %s joined room %s (%d viewers)", user_id, room_id, len(room.viewers))
        await self._deliver(deliveries)
        return SignalingMessage(type=MessageType.ROOM_JOINED, room_id=room_id, user_id=user_id)

    async def leave(self, connection_id: str, room_id: Optional[str] = None) -> bool:
        """Explicit leave; ignored when ``room_id`` is not the connection's room."""

        async with self._lock:
            connection = self._connections.get(connection_id)
            if connection is None or connection.membership is None:
                return False
            if room_id is not None and connection.membership.room_id != room_id:
                return False
            deliveries = self._release_membership(connection)
        await self._deliver(deliveries)
        return True

    async def disconnect(self, connection_id: str) -> bool:
        """Drop a closed socket and everything it was attached to."""

        async with self._lock:
            connection = self._connections.pop(connection_id, None)
            if connection is None:
                return False
            deliveries = self._release_membership(connection)
            logger.info("Detached connection %s", connection_id)
        await self._deliver(deliveries)
        return True

    async def route_signal(self, connection_id: str, message: SignalingMessage) -> bool:
        """Forward an offer/answer/candidate; returns False on a routing miss."""

        async with self._lock:
            connection, room = self._require_member(connection_id, message.room_id)
            membership = connection.membership
            assert membership is not None
            target: Optional[Connection] = None
            if membership.role is Role.HOST:
                for user_id, viewer_id in room.viewers.items():
                    if user_id == message.target_id:
                        target = self._connections.get(viewer_id)
                        break
            else:
                target = self._connections.get(room.host_connection_id)
            if target is None:
                logger.debug(
                    "Dropping %s from %s: target %s not in room %s",
                    message.type.value,
                    membership.user_id,
                    message.target_id,
                    room.room_id,
                )
                return False
            forwarded = message.with_sender(membership.user_id)
        return await target.send(forwarded)

    async def chat_recipients(self, connection_id: str, room_id: Optional[str]) -> List[Connection]:
        async with self._lock:
            _, room = self._require_member(connection_id, room_id)
            recipients: List[Connection] = []
            host = self._connections.get(room.host_connection_id)
            if host is not None:
                recipients.append(host)
            for viewer_id in room.viewers.values():
                viewer = self._connections.get(viewer_id)
                if viewer is not None:
                    recipients.append(viewer)
            return recipients

    async def mark_seen(self, connection_id: str) -> None:
        async with self._lock:
            connection = self._connections.get(connection_id)
            if connection:
                connection.touch()

    async def snapshot(self) -> Dict[str, Any]:
        async with self._lock:
            rooms = []
            for room in self._rooms.values():
                rooms.append(
                    {
                        "room_id": room.room_id,
                        "host": room.host_user_id,
                        "viewers": list(room.viewers.keys()),
                        "viewer_count": len(room.viewers),
                        "created_at": room.created_at,
                    }
                )
            return {
                "rooms": rooms,
                "room_count": len(self._rooms),
                "connection_count": len(self._connections),
            }

    def _require_connection(self, connection_id: str) -> Connection:
        connection = self._connections.get(connection_id)
        if connection is None:
            raise NotInRoomError(None)
        return connection

    def _require_member(self, connection_id: str, room_id: Optional[str]) -> Tuple[Connection, Room]:
        connection = self._require_connection(connection_id)
        membership = connection.membership
        if membership is None or membership.room_id != room_id:
            raise NotInRoomError(room_id)
        room = self._rooms.get(membership.room_id)
        if room is None:
            raise RoomNotFoundError(room_id)
        return connection, room

    def _release_membership(self, connection: Connection) -> List[Delivery]:
        """Detach ``connection`` from its room; caller must hold the lock."""

        membership = connection.membership
        connection.membership = None
        if membership is None:
            return []
        room = self._rooms.get(membership.room_id)
        if room is None:
            return []
        deliveries: List[Delivery] = []
        if membership.role is Role.HOST:
            if room.host_connection_id != connection.connection_id:
                return []
            del self._rooms[room.room_id]
            for viewer_id in room.viewers.values():
                viewer = self._connections.get(viewer_id)
                if viewer is None:
                    continue
                viewer.membership = None
                deliveries.append((viewer, SignalingMessage(type=MessageType.HOST_LEFT, room_id=room.room_id)))
            logger.info("Room %s closed - host %s left", room.room_id, membership.user_id)
        else:
            if room.viewers.get(membership.user_id) != connection.connection_id:
                return []
            del room.viewers[membership.user_id]
            host = self._connections.get(room.host_connection_id)
            if host is not None:
                deliveries.append(
                    (
                        host,
                        SignalingMessage(
                            type=MessageType.VIEWER_LEFT,
                            room_id=room.room_id,
                            user_id=membership.user_id,
                        ),
                    )
                )
            logger.info("Viewer %s left room %s", membership.user_id, room.room_id)
        return deliveries

    async def _deliver(self, deliveries: List[Delivery]) -> None:
        if not deliveries:
            return
        await asyncio.gather(*(conn.send(message) for conn, message in deliveries), return_exceptions=True)
