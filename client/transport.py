from __future__ import annotations

import asyncio
import logging
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Tuple

import websockets
from websockets.exceptions import ConnectionClosed

from shared.protocol import (
    DEFAULT_RELAY_URL,
    MEMBERSHIP_TYPES,
    WILDCARD,
    MessageType,
    ProtocolError,
    Role,
    SignalingMessage,
    decode_message,
    encode_message,
)

logger = logging.getLogger(__name__)

RECONNECT_BASE_DELAY_SECONDS = 2.0
RECONNECT_MAX_DELAY_SECONDS = 30.0
MAX_RECONNECT_ATTEMPTS = 5
HEARTBEAT_INTERVAL_SECONDS = 25.0

Listener = Callable[[SignalingMessage], Awaitable[None] | None]
Connector = Callable[[str], Awaitable[Any]]


class ChannelState(str, Enum):
    CLOSED = "closed"
    CONNECTING = "connecting"
    OPEN = "open"
    SHUTTING_DOWN = "shutting_down"


class TransportChannel:
    """Reconnecting WebSocket channel to the signaling relay.

    Outbound messages always go through a FIFO queue drained by a single
    writer task, so messages sent while disconnected are replayed in order
    once the socket is open again. The last room membership is remembered
    and re-issued after every reconnect.
    """

    def __init__(
        self,
        url: str = DEFAULT_RELAY_URL,
        *,
        auto_connect: bool = True,
        max_reconnect_attempts: int = MAX_RECONNECT_ATTEMPTS,
        reconnect_base_delay: float = RECONNECT_BASE_DELAY_SECONDS,
        reconnect_max_delay: float = RECONNECT_MAX_DELAY_SECONDS,
        heartbeat_interval: float = HEARTBEAT_INTERVAL_SECONDS,
        connector: Optional[Connector] = None,
    ) -> None:
        self._url = url
        self._auto_connect = auto_connect
        self._max_reconnect_attempts = max(0, max_reconnect_attempts)
        self._reconnect_base_delay = max(0.0, reconnect_base_delay)
        self._reconnect_max_delay = max(self._reconnect_base_delay, reconnect_max_delay)
        self._heartbeat_interval = heartbeat_interval
        self._connector: Connector = connector or websockets.connect
        self._state = ChannelState.CLOSED
        self._ws: Optional[Any] = None
        self._queue: Deque[Tuple[MessageType, str]] = deque()
        self._wake = asyncio.Event()
        self._listeners: Dict[str, List[Listener]] = {}
        self._membership: Optional[Tuple[str, str, Role]] = None
        self._reconnect_attempts = 0
        self._connect_task: Optional[asyncio.Task[None]] = None
        self._reconnect_task: Optional[asyncio.Task[None]] = None
        self._reader_task: Optional[asyncio.Task[None]] = None
        self._writer_task: Optional[asyncio.Task[None]] = None
        self._heartbeat_task: Optional[asyncio.Task[None]] = None

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ChannelState.OPEN

    @property
    def pending_count(self) -> int:
        return len(self._queue)

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    async def start(self) -> None:
        if self._state is ChannelState.SHUTTING_DOWN:
            self._state = ChannelState.CLOSED
        self._reconnect_attempts = 0
        if self._auto_connect and self._state is ChannelState.CLOSED and not self._reconnect_pending():
            self._begin_connect()

    async def stop(self) -> None:
        self._state = ChannelState.SHUTTING_DOWN
        tasks = [
            self._reconnect_task,
            self._heartbeat_task,
            self._connect_task,
            self._reader_task,
            self._writer_task,
        ]
        self._reconnect_task = None
        self._heartbeat_task = None
        self._connect_task = None
        self._reader_task = None
        self._writer_task = None
        current = asyncio.current_task()
        pending = [task for task in tasks if task is not None and task is not current and not task.done()]
        for task in pending:
            task.cancel()
        ws = self._ws
        self._ws = None
        if ws is not None:
            try:
                await ws.close()
            except Exception:
                logger.debug("Error while closing relay socket", exc_info=True)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._queue.clear()
        self._listeners.clear()
        self._membership = None
        self._reconnect_attempts = 0
        logger.info("Transport channel shut down")

    def on(self, message_type: MessageType | str, listener: Listener) -> None:
        key = message_type.value if isinstance(message_type, MessageType) else message_type
        self._listeners.setdefault(key, []).append(listener)

    def off(self, message_type: MessageType | str, listener: Listener) -> None:
        key = message_type.value if isinstance(message_type, MessageType) else message_type
        listeners = self._listeners.get(key)
        if listeners and listener in listeners:
            listeners.remove(listener)

    def send(self, message: SignalingMessage) -> None:
        if self._state is ChannelState.SHUTTING_DOWN:
            logger.warning("Dropping %s: transport channel is shut down", message.type.value)
            return
        self._queue.append((message.type, encode_message(message)))
        if self._state is ChannelState.OPEN:
            self._wake.set()
        elif self._state is ChannelState.CLOSED:
            logger.debug("Queued %s while disconnected; connecting", message.type.value)
            self._trigger_connect()

    def create_room(self, room_id: str, user_id: str) -> None:
        self._membership = (room_id, user_id, Role.HOST)
        self.send(SignalingMessage(type=MessageType.CREATE_ROOM, room_id=room_id, user_id=user_id))

    def join_room(self, room_id: str, user_id: str) -> None:
        self._membership = (room_id, user_id, Role.VIEWER)
        self.send(SignalingMessage(type=MessageType.JOIN_ROOM, room_id=room_id, user_id=user_id))

    def leave_room(self, room_id: str) -> None:
        self.send(SignalingMessage(type=MessageType.LEAVE_ROOM, room_id=room_id))
        self._membership = None

    def send_offer(self, room_id: str, target_id: str, offer: Dict[str, Any]) -> None:
        self.send(SignalingMessage(type=MessageType.OFFER, room_id=room_id, target_id=target_id, data=offer))

    def send_answer(self, room_id: str, target_id: str, answer: Dict[str, Any]) -> None:
        self.send(SignalingMessage(type=MessageType.ANSWER, room_id=room_id, target_id=target_id, data=answer))

    def send_ice_candidate(self, room_id: str, target_id: str, candidate: Dict[str, Any]) -> None:
        self.send(
            SignalingMessage(type=MessageType.ICE_CANDIDATE, room_id=room_id, target_id=target_id, data=candidate)
        )

    def send_chat_message(
        self,
        room_id: str,
        user_id: str,
        username: str,
        text: str,
        *,
        message_id: Optional[str] = None,
    ) -> None:
        extra = {"id": message_id} if message_id else {}
        self.send(
            SignalingMessage(
                type=MessageType.CHAT_MESSAGE,
                room_id=room_id,
                user_id=user_id,
                username=username,
                text=text,
                extra=extra,
            )
        )

    def _reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def _trigger_connect(self) -> None:
        if self._reconnect_pending():
            return
        self._reconnect_attempts = 0
        self._begin_connect()

    def _begin_connect(self) -> None:
        self._state = ChannelState.CONNECTING
        self._connect_task = asyncio.create_task(self._open_connection())

    async def _open_connection(self) -> None:
        logger.info("Connecting to signaling server: %s", self._url)
        try:
            ws = await self._connector(self._url)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Connection to %s failed: %s", self._url, exc)
            if self._state is ChannelState.CONNECTING:
                self._state = ChannelState.CLOSED
                self._schedule_reconnect()
            return
        if self._state is not ChannelState.CONNECTING:
            try:
                await ws.close()
            except Exception:
                logger.debug("Error while closing abandoned relay socket", exc_info=True)
            return

        logger.info("Connected to signaling server")
        self._ws = ws
        self._wake = asyncio.Event()
        self._state = ChannelState.OPEN
        self._reconnect_attempts = 0
        self._queue_rejoin()
        self._writer_task = asyncio.create_task(self._write_loop(ws, self._wake))
        self._reader_task = asyncio.create_task(self._read_loop(ws))
        if self._heartbeat_interval > 0:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(ws))

    def _queue_rejoin(self) -> None:
        if self._membership is None:
            return
        if any(message_type in MEMBERSHIP_TYPES for message_type, _ in self._queue):
            return
        room_id, user_id, role = self._membership
        message_type = MessageType.CREATE_ROOM if role is Role.HOST else MessageType.JOIN_ROOM
        rejoin = SignalingMessage(type=message_type, room_id=room_id, user_id=user_id)
        logger.info("Rejoining room %s as %s", room_id, role.value)
        self._queue.appendleft((message_type, encode_message(rejoin)))

    async def _write_loop(self, ws: Any, wake: asyncio.Event) -> None:
        while self._ws is ws:
            while self._queue and self._ws is ws:
                message_type, payload = self._queue.popleft()
                try:
                    await ws.send(payload)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.warning("Failed to send %s; re-queued", message_type.value, exc_info=True)
                    self._queue.appendleft((message_type, payload))
                    break
            if self._ws is not ws:
                return
            await wake.wait()
            wake.clear()

    async def _read_loop(self, ws: Any) -> None:
        try:
            async for raw in ws:
                await self._dispatch(raw)
        except asyncio.CancelledError:
            raise
        except ConnectionClosed as exc:
            logger.info("Relay connection closed: %s", exc)
        except Exception:
            logger.exception("Error while receiving from signaling server")
        self._handle_connection_lost(ws)

    def _handle_connection_lost(self, ws: Any) -> None:
        if self._ws is not ws:
            return
        self._ws = None
        self._wake.set()
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None
        if self._state is ChannelState.SHUTTING_DOWN:
            return
        logger.warning("Disconnected from signaling server")
        self._state = ChannelState.CLOSED
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._state is not ChannelState.CLOSED or self._reconnect_pending():
            return
        if self._reconnect_attempts >= self._max_reconnect_attempts:
            logger.error(
                "Giving up after %d reconnect attempts; %d message(s) remain queued",
                self._reconnect_attempts,
                len(self._queue),
            )
            return
        self._reconnect_attempts += 1
        delay = min(
            self._reconnect_base_delay * (2 ** (self._reconnect_attempts - 1)),
            self._reconnect_max_delay,
        )
        logger.info(
            "Reconnecting in %.2fs (attempt %d/%d)",
            delay,
            self._reconnect_attempts,
            self._max_reconnect_attempts,
        )

        async def _worker(delay_seconds: float) -> None:
            if delay_seconds > 0:
                await asyncio.sleep(delay_seconds)
            self._reconnect_task = None
            if self._state is ChannelState.CLOSED:
                self._begin_connect()

        self._reconnect_task = asyncio.create_task(_worker(delay))

    async def _heartbeat_loop(self, ws: Any) -> None:
        try:
            while self._ws is ws:
                await asyncio.sleep(self._heartbeat_interval)
                if self._ws is ws and self._state is ChannelState.OPEN:
                    logger.debug("Sending liveness probe")
                    self.send(SignalingMessage(type=MessageType.PING))
        except asyncio.CancelledError:
            pass

    async def _dispatch(self, raw: str | bytes) -> None:
        try:
            message = decode_message(raw)
        except ProtocolError:
            logger.warning("Error parsing signaling message", exc_info=True)
            return
        logger.debug("Received signaling message: %s", message.type.value)
        listeners = list(self._listeners.get(message.type.value, ())) + list(self._listeners.get(WILDCARD, ()))
        for listener in listeners:
            try:
                result = listener(message)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Listener failed while handling %s", message.type.value)
