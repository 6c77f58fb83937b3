from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Iterable, List, Optional, Sequence, Set

from aiortc import MediaStreamTrack

from shared.protocol import (
    DEFAULT_STUN_SERVERS,
    ChatMessage,
    MessageType,
    Role,
    SignalingMessage,
    generate_peer_id,
)

from .orchestrator import ConnectionOrchestrator, PeerConnectionFactory, PeerState
from .transport import TransportChannel

logger = logging.getLogger(__name__)

ChatHandler = Callable[[ChatMessage], Awaitable[None] | None]
StatusHandler = Callable[[str], Awaitable[None] | None]
TrackHandler = Callable[[MediaStreamTrack], Awaitable[None] | None]


class ChatLog:
    """Ordered chat history that ignores copies of messages it has already seen."""

    def __init__(self, limit: int = 200) -> None:
        self._limit = limit
        self._messages: List[ChatMessage] = []
        self._seen: Set[str] = set()

    def add(self, chat: ChatMessage) -> bool:
        if chat.id in self._seen:
            return False
        self._seen.add(chat.id)
        self._messages.append(chat)
        if len(self._messages) > self._limit:
            evicted = self._messages.pop(0)
            self._seen.discard(evicted.id)
        return True

    def messages(self) -> List[ChatMessage]:
        return list(self._messages)


class BroadcastSession(ABC):
    """Application-level wiring of one transport channel and one orchestrator."""

    role: Role

    def __init__(
        self,
        transport: TransportChannel,
        room_id: str,
        *,
        user_id: Optional[str] = None,
        username: Optional[str] = None,
        ice_servers: Sequence[str] = DEFAULT_STUN_SERVERS,
        peer_connection_factory: Optional[PeerConnectionFactory] = None,
        on_chat: Optional[ChatHandler] = None,
        on_status: Optional[StatusHandler] = None,
    ) -> None:
        self._transport = transport
        self._room_id = room_id
        self._user_id = user_id or generate_peer_id()
        self._username = username or self.role.value.capitalize()
        self._on_chat = on_chat
        self._on_status = on_status
        self._chat_log = ChatLog()
        self._orchestrator = ConnectionOrchestrator(
            transport,
            role=self.role,
            room_id=room_id,
            user_id=self._user_id,
            ice_servers=ice_servers,
            peer_connection_factory=peer_connection_factory,
            on_state_change=self._handle_peer_state,
            on_track=self._handle_track,
            on_chat_message=self._handle_peer_chat,
            on_error=self._emit_status,
        )
        self._started = False

    @property
    def room_id(self) -> str:
        return self._room_id

    @property
    def user_id(self) -> str:
        return self._user_id

    @property
    def orchestrator(self) -> ConnectionOrchestrator:
        return self._orchestrator

    @property
    def chat_history(self) -> List[ChatMessage]:
        return self._chat_log.messages()

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._orchestrator.attach()
        self._transport.on(MessageType.CHAT_MESSAGE, self._handle_relay_chat)
        self._transport.on(MessageType.ERROR, self._handle_relay_error)
        self._join()

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        await self._orchestrator.close_all()
        self._transport.leave_room(self._room_id)
        self._orchestrator.detach()
        self._transport.off(MessageType.CHAT_MESSAGE, self._handle_relay_chat)
        self._transport.off(MessageType.ERROR, self._handle_relay_error)

    async def send_chat(self, text: str) -> ChatMessage:
        """Deliver over data channels, falling back to the relay for unreachable peers."""

        chat = ChatMessage.create(self._username, text)
        self._chat_log.add(chat)
        undelivered = await self._orchestrator.broadcast_chat(chat)
        if undelivered or not self._orchestrator.peer_ids():
            logger.info("Falling back to relay chat (%d unreachable peer(s))", len(undelivered))
            self._transport.send_chat_message(
                self._room_id,
                self._user_id,
                self._username,
                text,
                message_id=chat.id,
            )
        return chat

    @abstractmethod
    def _join(self) -> None:
        """Issue the create or join request for this session's room."""

    async def _handle_peer_chat(self, peer_id: str, chat: ChatMessage) -> None:
        await self._record_chat(chat)

    async def _handle_relay_chat(self, message: SignalingMessage) -> None:
        message_id = message.extra.get("id") or f"relay_{message.user_id}_{message.timestamp}"
        chat = ChatMessage(
            id=str(message_id),
            sender=message.username or message.user_id or "unknown",
            text=message.text or "",
            timestamp=int(message.timestamp or 0),
        )
        await self._record_chat(chat)

    async def _record_chat(self, chat: ChatMessage) -> None:
        if not self._chat_log.add(chat):
            return
        await _invoke(self._on_chat, chat)

    async def _handle_relay_error(self, message: SignalingMessage) -> None:
        logger.warning("Relay rejected request: %s", message.message)
        await self._emit_status(message.message or "error")

    async def _handle_peer_state(self, peer_id: str, state: PeerState) -> None:
        await self._emit_status(f"{peer_id}: {state.value}")

    async def _handle_track(self, peer_id: str, track: MediaStreamTrack) -> None:
        return None

    async def _emit_status(self, text: str) -> None:
        await _invoke(self._on_status, text)


class HostSession(BroadcastSession):
    role = Role.HOST

    def start_sharing(self, tracks: Iterable[MediaStreamTrack]) -> None:
        self._orchestrator.set_local_tracks(tracks)
        logger.info("Screen sharing started in room %s", self._room_id)

    def stop_sharing(self) -> None:
        self._orchestrator.stop_local_tracks()
        logger.info("Screen sharing stopped in room %s", self._room_id)

    def _join(self) -> None:
        self._transport.create_room(self._room_id, self._user_id)


class ViewerSession(BroadcastSession):
    role = Role.VIEWER

    def __init__(
        self,
        *args,
        on_track: Optional[TrackHandler] = None,
        on_host_left: Optional[Callable[[], Awaitable[None] | None]] = None,
        **kwargs,
    ) -> None:
        super().__init__(*args, **kwargs)
        self._on_track_handler = on_track
        self._on_host_left = on_host_left

    async def start(self) -> None:
        if not self._started:
            self._transport.on(MessageType.HOST_LEFT, self._handle_host_left)
        await super().start()

    async def stop(self) -> None:
        self._transport.off(MessageType.HOST_LEFT, self._handle_host_left)
        await super().stop()

    def _join(self) -> None:
        self._transport.join_room(self._room_id, self._user_id)

    async def _handle_track(self, peer_id: str, track: MediaStreamTrack) -> None:
        await _invoke(self._on_track_handler, track)

    async def _handle_host_left(self, message: SignalingMessage) -> None:
        await self._emit_status("Host left the room")
        await _invoke(self._on_host_left)


async def _invoke(callback: Optional[Callable[..., object]], *args: object) -> None:
    if callback is None:
        return
    try:
        result = callback(*args)
        if asyncio.iscoroutine(result):
            await result
    except Exception:
        logger.exception("Session callback failed")
