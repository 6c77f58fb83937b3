"""Peer connection orchestration for hosts and viewers.

The orchestrator owns one :class:`aiortc.RTCPeerConnection` per remote peer
and drives it through the offer/answer/ICE exchange using the signaling
transport. Application code only sees callbacks: peer state transitions,
incoming tracks, data channels, chat messages and delivery failures.

Remote ICE candidates that arrive before the remote description has been
applied are buffered on the peer record and replayed right after the
description is set.
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, TYPE_CHECKING

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from shared.protocol import (
    CHAT_CHANNEL_LABEL,
    DEFAULT_STUN_SERVERS,
    ChatMessage,
    MessageType,
    Role,
    SignalingMessage,
)

if TYPE_CHECKING:
    from .transport import TransportChannel

logger = logging.getLogger(__name__)

SHARING_REQUIRED_MESSAGE = "Start screen sharing before viewers can connect"


class PeerState(str, Enum):
    NEW = "new"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"


_CONNECTION_STATES = {
    "new": PeerState.NEW,
    "connecting": PeerState.NEGOTIATING,
    "connected": PeerState.CONNECTED,
    "disconnected": PeerState.DISCONNECTED,
    "closed": PeerState.DISCONNECTED,
    "failed": PeerState.FAILED,
}

StateCallback = Callable[[str, PeerState], Awaitable[None] | None]
TrackCallback = Callable[[str, MediaStreamTrack], Awaitable[None] | None]
ChannelCallback = Callable[[str, Any], Awaitable[None] | None]
ChatCallback = Callable[[str, ChatMessage], Awaitable[None] | None]
ErrorCallback = Callable[[str], Awaitable[None] | None]
PeerConnectionFactory = Callable[[], RTCPeerConnection]


@dataclass(slots=True)
class PeerRecord:
    peer_id: str
    connection: RTCPeerConnection
    data_channel: Optional[Any] = None
    state: PeerState = PeerState.NEW
    remote_description_set: bool = False
    negotiated: bool = False
    closed: bool = False
    pending_candidates: List[Dict[str, Any]] = field(default_factory=list)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


def description_to_dict(description: RTCSessionDescription) -> Dict[str, str]:
    return {"type": description.type, "sdp": description.sdp}


def candidate_to_dict(candidate: Any) -> Dict[str, Any]:
    return {
        "candidate": f"candidate:{candidate_to_sdp(candidate)}",
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


def candidate_from_dict(data: Dict[str, Any]) -> Any:
    sdp = str(data["candidate"])
    if sdp.startswith("candidate:"):
        sdp = sdp[len("candidate:"):]
    candidate = candidate_from_sdp(sdp)
    candidate.sdpMid = data.get("sdpMid")
    candidate.sdpMLineIndex = data.get("sdpMLineIndex")
    return candidate


def default_peer_connection_factory(ice_servers: Sequence[str] = DEFAULT_STUN_SERVERS) -> PeerConnectionFactory:
    configuration = RTCConfiguration(iceServers=[RTCIceServer(urls=list(ice_servers))])
    return lambda: RTCPeerConnection(configuration)


class ConnectionOrchestrator:
    """Drives one negotiated peer connection per remote peer."""

    def __init__(
        self,
        transport: "TransportChannel",
        *,
        role: Role,
        room_id: str,
        user_id: str,
        ice_servers: Sequence[str] = DEFAULT_STUN_SERVERS,
        peer_connection_factory: Optional[PeerConnectionFactory] = None,
        on_state_change: Optional[StateCallback] = None,
        on_track: Optional[TrackCallback] = None,
        on_data_channel: Optional[ChannelCallback] = None,
        on_chat_message: Optional[ChatCallback] = None,
        on_chat_undelivered: Optional[ChatCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        self._transport = transport
        self._role = role
        self._room_id = room_id
        self._user_id = user_id
        self._factory = peer_connection_factory or default_peer_connection_factory(ice_servers)
        self._on_state_change = on_state_change
        self._on_track = on_track
        self._on_data_channel = on_data_channel
        self._on_chat_message = on_chat_message
        self._on_chat_undelivered = on_chat_undelivered
        self._on_error = on_error
        self._peers: Dict[str, PeerRecord] = {}
        self._local_tracks: List[MediaStreamTrack] = []
        self._attached = False
        if role is Role.HOST:
            self._handlers = {
                MessageType.VIEWER_JOINED: self.handle_viewer_joined,
                MessageType.ANSWER: self.handle_answer,
                MessageType.ICE_CANDIDATE: self.handle_ice_candidate,
                MessageType.VIEWER_LEFT: self.handle_viewer_left,
            }
        else:
            self._handlers = {
                MessageType.OFFER: self.handle_offer,
                MessageType.ICE_CANDIDATE: self.handle_ice_candidate,
                MessageType.HOST_LEFT: self.handle_host_left,
            }

    @property
    def role(self) -> Role:
        return self._role

    @property
    def has_local_media(self) -> bool:
        return bool(self._local_tracks)

    def peer_ids(self) -> List[str]:
        return list(self._peers.keys())

    def get_peer(self, peer_id: str) -> Optional[PeerRecord]:
        return self._peers.get(peer_id)

    def attach(self) -> None:
        if self._attached:
            return
        for message_type, handler in self._handlers.items():
            self._transport.on(message_type, handler)
        self._attached = True

    def detach(self) -> None:
        if not self._attached:
            return
        for message_type, handler in self._handlers.items():
            self._transport.off(message_type, handler)
        self._attached = False

    def set_local_tracks(self, tracks: Iterable[MediaStreamTrack]) -> None:
        self._local_tracks = list(tracks)

    def stop_local_tracks(self) -> None:
        tracks, self._local_tracks = self._local_tracks, []
        for track in tracks:
            try:
                track.stop()
            except Exception:
                logger.exception("Failed to stop local %s track", getattr(track, "kind", "media"))

    async def handle_viewer_joined(self, message: SignalingMessage) -> None:
        viewer_id = message.user_id
        if not viewer_id:
            return
        logger.info("Viewer joined: %s", viewer_id)
        if not self._local_tracks:
            logger.warning("Viewer %s joined before sharing started; no offer sent", viewer_id)
            await self._notify(self._on_error, SHARING_REQUIRED_MESSAGE)
            return
        if viewer_id in self._peers:
            # Same viewer on a new socket: renegotiate from scratch.
            await self.close_peer(viewer_id)

        record = self._create_record(viewer_id)
        pc = record.connection
        async with record.lock:
            for track in self._local_tracks:
                pc.addTrack(track)
            self._bind_channel(record, pc.createDataChannel(CHAT_CHANNEL_LABEL))
            await self._set_state(record, PeerState.NEGOTIATING)
            try:
                offer = await pc.createOffer()
                await pc.setLocalDescription(offer)
            except Exception:
                logger.exception("Error creating offer for %s", viewer_id)
                await self._set_state(record, PeerState.FAILED)
                await self.close_peer(viewer_id)
                return
            if record.closed:
                return
            self._transport.send_offer(self._room_id, viewer_id, description_to_dict(pc.localDescription))
            logger.info("Sent offer to %s", viewer_id)

    async def handle_answer(self, message: SignalingMessage) -> None:
        peer_id = message.from_id
        record = self._peers.get(peer_id) if peer_id else None
        if record is None:
            logger.debug("Dropping answer from unknown peer %s", peer_id)
            return
        async with record.lock:
            if record.remote_description_set or record.closed:
                logger.warning("Ignoring duplicate answer from %s", peer_id)
                return
            if not await self._apply_remote_description(record, message.data):
                return
            record.negotiated = True

    async def handle_offer(self, message: SignalingMessage) -> None:
        host_id = message.from_id
        if not host_id:
            return
        existing = self._peers.get(host_id)
        if existing is not None and not existing.negotiated:
            logger.warning("Ignoring duplicate offer from %s while negotiation is in progress", host_id)
            return
        if existing is not None:
            await self.close_peer(host_id)

        logger.info("Received offer from host %s", host_id)
        record = self._create_record(host_id)
        pc = record.connection
        async with record.lock:
            await self._set_state(record, PeerState.NEGOTIATING)
            if not await self._apply_remote_description(record, message.data):
                await self.close_peer(host_id)
                return
            try:
                answer = await pc.createAnswer()
                await pc.setLocalDescription(answer)
            except Exception:
                logger.exception("Error creating answer for %s", host_id)
                await self._set_state(record, PeerState.FAILED)
                await self.close_peer(host_id)
                return
            if record.closed:
                return
            record.negotiated = True
            self._transport.send_answer(self._room_id, host_id, description_to_dict(pc.localDescription))
            logger.info("Sent answer to %s", host_id)

    async def handle_ice_candidate(self, message: SignalingMessage) -> None:
        peer_id = message.from_id
        record = self._peers.get(peer_id) if peer_id else None
        if record is None:
            logger.debug("Dropping ICE candidate for unknown peer %s", peer_id)
            return
        candidate = message.data
        if not candidate or not candidate.get("candidate"):
            # end-of-candidates marker
            return
        if not record.remote_description_set:
            record.pending_candidates.append(candidate)
            return
        await self._add_candidate(record, candidate)

    async def handle_viewer_left(self, message: SignalingMessage) -> None:
        viewer_id = message.user_id
        if viewer_id and await self.close_peer(viewer_id):
            logger.info("Viewer left: %s", viewer_id)
            await self._notify(self._on_state_change, viewer_id, PeerState.DISCONNECTED)

    async def handle_host_left(self, message: SignalingMessage) -> None:
        logger.info("Host left room %s", message.room_id)
        for peer_id in list(self._peers):
            if await self.close_peer(peer_id):
                await self._notify(self._on_state_change, peer_id, PeerState.DISCONNECTED)

    async def relay_local_candidate(self, peer_id: str, candidate: Any) -> None:
        if candidate is None or peer_id not in self._peers:
            return
        self._transport.send_ice_candidate(self._room_id, peer_id, candidate_to_dict(candidate))

    async def send_chat(self, peer_id: str, chat: ChatMessage) -> bool:
        """Send chat over the peer's data channel; failures are reported, not raised."""

        record = self._peers.get(peer_id)
        channel = record.data_channel if record else None
        if channel is None or getattr(channel, "readyState", None) != "open":
            logger.info("Chat channel to %s is not open", peer_id)
            await self._notify(self._on_chat_undelivered, peer_id, chat)
            return False
        try:
            channel.send(json.dumps(chat.to_dict()))
        except Exception:
            logger.warning("Failed to send chat to %s", peer_id, exc_info=True)
            await self._notify(self._on_chat_undelivered, peer_id, chat)
            return False
        return True

    async def broadcast_chat(self, chat: ChatMessage) -> List[str]:
        """Send chat to every peer; returns the peers it could not reach."""

        undelivered: List[str] = []
        for peer_id in list(self._peers):
            if not await self.send_chat(peer_id, chat):
                undelivered.append(peer_id)
        return undelivered

    async def close_peer(self, peer_id: str) -> bool:
        record = self._peers.get(peer_id)
        if record is None:
            return False
        record.closed = True
        record.pending_candidates.clear()
        if record.data_channel is not None:
            try:
                record.data_channel.close()
            except Exception:
                logger.debug("Error closing data channel for %s", peer_id, exc_info=True)
        try:
            await record.connection.close()
        except Exception:
            logger.exception("Error closing peer connection for %s", peer_id)
        if self._peers.get(peer_id) is record:
            del self._peers[peer_id]
        logger.info("Closed peer connection %s", peer_id)
        return True

    async def close_all(self) -> None:
        for peer_id in list(self._peers):
            await self.close_peer(peer_id)
        self.stop_local_tracks()

    def _create_record(self, peer_id: str) -> PeerRecord:
        record = PeerRecord(peer_id=peer_id, connection=self._factory())
        self._peers[peer_id] = record
        pc = record.connection

        async def on_connection_state_change() -> None:
            state = _CONNECTION_STATES.get(pc.connectionState)
            if state is not None and not record.closed:
                logger.info("Connection state for %s: %s", peer_id, pc.connectionState)
                await self._set_state(record, state)

        async def on_ice_candidate(event: Any) -> None:
            await self.relay_local_candidate(peer_id, getattr(event, "candidate", None))

        async def on_track(track: MediaStreamTrack) -> None:
            logger.info("Received %s track from %s", track.kind, peer_id)
            await self._notify(self._on_track, peer_id, track)

        async def on_data_channel(channel: Any) -> None:
            logger.info("Data channel %r received from %s", getattr(channel, "label", None), peer_id)
            self._bind_channel(record, channel)
            await self._notify(self._on_data_channel, peer_id, channel)

        pc.on("connectionstatechange", on_connection_state_change)
        pc.on("icecandidate", on_ice_candidate)
        pc.on("track", on_track)
        pc.on("datachannel", on_data_channel)
        return record

    def _bind_channel(self, record: PeerRecord, channel: Any) -> None:
        record.data_channel = channel
        peer_id = record.peer_id

        async def on_message(data: Any) -> None:
            try:
                chat = ChatMessage.from_dict(json.loads(data))
            except (TypeError, ValueError, KeyError):
                logger.warning("Discarding malformed chat payload from %s", peer_id)
                return
            await self._notify(self._on_chat_message, peer_id, chat)

        channel.on("message", on_message)

    async def _apply_remote_description(self, record: PeerRecord, data: Optional[Dict[str, Any]]) -> bool:
        try:
            description = RTCSessionDescription(sdp=data["sdp"], type=data["type"])
            await record.connection.setRemoteDescription(description)
        except Exception:
            logger.exception("Error setting remote description for %s", record.peer_id)
            await self._set_state(record, PeerState.FAILED)
            return False
        # Candidates may keep arriving while earlier ones are applied.
        while record.pending_candidates and not record.closed:
            await self._add_candidate(record, record.pending_candidates.pop(0))
        record.remote_description_set = True
        return True

    async def _add_candidate(self, record: PeerRecord, data: Dict[str, Any]) -> None:
        try:
            await record.connection.addIceCandidate(candidate_from_dict(data))
        except Exception:
            logger.warning("Error adding ICE candidate for %s", record.peer_id, exc_info=True)

    async def _set_state(self, record: PeerRecord, state: PeerState) -> None:
        if record.state is state:
            return
        record.state = state
        await self._notify(self._on_state_change, record.peer_id, state)

    async def _notify(self, callback: Optional[Callable[..., Any]], *args: Any) -> None:
        if callback is None:
            return
        try:
            result = callback(*args)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Orchestrator callback failed")
