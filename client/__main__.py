from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from typing import List, Optional

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaBlackhole

from shared.protocol import DEFAULT_RELAY_URL, DEFAULT_STUN_SERVERS, ChatMessage, generate_peer_id, generate_room_id

from .capture import MicrophoneTrack, ScreenCaptureTrack
from .session import BroadcastSession, HostSession, ViewerSession
from .transport import HEARTBEAT_INTERVAL_SECONDS, MAX_RECONNECT_ATTEMPTS, TransportChannel

logger = logging.getLogger(__name__)


def _print_chat(chat: ChatMessage) -> None:
    print(f"[{chat.sender}] {chat.text}", flush=True)


def _print_status(text: str) -> None:
    print(f"* {text}", flush=True)


async def _read_chat_lines(session: BroadcastSession) -> None:
    while True:
        line = await asyncio.to_thread(sys.stdin.readline)
        if not line:
            return
        text = line.strip()
        if text:
            await session.send_chat(text)


async def run(args: argparse.Namespace) -> None:
    transport = TransportChannel(
        args.relay_url,
        max_reconnect_attempts=args.max_reconnect_attempts,
        heartbeat_interval=args.heartbeat_interval,
    )
    ice_servers = args.stun or list(DEFAULT_STUN_SERVERS)
    user_id = args.user_id or generate_peer_id()
    blackhole: Optional[MediaBlackhole] = None
    host_gone = asyncio.Event()

    if args.mode == "host":
        room_id = args.room or generate_room_id()
        session: BroadcastSession = HostSession(
            transport,
            room_id,
            user_id=user_id,
            username=args.username or "Host",
            ice_servers=ice_servers,
            on_chat=_print_chat,
            on_status=_print_status,
        )
        tracks: List[MediaStreamTrack] = [ScreenCaptureTrack(monitor=args.monitor, max_width=args.max_width)]
        if args.audio:
            tracks.append(MicrophoneTrack())
        session.start_sharing(tracks)
        _print_status(f"Hosting room {room_id}")
    else:
        if not args.room:
            raise SystemExit("--room is required to view a broadcast")
        room_id = args.room
        blackhole = MediaBlackhole()

        async def on_track(track: MediaStreamTrack) -> None:
            assert blackhole is not None
            blackhole.addTrack(track)
            await blackhole.start()
            _print_status(f"Receiving {track.kind}")

        session = ViewerSession(
            transport,
            room_id,
            user_id=user_id,
            username=args.username or "Viewer",
            ice_servers=ice_servers,
            on_chat=_print_chat,
            on_status=_print_status,
            on_track=on_track,
            on_host_left=host_gone.set,
        )

    await transport.start()
    await session.start()
    reader = asyncio.create_task(_read_chat_lines(session))
    host_left = asyncio.create_task(host_gone.wait())
    try:
        await asyncio.wait({reader, host_left}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        reader.cancel()
        host_left.cancel()
        await session.stop()
        if blackhole is not None:
            await blackhole.stop()
        await transport.stop()


def main() -> None:
    parser = argparse.ArgumentParser(description="WatchTogether broadcast client")
    parser.add_argument("mode", choices=["host", "view"], help="Share your screen or watch a room")
    parser.add_argument("--room", help="Room identifier (generated for hosts when omitted)")
    parser.add_argument(
        "--relay-url",
        default=os.environ.get("RELAY_URL", DEFAULT_RELAY_URL),
        help="Signaling relay WebSocket URL (defaults to $RELAY_URL)",
    )
    parser.add_argument("--username", help="Display name used in chat")
    parser.add_argument("--user-id", help="Peer identifier (generated when omitted)")
    parser.add_argument("--stun", action="append", help="STUN server URL; may be repeated")
    parser.add_argument("--audio", action="store_true", help="Also share microphone audio (host only)")
    parser.add_argument("--monitor", type=int, default=None, help="Monitor index to capture (host only)")
    parser.add_argument("--max-width", type=int, default=1920, help="Downscale captured frames to this width")
    parser.add_argument("--max-reconnect-attempts", type=int, default=MAX_RECONNECT_ATTEMPTS)
    parser.add_argument("--heartbeat-interval", type=float, default=HEARTBEAT_INTERVAL_SECONDS)
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    args = parser.parse_args()

    log_level = getattr(logging, str(args.log_level).upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        force=True,
    )

    try:
        asyncio.run(run(args))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
