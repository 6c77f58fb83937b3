import asyncio
import json

import pytest

from client.transport import ChannelState, TransportChannel
from shared.protocol import ChatMessage, MessageType, SignalingMessage, encode_message


class FakeSocket:
    """In-memory stand-in for a websockets client connection."""

    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.closed = False
        self.fail_sends = False
        self._incoming: asyncio.Queue = asyncio.Queue()

    async def send(self, data: str) -> None:
        if self.closed or self.fail_sends:
            raise ConnectionError("socket is closed")
        self.sent.append(json.loads(data))

    async def close(self) -> None:
        self.drop()

    def drop(self) -> None:
        if not self.closed:
            self.closed = True
            self._incoming.put_nowait(None)

    def push(self, payload: dict) -> None:
        self.push_raw(json.dumps(payload))

    def push_raw(self, raw: str) -> None:
        self._incoming.put_nowait(raw)

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        item = await self._incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item

    def of_type(self, message_type: str) -> list[dict]:
        return [message for message in self.sent if message["type"] == message_type]


class FakeConnector:
    def __init__(self) -> None:
        self.sockets: list[FakeSocket] = []
        self.attempts = 0
        self.failures = 0

    async def __call__(self, url: str) -> FakeSocket:
        self.attempts += 1
        if self.failures:
            self.failures -= 1
            raise OSError("connection refused")
        socket = FakeSocket()
        self.sockets.append(socket)
        return socket

    @property
    def current(self) -> FakeSocket:
        return self.sockets[-1]

    def all_sent(self) -> list[dict]:
        return [message for socket in self.sockets for message in socket.sent]


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


async def wait_for(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def _channel(connector: FakeConnector, **overrides) -> TransportChannel:
    options = dict(
        connector=connector,
        reconnect_base_delay=0.01,
        reconnect_max_delay=0.05,
        heartbeat_interval=0,
    )
    options.update(overrides)
    return TransportChannel("ws://relay.test/ws", **options)


def _chat(text: str) -> SignalingMessage:
    return SignalingMessage(type=MessageType.CHAT_MESSAGE, room_id="r1", user_id="u1", username="U", text=text)


@pytest.mark.anyio
async def test_queued_messages_survive_reconnect_cycles_in_order() -> None:
    connector = FakeConnector()
    channel = _channel(connector)
    expected: list[str] = []

    for cycle in range(3):
        connector.failures = 1
        if cycle:
            # Messages sent before the drop is noticed are re-queued, not lost.
            connector.current.drop()
        for index in range(3):
            text = f"cycle{cycle}-{index}"
            expected.append(text)
            channel.send(_chat(text))
        await wait_for(lambda: len(connector.all_sent()) == len(expected))

    assert [message["text"] for message in connector.all_sent()] == expected
    assert len(connector.sockets) == 3
    assert channel.pending_count == 0
    await channel.stop()


@pytest.mark.anyio
async def test_failed_write_is_requeued_at_front() -> None:
    connector = FakeConnector()
    channel = _channel(connector)
    channel.send(_chat("first"))
    await wait_for(lambda: len(connector.all_sent()) == 1)

    connector.current.fail_sends = True
    channel.send(_chat("second"))
    channel.send(_chat("third"))
    await wait_for(lambda: channel.pending_count == 2)
    connector.current.drop()

    await wait_for(lambda: len(connector.sockets) == 2 and len(connector.current.sent) == 2)
    assert [message["text"] for message in connector.all_sent()] == ["first", "second", "third"]
    await channel.stop()


@pytest.mark.anyio
async def test_membership_is_reissued_after_reconnect_before_queued_traffic() -> None:
    connector = FakeConnector()
    channel = _channel(connector)
    await channel.start()
    channel.join_room("r1", "v1")
    await wait_for(lambda: connector.sockets and connector.current.of_type("join-room"))
    assert connector.current.of_type("join-room") == [{"type": "join-room", "roomId": "r1", "userId": "v1"}]

    connector.current.drop()
    channel.send(_chat("while away"))
    await wait_for(lambda: len(connector.sockets) == 2 and len(connector.current.sent) == 2)

    second = connector.current.sent
    assert second[0] == {"type": "join-room", "roomId": "r1", "userId": "v1"}
    assert second[1]["text"] == "while away"
    await channel.stop()


@pytest.mark.anyio
async def test_queued_create_room_is_not_duplicated_on_open() -> None:
    connector = FakeConnector()
    channel = _channel(connector)

    channel.create_room("r1", "h1")
    await wait_for(lambda: connector.sockets and connector.current.sent)
    await asyncio.sleep(0.02)

    assert connector.current.sent == [{"type": "create-room", "roomId": "r1", "userId": "h1"}]
    await channel.stop()


@pytest.mark.anyio
async def test_left_room_is_not_rejoined() -> None:
    connector = FakeConnector()
    channel = _channel(connector)
    channel.join_room("r1", "v1")
    channel.leave_room("r1")
    await wait_for(lambda: connector.sockets and len(connector.current.sent) == 2)

    connector.current.drop()
    await wait_for(lambda: len(connector.sockets) == 2 and channel.is_connected)
    await asyncio.sleep(0.02)

    assert connector.current.sent == []
    await channel.stop()


@pytest.mark.anyio
async def test_stop_discards_queue_and_prevents_reconnect() -> None:
    connector = FakeConnector()
    connector.failures = 100
    channel = _channel(connector, reconnect_base_delay=0.02)
    channel.send(_chat("never delivered"))
    await wait_for(lambda: connector.attempts >= 1)

    await channel.stop()
    attempts = connector.attempts
    assert channel.state is ChannelState.SHUTTING_DOWN
    assert channel.pending_count == 0

    channel.send(_chat("after stop"))
    await asyncio.sleep(0.1)
    assert channel.pending_count == 0
    assert connector.attempts == attempts


@pytest.mark.anyio
async def test_gives_up_after_max_attempts_until_next_send() -> None:
    connector = FakeConnector()
    connector.failures = 100
    channel = _channel(connector, max_reconnect_attempts=2, reconnect_base_delay=0.001)

    channel.send(_chat("one"))
    await wait_for(lambda: connector.attempts == 3)
    await asyncio.sleep(0.05)

    assert connector.attempts == 3
    assert channel.state is ChannelState.CLOSED
    assert channel.pending_count == 1

    connector.failures = 0
    channel.send(_chat("two"))
    await wait_for(lambda: len(connector.all_sent()) == 2)
    assert [message["text"] for message in connector.all_sent()] == ["one", "two"]
    await channel.stop()


@pytest.mark.anyio
async def test_listener_failure_does_not_block_other_listeners() -> None:
    connector = FakeConnector()
    channel = _channel(connector)
    await channel.start()
    await wait_for(lambda: channel.is_connected)
    received: list[tuple[str, str]] = []

    def broken(message: SignalingMessage) -> None:
        raise RuntimeError("boom")

    async def typed(message: SignalingMessage) -> None:
        received.append(("typed", message.type.value))

    channel.on(MessageType.ROOM_JOINED, broken)
    channel.on(MessageType.ROOM_JOINED, typed)
    channel.on("*", lambda message: received.append(("any", message.type.value)))

    connector.current.push({"type": "room-joined", "roomId": "r1", "userId": "v1"})
    connector.current.push({"type": "viewer-left", "roomId": "r1", "userId": "v9"})
    await wait_for(lambda: len(received) == 3)

    assert received == [("typed", "room-joined"), ("any", "room-joined"), ("any", "viewer-left")]

    channel.off(MessageType.ROOM_JOINED, typed)
    connector.current.push({"type": "room-joined", "roomId": "r1", "userId": "v1"})
    await wait_for(lambda: len(received) == 4)
    assert received[-1] == ("any", "room-joined")
    await channel.stop()


@pytest.mark.anyio
async def test_heartbeat_sends_ping_while_open() -> None:
    connector = FakeConnector()
    channel = _channel(connector, heartbeat_interval=0.01)
    await channel.start()

    await wait_for(lambda: connector.sockets and connector.current.of_type("ping"))
    await channel.stop()


@pytest.mark.anyio
async def test_chat_sent_while_reconnecting_arrives_exactly_once() -> None:
    connector = FakeConnector()
    channel = _channel(connector)
    await channel.start()
    channel.join_room("r1", "v1")
    await wait_for(lambda: connector.sockets and connector.current.sent)

    connector.failures = 1
    connector.current.drop()
    chat = ChatMessage.create("Viewer", "hello")
    channel.send_chat_message("r1", "v1", "Viewer", "hello", message_id=chat.id)

    await wait_for(lambda: len(connector.sockets) == 2 and connector.current.of_type("chat-message"))
    await asyncio.sleep(0.02)

    chats = [message for message in connector.all_sent() if message["type"] == "chat-message"]
    assert len(chats) == 1
    assert chats[0]["text"] == "hello"
    assert chats[0]["id"] == chat.id
    await channel.stop()


@pytest.mark.anyio
async def test_malformed_inbound_frame_is_skipped() -> None:
    connector = FakeConnector()
    channel = _channel(connector)
    await channel.start()
    await wait_for(lambda: channel.is_connected)
    seen: list[str] = []
    channel.on("*", lambda message: seen.append(message.type.value))

    connector.current.push_raw("{broken")
    connector.current.push_raw(encode_message(SignalingMessage(type=MessageType.HOST_LEFT, room_id="r1")))
    await wait_for(lambda: seen == ["host-left"])

    assert channel.is_connected
    await channel.stop()
