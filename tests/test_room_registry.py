import json

import pytest
from starlette.websockets import WebSocketState

from server.room_registry import NotInRoomError, RoomExistsError, RoomNotFoundError, RoomRegistry
from shared.protocol import MessageType, SignalingMessage


class DummyWebSocket:
    def __init__(self) -> None:
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED
        self.sent: list[dict] = []

    async def send_text(self, data: str) -> None:
        self.sent.append(json.loads(data))

    def drop(self) -> None:
        self.client_state = WebSocketState.DISCONNECTED

    def of_type(self, message_type: str) -> list[dict]:
        return [message for message in self.sent if message["type"] == message_type]


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


async def _connect(registry: RoomRegistry):
    websocket = DummyWebSocket()
    connection = await registry.attach(websocket)
    return connection, websocket


@pytest.mark.anyio
async def test_create_room_rejects_existing_identifier() -> None:
    registry = RoomRegistry()
    host, _ = await _connect(registry)
    other, _ = await _connect(registry)

    ack = await registry.create_room(host.connection_id, "r1", "h1")
    assert ack.to_dict() == {"type": "room-created", "roomId": "r1", "userId": "h1"}

    with pytest.raises(RoomExistsError) as excinfo:
        await registry.create_room(other.connection_id, "r1", "h2")
    assert excinfo.value.message == "Room already exists"

    snapshot = await registry.snapshot()
    assert snapshot["room_count"] == 1
    assert snapshot["rooms"][0]["host"] == "h1"
    assert other.membership is None


@pytest.mark.anyio
async def test_join_unknown_room_is_rejected() -> None:
    registry = RoomRegistry()
    viewer, _ = await _connect(registry)

    with pytest.raises(RoomNotFoundError) as excinfo:
        await registry.join_room(viewer.connection_id, "missing", "v1")

    assert excinfo.value.message == "Room not found"
    assert viewer.membership is None


@pytest.mark.anyio
async def test_join_notifies_host_and_rejoin_does_not_duplicate() -> None:
    registry = RoomRegistry()
    host, host_ws = await _connect(registry)
    first, _ = await _connect(registry)
    second, _ = await _connect(registry)
    await registry.create_room(host.connection_id, "r1", "h1")

    ack = await registry.join_room(first.connection_id, "r1", "v1")
    assert ack.type is MessageType.ROOM_JOINED
    assert host_ws.of_type("viewer-joined") == [{"type": "viewer-joined", "roomId": "r1", "userId": "v1"}]

    # Same user id from a new socket replaces the old one.
    await registry.join_room(second.connection_id, "r1", "v1")
    snapshot = await registry.snapshot()
    assert snapshot["rooms"][0]["viewers"] == ["v1"]
    assert first.membership is None
    assert second.membership is not None

    # The stale socket going away must not evict the live viewer.
    await registry.disconnect(first.connection_id)
    assert host_ws.of_type("viewer-left") == []
    assert (await registry.snapshot())["rooms"][0]["viewer_count"] == 1


@pytest.mark.anyio
async def test_host_disconnect_closes_room_and_notifies_each_viewer_once() -> None:
    registry = RoomRegistry()
    host, _ = await _connect(registry)
    viewer_a, ws_a = await _connect(registry)
    viewer_b, ws_b = await _connect(registry)
    viewer_c, ws_c = await _connect(registry)
    await registry.create_room(host.connection_id, "r1", "h1")
    for connection, user_id in ((viewer_a, "v1"), (viewer_b, "v2"), (viewer_c, "v3")):
        await registry.join_room(connection.connection_id, "r1", user_id)
    ws_c.drop()

    assert await registry.disconnect(host.connection_id) is True
    assert await registry.disconnect(host.connection_id) is False

    assert ws_a.of_type("host-left") == [{"type": "host-left", "roomId": "r1"}]
    assert ws_b.of_type("host-left") == [{"type": "host-left", "roomId": "r1"}]
    assert ws_c.sent == []
    assert await registry.has_room("r1") is False
    assert viewer_a.membership is None

    with pytest.raises(RoomNotFoundError):
        await registry.join_room(viewer_a.connection_id, "r1", "v1")

    new_host, _ = await _connect(registry)
    await registry.create_room(new_host.connection_id, "r1", "h2")
    assert await registry.room_count() == 1


@pytest.mark.anyio
async def test_last_viewer_leaving_keeps_room_open() -> None:
    registry = RoomRegistry()
    host, host_ws = await _connect(registry)
    viewer, _ = await _connect(registry)
    await registry.create_room(host.connection_id, "r1", "h1")
    await registry.join_room(viewer.connection_id, "r1", "v1")

    assert await registry.leave(viewer.connection_id, "other-room") is False
    assert await registry.leave(viewer.connection_id, "r1") is True

    assert host_ws.of_type("viewer-left") == [{"type": "viewer-left", "roomId": "r1", "userId": "v1"}]
    snapshot = await registry.snapshot()
    assert snapshot["rooms"][0]["viewers"] == []
    assert await registry.has_room("r1") is True


@pytest.mark.anyio
async def test_membership_is_exclusive() -> None:
    registry = RoomRegistry()
    host_one, ws_one = await _connect(registry)
    roaming, _ = await _connect(registry)
    await registry.create_room(host_one.connection_id, "r1", "h1")
    await registry.join_room(roaming.connection_id, "r1", "v1")

    await registry.create_room(roaming.connection_id, "r2", "v1")

    assert ws_one.of_type("viewer-left") == [{"type": "viewer-left", "roomId": "r1", "userId": "v1"}]
    snapshot = await registry.snapshot()
    rooms = {room["room_id"]: room for room in snapshot["rooms"]}
    assert rooms["r1"]["viewers"] == []
    assert rooms["r2"]["host"] == "v1"


@pytest.mark.anyio
async def test_route_signal_requires_membership_and_known_target() -> None:
    registry = RoomRegistry()
    host, _ = await _connect(registry)
    viewer, viewer_ws = await _connect(registry)
    outsider, _ = await _connect(registry)
    await registry.create_room(host.connection_id, "r1", "h1")
    await registry.join_room(viewer.connection_id, "r1", "v1")

    offer = SignalingMessage(type=MessageType.OFFER, room_id="r1", target_id="v1", data={"sdp": "x"})
    assert await registry.route_signal(host.connection_id, offer) is True
    assert viewer_ws.of_type("offer")[0]["fromId"] == "h1"

    stray = SignalingMessage(type=MessageType.OFFER, room_id="r1", target_id="ghost", data={"sdp": "x"})
    assert await registry.route_signal(host.connection_id, stray) is False

    with pytest.raises(NotInRoomError):
        await registry.route_signal(outsider.connection_id, offer)
