from __future__ import annotations

import asyncio
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, WebSocket

from shared.protocol import (
    CONNECTED_GREETING,
    SERVICE_NAME,
    SERVICE_VERSION,
    MessageType,
    SignalingMessage,
)

from .relay_router import RelayRouter
from .room_registry import RoomRegistry

logger = logging.getLogger(__name__)


class _RecentLogHandler(logging.Handler):
    """Keeps the last few log messages for ``GET /rooms``."""

    def __init__(self, limit: int = 40) -> None:
        super().__init__(level=logging.INFO)
        self.records: deque[dict[str, object]] = deque(maxlen=limit)

    def emit(self, record: logging.LogRecord) -> None:  # pragma: no cover - logging side effect
        self.records.append({"level": record.levelname.lower(), "message": record.getMessage()})


_log_tail = _RecentLogHandler()


def _install_log_tail() -> None:
    root_logger = logging.getLogger()
    if _log_tail not in root_logger.handlers:
        root_logger.addHandler(_log_tail)


class SignalingApp:
    """FastAPI application exposing the relay socket and its health surface."""

    def __init__(self, registry: Optional[RoomRegistry] = None) -> None:
        self._registry = registry or RoomRegistry()
        self._router = RelayRouter(self._registry)
        self._app = FastAPI(title=SERVICE_NAME, version=SERVICE_VERSION)
        _install_log_tail()

        @self._app.get("/")
        async def index() -> dict:
            return {"message": SERVICE_NAME, "version": SERVICE_VERSION, "status": "running"}

        @self._app.get("/health")
        async def health() -> dict:
            return {
                "status": "ok",
                "rooms": await self._registry.room_count(),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }

        @self._app.get("/rooms")
        async def rooms() -> dict:
            snapshot = await self._registry.snapshot()
            snapshot["log_tail"] = list(_log_tail.records)
            return snapshot

        self._app.add_api_websocket_route("/ws", self.handle_socket)
        self._app.add_api_websocket_route("/", self.handle_socket)

    @property
    def app(self) -> FastAPI:
        return self._app

    @property
    def registry(self) -> RoomRegistry:
        return self._registry

    async def handle_socket(self, websocket: WebSocket) -> None:
        await websocket.accept()
        connection = await self._registry.attach(websocket)
        logger.info("New WebSocket connection %s from %s", connection.connection_id, websocket.client)
        try:
            await connection.send(SignalingMessage(type=MessageType.CONNECTED, message=CONNECTED_GREETING))
            while True:
                frame = await websocket.receive()
                if frame["type"] == "websocket.disconnect":
                    logger.info("WebSocket connection %s closed", connection.connection_id)
                    break
                # Binary frames go through the same decoder as text frames.
                raw = frame.get("text")
                if raw is None:
                    raw = frame.get("bytes") or b""
                await self._router.handle_text(connection, raw)
        except Exception:
            logger.exception("Error while handling connection %s", connection.connection_id)
        finally:
            await self._registry.disconnect(connection.connection_id)


class SignalingServer:
    """Background task helper for running the relay under uvicorn."""

    def __init__(self, host: str, port: int, *, registry: Optional[RoomRegistry] = None) -> None:
        self._signaling = SignalingApp(registry)
        self._host = host
        self._port = port
        self._server: Optional[object] = None
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def app(self) -> FastAPI:
        return self._signaling.app

    async def start(self) -> None:
        import uvicorn

        if self._server is not None:
            return
        config = uvicorn.Config(self._signaling.app, host=self._host, port=self._port, log_level="info")
        self._server = uvicorn.Server(config)
        self._task = asyncio.create_task(self._server.serve())
        logger.info("Signaling server running on %s:%s", self._host, self._port)
        logger.info("Health check available at http://%s:%s/health", self._host, self._port)

    async def wait(self) -> None:
        if self._task is not None:
            await self._task

    async def stop(self) -> None:
        if self._server is None:
            return
        assert self._task is not None
        self._server.should_exit = True
        await self._task
        self._server = None
        self._task = None
