"""
Real-time notification channel.

Connected admin panels / storefronts hold a WebSocket open on
/ws/notifications and receive ``{"event": name, "data": {...}}`` messages.
Emission is fire-and-forget: sends are scheduled on the event loop and a
failure anywhere in the path is logged and dropped.
"""
import asyncio
import logging
import threading
from typing import Any, Dict, Optional, Protocol, Set

from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder

logger = logging.getLogger(__name__)

NEW_ORDER = "newOrder"
NEW_REVIEW = "newReview"
REVIEW_UPDATED = "reviewUpdated"
REVIEW_DELETED = "reviewDeleted"
REVIEW_HELPFUL_UPDATED = "reviewHelpfulUpdated"
SETTINGS_UPDATED = "settingsUpdated"


class Notifier(Protocol):
    def emit(self, event: str, data: Dict[str, Any]) -> None:
        ...


class Broadcaster:
    def __init__(self):
        self._connections: Set[WebSocket] = set()
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def connection_count(self) -> int:
        with self._lock:
            return len(self._connections)

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self._loop = asyncio.get_running_loop()
        with self._lock:
            self._connections.add(websocket)
        logger.info("Notification client connected (%d open)", self.connection_count)

    def disconnect(self, websocket: WebSocket) -> None:
        with self._lock:
            self._connections.discard(websocket)
        logger.info("Notification client disconnected (%d open)", self.connection_count)

    def emit(self, event: str, data: Dict[str, Any]) -> None:
        try:
            with self._lock:
                targets = list(self._connections)
            if not targets or self._loop is None or self._loop.is_closed():
                logger.debug("No listeners for %s", event)
                return
            message = {"event": event, "data": jsonable_encoder(data)}
            for websocket in targets:
                asyncio.run_coroutine_threadsafe(self._send(websocket, message), self._loop)
            logger.info("Emitted %s to %d listener(s)", event, len(targets))
        except Exception:
            logger.exception("Failed to emit %s notification", event)

    async def _send(self, websocket: WebSocket, message: dict) -> None:
        try:
            await websocket.send_json(message)
        except Exception:
            logger.warning("Dropping notification client after failed send")
            self.disconnect(websocket)


broadcaster = Broadcaster()


def get_notifier() -> Notifier:
    return broadcaster
