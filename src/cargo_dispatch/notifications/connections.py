"""Per-user WebSocket connection registry and the notifier that pushes through it."""

import asyncio
import concurrent.futures
import logging
from typing import Any

from fastapi import WebSocket
from fastapi.websockets import WebSocketState

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """Live WebSocket connections keyed by user id.

    Connections are added on connect and removed on disconnect; all methods
    run on the event loop thread.
    """

    def __init__(self) -> None:
        self._connections: dict[str, set[WebSocket]] = {}

    async def connect(
        self, user_id: str, websocket: WebSocket, subprotocol: str | None = None
    ) -> None:
        await websocket.accept(subprotocol=subprotocol)
        self._connections.setdefault(user_id, set()).add(websocket)

    def disconnect(self, user_id: str, websocket: WebSocket) -> None:
        sockets = self._connections.get(user_id)
        if sockets is None:
            return
        sockets.discard(websocket)
        if not sockets:
            del self._connections[user_id]

    def is_connected(self, user_id: str) -> bool:
        return bool(self._connections.get(user_id))

    @property
    def connection_count(self) -> int:
        return sum(len(sockets) for sockets in self._connections.values())

    async def send_to_user(self, user_id: str, message: dict[str, Any]) -> int:
        """Send to every socket of ``user_id``; a socket that fails is dropped."""
        delivered = 0
        for websocket in list(self._connections.get(user_id, ())):
            if websocket.application_state != WebSocketState.CONNECTED:
                self.disconnect(user_id, websocket)
                continue
            try:
                await websocket.send_json(message)
            except Exception as e:
                logger.warning(f"Dropping WebSocket of {user_id} after failed send: {e}")
                self.disconnect(user_id, websocket)
                continue
            delivered += 1
        return delivered


class WebSocketNotifier:
    """Pushes notifications to connected users from any thread."""

    def __init__(self, registry: ConnectionRegistry) -> None:
        self._registry = registry
        self._loop: asyncio.AbstractEventLoop | None = None

    def set_event_loop(self, loop: asyncio.AbstractEventLoop | None) -> None:
        self._loop = loop

    def notify(self, user_id: str, event_type: str, payload: dict[str, Any]) -> None:
        if self._loop is None or self._loop.is_closed():
            logger.debug(f"No event loop bound, dropping {event_type} for {user_id}")
            return
        message = {"type": event_type, "data": payload}
        future = asyncio.run_coroutine_threadsafe(
            self._registry.send_to_user(user_id, message), self._loop
        )
        future.add_done_callback(
            lambda done: self._log_failure(done, user_id=user_id, event_type=event_type)
        )

    @staticmethod
    def _log_failure(
        future: concurrent.futures.Future[int], user_id: str, event_type: str
    ) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error(f"Failed to push {event_type} to {user_id}: {error}")
