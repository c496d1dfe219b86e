"""
Realtime fan-out over WebSockets.

Sockets are addressed two ways:

* chat rooms, joined explicitly with a ``join-chat`` event, receive
  ``receive-message`` with the full message;
* user channels, registered on connect for the authenticated user, receive
  ``chat-update-<userId>`` with a ``{chatId, lastMessage, updatedAt}`` summary.

Delivery is best-effort: nothing is queued for disconnected clients and send
failures only drop the broken socket.
"""

import asyncio
import logging
from typing import Iterable, Optional, Protocol

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def publish_message(
        self,
        chat_id: str,
        participant_ids: Iterable[str],
        message: dict,
        chat_update: dict,
    ) -> None:
        ...


def event(event_type: str, data) -> dict:
    return {"type": event_type, "data": data}


class ConnectionManager:
    def __init__(self):
        self.active_connections: dict[str, set[WebSocket]] = {}
        self.chat_rooms: dict[str, set[WebSocket]] = {}
        self.loop: Optional[asyncio.AbstractEventLoop] = None

    async def connect(self, user_id: str, websocket: WebSocket):
        await websocket.accept()
        self.loop = asyncio.get_running_loop()
        self.active_connections.setdefault(user_id, set()).add(websocket)
        logger.info("WebSocket connected for user %s", user_id)

    def disconnect(self, user_id: str, websocket: WebSocket):
        conns = self.active_connections.get(user_id)
        if conns is not None:
            conns.discard(websocket)
            if not conns:
                del self.active_connections[user_id]
        for chat_id in list(self.chat_rooms):
            self.unregister_chat(chat_id, websocket)
        logger.info("WebSocket disconnected for user %s", user_id)

    def register_chat(self, chat_id: str, websocket: WebSocket):
        self.chat_rooms.setdefault(chat_id, set()).add(websocket)
        logger.debug("Socket joined chat %s", chat_id)

    def unregister_chat(self, chat_id: str, websocket: WebSocket):
        room = self.chat_rooms.get(chat_id)
        if room is None:
            return
        room.discard(websocket)
        if not room:
            del self.chat_rooms[chat_id]

    def is_connected(self, user_id: str) -> bool:
        return bool(self.active_connections.get(user_id))

    async def _send(self, websocket: WebSocket, message: dict) -> bool:
        try:
            await websocket.send_json(message)
            return True
        except Exception:
            logger.warning("Dropping socket after failed send", exc_info=True)
            for user_id, conns in list(self.active_connections.items()):
                if websocket in conns:
                    self.disconnect(user_id, websocket)
            return False

    async def send_personal(self, user_id: str, message: dict):
        for ws in list(self.active_connections.get(user_id, ())):
            await self._send(ws, message)

    async def notify_chat(self, chat_id: str, message: dict, exclude: Optional[WebSocket] = None):
        for ws in list(self.chat_rooms.get(chat_id, ())):
            if ws is not exclude:
                await self._send(ws, message)

    async def fan_out(self, chat_id: str, participant_ids: Iterable[str], message: dict, chat_update: dict):
        await self.notify_chat(chat_id, event("receive-message", message))
        for user_id in participant_ids:
            await self.send_personal(user_id, event(f"chat-update-{user_id}", chat_update))

    def publish_message(self, chat_id: str, participant_ids: Iterable[str], message: dict, chat_update: dict) -> None:
        """Schedule fan-out on the socket event loop without waiting for it."""
        loop = self.loop
        if loop is None or loop.is_closed():
            logger.debug("No realtime subscribers, skipping fan-out for chat %s", chat_id)
            return
        future = asyncio.run_coroutine_threadsafe(
            self.fan_out(chat_id, list(participant_ids), message, chat_update), loop
        )
        future.add_done_callback(_log_fan_out_failure)


def _log_fan_out_failure(future):
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.error("Realtime fan-out failed", exc_info=exc)
