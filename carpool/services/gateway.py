"""Live event delivery over WebSockets: personal channel per user, broadcast channel per chat room.

Best-effort, at-most-once: nothing is buffered for offline users. A socket that fails or times out a
send is dropped from every channel it was in and closed, so its receive loop ends and the normal
disconnect cleanup runs.
"""
import asyncio
import json
import logging
from typing import Any, Iterable

from fastapi.encoders import jsonable_encoder

from carpool.config import settings

logger = logging.getLogger(__name__)

# Close code for a socket dropped after a failed or timed-out send
CLOSE_SEND_FAILED = 1008


def encode_event(event: str, data: Any) -> str:
    return json.dumps({"event": event, "data": jsonable_encoder(data)})


class Gateway:
    """Maps user_id -> sockets and chat_room_id -> sockets. A socket is anything with async send_text."""

    def __init__(self, send_timeout: float | None = None) -> None:
        self.send_timeout = settings.SEND_TIMEOUT_SECONDS if send_timeout is None else send_timeout
        self._connections: dict[int, set[Any]] = {}
        self._rooms: dict[str, set[Any]] = {}
        self._socket_rooms: dict[Any, set[str]] = {}

    def connect(self, user_id: int, websocket: Any) -> None:
        self._connections.setdefault(user_id, set()).add(websocket)

    def disconnect(self, user_id: int, websocket: Any) -> bool:
        """Leave personal and room channels. Returns True when the user has no sockets left."""
        for room_id in list(self._socket_rooms.get(websocket, ())):
            self.leave_room(room_id, websocket)
        self._socket_rooms.pop(websocket, None)
        if user_id in self._connections:
            self._connections[user_id].discard(websocket)
            if not self._connections[user_id]:
                del self._connections[user_id]
        return user_id not in self._connections

    def is_online(self, user_id: int) -> bool:
        return bool(self._connections.get(user_id))

    def join_room(self, room_id: str, websocket: Any) -> None:
        self._rooms.setdefault(room_id, set()).add(websocket)
        self._socket_rooms.setdefault(websocket, set()).add(room_id)

    def leave_room(self, room_id: str, websocket: Any) -> None:
        members = self._rooms.get(room_id)
        if members is not None:
            members.discard(websocket)
            if not members:
                del self._rooms[room_id]
        rooms = self._socket_rooms.get(websocket)
        if rooms is not None:
            rooms.discard(room_id)

    def join_user_to_room(self, user_id: int, room_id: str) -> None:
        for ws in list(self._connections.get(user_id, ())):
            self.join_room(room_id, ws)

    def room_members(self, room_id: str) -> set[Any]:
        return set(self._rooms.get(room_id, ()))

    def _drop(self, websocket: Any) -> None:
        for room_id in list(self._socket_rooms.get(websocket, ())):
            self.leave_room(room_id, websocket)
        self._socket_rooms.pop(websocket, None)
        for user_id in [u for u, socks in self._connections.items() if websocket in socks]:
            self._connections[user_id].discard(websocket)
            if not self._connections[user_id]:
                del self._connections[user_id]

    async def _close(self, websocket: Any) -> None:
        try:
            await asyncio.wait_for(websocket.close(code=CLOSE_SEND_FAILED), timeout=self.send_timeout)
        except Exception as e:
            logger.debug("close_failed error=%r", e)

    async def _deliver(self, sockets: Iterable[Any], text: str) -> int:
        sockets = list(sockets)
        if not sockets:
            return 0
        results = await asyncio.gather(
            *[asyncio.wait_for(ws.send_text(text), timeout=self.send_timeout) for ws in sockets],
            return_exceptions=True,
        )
        delivered = 0
        for ws, result in zip(sockets, results):
            if isinstance(result, BaseException):
                logger.warning("send_failed error=%r", result)
                self._drop(ws)
                await self._close(ws)
            else:
                delivered += 1
        return delivered

    async def send(self, websocket: Any, event: str, data: Any) -> bool:
        """Reply on one socket (the one an event arrived on)."""
        return await self._deliver([websocket], encode_event(event, data)) == 1

    async def send_to_user(self, user_id: int, event: str, data: Any) -> int:
        if not self.is_online(user_id):
            logger.debug("send_skip offline user=%s event=%s", user_id, event)
            return 0
        return await self._deliver(self._connections[user_id], encode_event(event, data))

    async def send_to_users(self, user_ids: list[int], event: str, data: Any) -> None:
        await asyncio.gather(*[self.send_to_user(uid, event, data) for uid in user_ids])

    async def broadcast(self, room_id: str, event: str, data: Any, exclude: Any = None) -> int:
        sockets = [ws for ws in self.room_members(room_id) if ws is not exclude]
        return await self._deliver(sockets, encode_event(event, data))
