"""Chat between connected users: messages (persisted, ordered by arrival) and typing relay (ephemeral)."""
import logging
from typing import Any

from carpool.errors import EmptyMessage, NotPartOfConnection
from carpool.schemas.events import UserTyping
from carpool.services.connection_store import USER_KIND, ChatMessage, Connection, ConnectionStore
from carpool.services.establishment import chat_message_event, load_profile
from carpool.services.gateway import Gateway
from carpool.services.user_directory import UserDirectory

logger = logging.getLogger(__name__)


class ChatService:
    def __init__(self, connections: ConnectionStore, users: UserDirectory, gateway: Gateway) -> None:
        self.connections = connections
        self.users = users
        self.gateway = gateway

    async def _membership(self, chat_room_id: str, user_id: int) -> Connection:
        connection = await self.connections.get_connection(chat_room_id)
        if connection is None or not connection.has_member(user_id):
            raise NotPartOfConnection()
        return connection

    async def join_room(self, chat_room_id: str, user_id: int, websocket: Any) -> Connection:
        """Re-join a room after reconnecting."""
        connection = await self._membership(chat_room_id, user_id)
        self.gateway.join_room(chat_room_id, websocket)
        logger.info("chat_joined room=%s user=%s", chat_room_id, user_id)
        return connection

    async def send_message(self, chat_room_id: str, user_id: int, body: str | None) -> ChatMessage:
        text = (body or "").strip()
        if not text:
            raise EmptyMessage()
        await self._membership(chat_room_id, user_id)
        message = ChatMessage(chat_room_id=chat_room_id, sender_id=user_id, body=text, kind=USER_KIND)
        try:
            await self.connections.append_message(message)
        except Exception:
            # Live delivery still goes out; history just misses this line
            logger.exception("chat_persist_failed room=%s user=%s", chat_room_id, user_id)
        sender = await load_profile(self.users, user_id)
        await self.gateway.broadcast(chat_room_id, "chat_message", chat_message_event(message, sender.name))
        return message

    async def typing(self, chat_room_id: str, user_id: int, typing: bool, websocket: Any = None) -> None:
        """Relay to everyone else in the room. Not persisted."""
        await self._membership(chat_room_id, user_id)
        payload = UserTyping(chat_room_id=chat_room_id, user_id=user_id, typing=typing).dump()
        await self.gateway.broadcast(chat_room_id, "user_typing", payload, exclude=websocket)

    async def history(self, chat_room_id: str, user_id: int, limit: int = 100) -> list[ChatMessage]:
        await self._membership(chat_room_id, user_id)
        return await self.connections.list_messages(chat_room_id, limit=limit)
