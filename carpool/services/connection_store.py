"""Durable connections and their chat history (SQL), with an in-process twin for dev/tests."""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError

from carpool.models.chat_message import ChatMessage as ChatMessageRow
from carpool.models.connection import Connection as ConnectionRow

logger = logging.getLogger(__name__)

SYSTEM_KIND = "system"
USER_KIND = "user"


def chat_room_id_for(user_a: int, user_b: int) -> str:
    """Deterministic, order-independent room id for a pair of users."""
    lo, hi = sorted((int(user_a), int(user_b)))
    return f"chat_{lo}_{hi}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Connection:
    chat_room_id: str
    user_a: int
    user_b: int
    established_at: datetime = field(default_factory=_utcnow)
    match_id: str | None = None
    route_a: str | None = None
    route_b: str | None = None

    def has_member(self, user_id: int) -> bool:
        return int(user_id) in (self.user_a, self.user_b)

    def partner_of(self, user_id: int) -> int:
        return self.user_b if int(user_id) == self.user_a else self.user_a


@dataclass(frozen=True)
class ChatMessage:
    chat_room_id: str
    sender_id: int | None
    body: str
    timestamp: datetime = field(default_factory=_utcnow)
    kind: str = USER_KIND


class ConnectionStore(Protocol):
    async def create_connection(self, connection: Connection) -> Connection: ...

    async def get_connection(self, chat_room_id: str) -> Connection | None: ...

    async def list_connections(self, user_id: int) -> list[Connection]: ...

    async def append_message(self, message: ChatMessage) -> ChatMessage: ...

    async def list_messages(self, chat_room_id: str, limit: int = 100) -> list[ChatMessage]: ...


class MemoryConnectionStore:
    def __init__(self) -> None:
        self._connections: dict[str, Connection] = {}
        self._messages: dict[str, list[ChatMessage]] = {}

    async def create_connection(self, connection: Connection) -> Connection:
        existing = self._connections.get(connection.chat_room_id)
        if existing is not None:
            return existing
        self._connections[connection.chat_room_id] = connection
        return connection

    async def get_connection(self, chat_room_id: str) -> Connection | None:
        return self._connections.get(chat_room_id)

    async def list_connections(self, user_id: int) -> list[Connection]:
        mine = [c for c in self._connections.values() if c.has_member(user_id)]
        return sorted(mine, key=lambda c: c.established_at, reverse=True)

    async def append_message(self, message: ChatMessage) -> ChatMessage:
        self._messages.setdefault(message.chat_room_id, []).append(message)
        return message

    async def list_messages(self, chat_room_id: str, limit: int = 100) -> list[ChatMessage]:
        return list(self._messages.get(chat_room_id, [])[-limit:])


def _connection_from_row(row: ConnectionRow) -> Connection:
    return Connection(
        chat_room_id=row.chat_room_id,
        user_a=row.user_a_id,
        user_b=row.user_b_id,
        established_at=row.established_at,
        match_id=row.match_id,
        route_a=row.route_a,
        route_b=row.route_b,
    )


def _message_from_row(row: ChatMessageRow) -> ChatMessage:
    return ChatMessage(
        chat_room_id=row.chat_room_id,
        sender_id=row.sender_id,
        body=row.body,
        timestamp=row.created_at,
        kind=row.kind,
    )


class SqlConnectionStore:
    """Connections and chat messages in SQL. `session_factory` is an async_sessionmaker."""

    def __init__(self, session_factory: Any) -> None:
        self.session_factory = session_factory

    async def create_connection(self, connection: Connection) -> Connection:
        async with self.session_factory() as db:
            existing = await db.get(ConnectionRow, connection.chat_room_id)
            if existing is not None:
                return _connection_from_row(existing)
            db.add(
                ConnectionRow(
                    chat_room_id=connection.chat_room_id,
                    user_a_id=connection.user_a,
                    user_b_id=connection.user_b,
                    match_id=connection.match_id,
                    route_a=connection.route_a,
                    route_b=connection.route_b,
                    established_at=connection.established_at,
                )
            )
            try:
                await db.commit()
            except IntegrityError:
                # Another writer inserted the same room first
                await db.rollback()
                existing = await db.get(ConnectionRow, connection.chat_room_id)
                if existing is None:
                    raise
                return _connection_from_row(existing)
        return connection

    async def get_connection(self, chat_room_id: str) -> Connection | None:
        async with self.session_factory() as db:
            row = await db.get(ConnectionRow, chat_room_id)
            return _connection_from_row(row) if row else None

    async def list_connections(self, user_id: int) -> list[Connection]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(ConnectionRow)
                .where(or_(ConnectionRow.user_a_id == user_id, ConnectionRow.user_b_id == user_id))
                .order_by(ConnectionRow.established_at.desc())
            )
            return [_connection_from_row(r) for r in result.scalars().all()]

    async def append_message(self, message: ChatMessage) -> ChatMessage:
        async with self.session_factory() as db:
            db.add(
                ChatMessageRow(
                    chat_room_id=message.chat_room_id,
                    sender_id=message.sender_id,
                    kind=message.kind,
                    body=message.body,
                    created_at=message.timestamp,
                )
            )
            await db.commit()
        return message

    async def list_messages(self, chat_room_id: str, limit: int = 100) -> list[ChatMessage]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(ChatMessageRow)
                .where(ChatMessageRow.chat_room_id == chat_room_id)
                .order_by(ChatMessageRow.id.desc())
                .limit(limit)
            )
            rows = list(result.scalars().all())
        rows.reverse()
        return [_message_from_row(r) for r in rows]
