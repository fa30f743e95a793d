"""Promote a fully approved pending match into a Connection with its chat room."""
import logging

from carpool.schemas.events import ChatMessageOut, ConnectionEstablished, RouteSummary
from carpool.services.connection_store import (
    SYSTEM_KIND,
    ChatMessage,
    Connection,
    ConnectionStore,
    chat_room_id_for,
)
from carpool.services.gateway import Gateway
from carpool.services.pending_match import MatchStatus, PendingMatch
from carpool.services.search_registry import SearchRegistry
from carpool.services.user_directory import UserDirectory, UserProfile

logger = logging.getLogger(__name__)

WELCOME_MESSAGE = "Connection established! You can now chat and coordinate your ride."


def chat_message_event(message: ChatMessage, sender_name: str | None = None) -> dict:
    return ChatMessageOut(
        chat_room_id=message.chat_room_id,
        type=message.kind,
        sender_id=message.sender_id,
        sender_name=sender_name,
        message=message.body,
        timestamp=message.timestamp,
    ).dump()


async def load_profile(users: UserDirectory, user_id: int) -> UserProfile:
    """Profile lookup that never fails the caller; falls back to a placeholder."""
    try:
        return await users.get_profile(user_id)
    except Exception:
        logger.exception("profile_lookup_failed user=%s", user_id)
        return UserProfile(id=user_id)


class ConnectionEstablisher:
    def __init__(
        self,
        registry: SearchRegistry,
        connections: ConnectionStore,
        users: UserDirectory,
        gateway: Gateway,
    ) -> None:
        self.registry = registry
        self.connections = connections
        self.users = users
        self.gateway = gateway

    def claim(self, match: PendingMatch) -> Connection | None:
        """Flip pending -> connected if both approvals are in. Synchronous so check and flip cannot interleave.

        Returns None when the match was already claimed (or is not fully approved).
        """
        if match.status is not MatchStatus.PENDING_APPROVAL or not match.fully_approved:
            return None
        match.status = MatchStatus.CONNECTED
        return Connection(
            chat_room_id=chat_room_id_for(match.user_a, match.user_b),
            user_a=match.user_a,
            user_b=match.user_b,
            match_id=match.match_id,
            route_a=match.search_a.route,
            route_b=match.search_b.route,
        )

    async def release_searches(self, match: PendingMatch) -> None:
        """Both parties stop being matchable. A store failure is logged; the TTL still removes the record."""
        for user_id in (match.user_a, match.user_b):
            try:
                await self.registry.remove_search(user_id)
            except Exception:
                logger.exception("search_release_failed user=%s match=%s", user_id, match.match_id)

    async def announce(self, connection: Connection, match: PendingMatch) -> Connection:
        """Persist the connection, move both users into the chat room, notify them, post the welcome."""
        try:
            connection = await self.connections.create_connection(connection)
        except Exception:
            logger.exception("connection_persist_failed room=%s", connection.chat_room_id)

        room = connection.chat_room_id
        self.gateway.join_user_to_room(match.user_a, room)
        self.gateway.join_user_to_room(match.user_b, room)

        profile_a = await load_profile(self.users, match.user_a)
        profile_b = await load_profile(self.users, match.user_b)
        for user_id, search, partner in (
            (match.user_a, match.search_a, profile_b),
            (match.user_b, match.search_b, profile_a),
        ):
            payload = ConnectionEstablished(
                chat_room_id=room,
                match_id=match.match_id,
                partner=partner.contact(),
                route=RouteSummary(from_=search.pickup, to=search.drop),
            ).dump()
            try:
                await self.gateway.send_to_user(user_id, "connection_established", payload)
            except Exception:
                logger.exception("notify_failed user=%s event=connection_established", user_id)

        welcome = ChatMessage(chat_room_id=room, sender_id=None, body=WELCOME_MESSAGE, kind=SYSTEM_KIND)
        try:
            await self.connections.append_message(welcome)
        except Exception:
            logger.exception("welcome_persist_failed room=%s", room)
        try:
            await self.gateway.broadcast(room, "chat_message", chat_message_event(welcome))
        except Exception:
            logger.exception("notify_failed room=%s event=chat_message", room)
        logger.info("connection_established room=%s users=%s,%s", room, match.user_a, match.user_b)
        return connection

    async def establish(self, match: PendingMatch) -> Connection | None:
        """claim + release + announce. Calling it twice for the same match yields one Connection."""
        connection = self.claim(match)
        if connection is None:
            return None
        await self.release_searches(match)
        return await self.announce(connection, match)
