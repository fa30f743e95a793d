from carpool.models.base import Base
from carpool.models.chat_message import ChatMessage
from carpool.models.connection import Connection
from carpool.models.user import User

__all__ = ["Base", "User", "Connection", "ChatMessage"]
