"""Connection model: a confirmed pairing of two users with its chat room."""
from datetime import datetime

from sqlalchemy import DateTime, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from carpool.models.base import Base


class Connection(Base):
    __tablename__ = "connections"
    # chat_room_id is derived from the two user ids (order-independent), so it is the natural key.
    chat_room_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    # No FK to users: accounts live in the accounts service and may have no local profile row.
    user_a_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    user_b_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    match_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    route_a: Mapped[str | None] = mapped_column(String(512), nullable=True)
    route_b: Mapped[str | None] = mapped_column(String(512), nullable=True)
    established_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
