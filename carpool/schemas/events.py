"""Pydantic schemas for WebSocket events. Wire keys are camelCase (matchId, chatRoomId, ...)."""
from datetime import datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class EventModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def dump(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


# ---- inbound ----

class StartSearchIn(EventModel):
    pickup: str = Field(default="", max_length=512)
    drop: str = Field(default="", max_length=512)
    # Left untyped: shape, type and range are all checked by coerce_point (InvalidCoordinates)
    pickup_coords: Any = None
    drop_coords: Any = None
    kind: str = Field(validation_alias=AliasChoices("kind", "type"))


class MatchDecisionIn(EventModel):
    match_id: str = Field(min_length=1, max_length=128)


class ChatRoomIn(EventModel):
    chat_room_id: str = Field(min_length=1, max_length=64)


class SendChatMessageIn(ChatRoomIn):
    body: str = Field(default="", max_length=2000, validation_alias=AliasChoices("body", "message"))


# ---- outbound ----

class SearchEcho(EventModel):
    id: str
    pickup: str
    drop: str
    pickup_coords: dict[str, float]
    drop_coords: dict[str, float]
    kind: str
    created_at: datetime
    expires_at: datetime


class SearchStarted(EventModel):
    message: str = "Searching for matches..."
    search_id: str
    search_type: str
    route: str
    search: SearchEcho


class RouteSide(EventModel):
    pickup: str
    drop: str
    kind: str


class PartnerSummary(RouteSide):
    id: int
    name: str


class InstantMatchFound(EventModel):
    match_id: str
    partner: PartnerSummary
    your_search: RouteSide
    distance: int
    expires_in_seconds: float


class ApprovalSent(EventModel):
    message: str = "Waiting for partner approval..."
    match_id: str
    partner_id: int


class PartnerApproved(EventModel):
    message: str = "Your partner approved the match! Approve to start chatting."
    match_id: str
    partner_id: int


class MatchCancelled(EventModel):
    message: str
    reason: str
    match_id: str


class RouteSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_: str = Field(alias="from")
    to: str


class ConnectionEstablished(EventModel):
    chat_room_id: str
    match_id: str | None = None
    partner: dict[str, Any]
    route: RouteSummary


class ChatMessageOut(EventModel):
    chat_room_id: str
    type: str
    sender_id: int | None = None
    sender_name: str | None = None
    message: str
    timestamp: datetime


class UserTyping(EventModel):
    chat_room_id: str
    user_id: int
    typing: bool


class ErrorOut(EventModel):
    message: str
