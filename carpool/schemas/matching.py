"""Pydantic schemas for the REST matching/connection endpoints."""
from datetime import datetime

from pydantic import BaseModel, Field


class Coords(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class ActiveSearchResponse(BaseModel):
    """The caller's live search."""
    id: str
    owner_id: int
    pickup: str
    drop: str
    pickup_coords: Coords
    drop_coords: Coords
    kind: str
    created_at: datetime
    expires_at: datetime
    has_pending_match: bool = False


class StopSearchResponse(BaseModel):
    message: str = "Search stopped successfully"
    removed: bool


class MatchingStatsResponse(BaseModel):
    total_active_searches: int
    offer_searches: int
    request_searches: int
    pending_matches: int
    user_has_active_search: bool


class SearchSpec(BaseModel):
    pickup: str = ""
    drop: str = ""
    pickup_coords: Coords
    drop_coords: Coords
    kind: str


class TestMatchRequest(BaseModel):
    """Two ad-hoc searches to compare (debugging aid; nothing is stored)."""
    first: SearchSpec
    second: SearchSpec


class TestMatchResponse(BaseModel):
    route_first: str
    route_second: str
    pickup_distance_m: int
    drop_distance_m: int
    opposite_kinds: bool
    within_radii: bool
    would_match: bool


class ConnectionResponse(BaseModel):
    chat_room_id: str
    partner_id: int
    match_id: str | None = None
    route: str | None = None
    established_at: datetime


class ChatMessageResponse(BaseModel):
    chat_room_id: str
    type: str
    sender_id: int | None = None
    message: str
    timestamp: datetime
