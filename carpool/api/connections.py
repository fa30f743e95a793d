"""Connection routes: list your connections and re-fetch a chat room's history after reconnecting."""
from fastapi import APIRouter, Depends, HTTPException, Query, status

from carpool.deps import get_current_user_id, services_dep
from carpool.errors import NotPartOfConnection
from carpool.schemas.matching import ChatMessageResponse, ConnectionResponse
from carpool.services.container import Services

router = APIRouter(prefix="/connections", tags=["connections"])


@router.get("", response_model=list[ConnectionResponse])
async def list_my_connections(
    user_id: int = Depends(get_current_user_id),
    services: Services = Depends(services_dep),
):
    connections = await services.connections.list_connections(user_id)
    return [
        ConnectionResponse(
            chat_room_id=c.chat_room_id,
            partner_id=c.partner_of(user_id),
            match_id=c.match_id,
            route=c.route_a if user_id == c.user_a else c.route_b,
            established_at=c.established_at,
        )
        for c in connections
    ]


@router.get("/{chat_room_id}/messages", response_model=list[ChatMessageResponse])
async def get_messages(
    chat_room_id: str,
    limit: int = Query(default=100, ge=1, le=500),
    user_id: int = Depends(get_current_user_id),
    services: Services = Depends(services_dep),
):
    """Chat history, oldest first. 404 if the room doesn't exist, 403 if you are not in it."""
    connection = await services.connections.get_connection(chat_room_id)
    if connection is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Chat room not found")
    try:
        messages = await services.chat.history(chat_room_id, user_id, limit=limit)
    except NotPartOfConnection as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=e.message)
    return [
        ChatMessageResponse(
            chat_room_id=m.chat_room_id,
            type=m.kind,
            sender_id=m.sender_id,
            message=m.body,
            timestamp=m.timestamp,
        )
        for m in messages
    ]
