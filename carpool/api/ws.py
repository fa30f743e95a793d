"""WebSocket: live matching channel. Search, approve/deny, chat and typing events over one socket per tab."""
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from carpool.auth.jwt import user_id_from_token
from carpool.errors import InvalidPayload, MatchingError, NotAuthenticated
from carpool.schemas.events import (
    ChatRoomIn,
    ErrorOut,
    MatchDecisionIn,
    SendChatMessageIn,
    StartSearchIn,
)
from carpool.services.container import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter(tags=["ws"])


@dataclass
class EventContext:
    services: Services
    user_id: int
    websocket: Any


async def _start_search(ctx: EventContext, data: dict[str, Any]) -> None:
    body = StartSearchIn.model_validate(data)
    await ctx.services.coordinator.submit_search(
        ctx.user_id,
        body.pickup_coords,
        body.drop_coords,
        body.kind,
        pickup=body.pickup,
        drop=body.drop,
    )


async def _stop_search(ctx: EventContext, data: dict[str, Any]) -> None:
    await ctx.services.coordinator.release_user(ctx.user_id)
    await ctx.services.gateway.send(ctx.websocket, "search_stopped", {"message": "Search stopped successfully"})


async def _approve_match(ctx: EventContext, data: dict[str, Any]) -> None:
    body = MatchDecisionIn.model_validate(data)
    await ctx.services.coordinator.approve(body.match_id, ctx.user_id)


async def _deny_match(ctx: EventContext, data: dict[str, Any]) -> None:
    body = MatchDecisionIn.model_validate(data)
    await ctx.services.coordinator.deny(body.match_id, ctx.user_id)


async def _send_chat_message(ctx: EventContext, data: dict[str, Any]) -> None:
    body = SendChatMessageIn.model_validate(data)
    await ctx.services.chat.send_message(body.chat_room_id, ctx.user_id, body.body)


async def _join_chat_room(ctx: EventContext, data: dict[str, Any]) -> None:
    body = ChatRoomIn.model_validate(data)
    await ctx.services.chat.join_room(body.chat_room_id, ctx.user_id, ctx.websocket)


async def _typing_start(ctx: EventContext, data: dict[str, Any]) -> None:
    body = ChatRoomIn.model_validate(data)
    await ctx.services.chat.typing(body.chat_room_id, ctx.user_id, True, ctx.websocket)


async def _typing_stop(ctx: EventContext, data: dict[str, Any]) -> None:
    body = ChatRoomIn.model_validate(data)
    await ctx.services.chat.typing(body.chat_room_id, ctx.user_id, False, ctx.websocket)


Handler = Callable[[EventContext, dict[str, Any]], Awaitable[None]]

# event name -> (handler, error event reported back on failure)
HANDLERS: dict[str, tuple[Handler, str]] = {
    "start_search": (_start_search, "search_error"),
    "stop_search": (_stop_search, "search_error"),
    "approve_match": (_approve_match, "match_error"),
    "deny_match": (_deny_match, "match_error"),
    "send_chat_message": (_send_chat_message, "chat_error"),
    "join_chat_room": (_join_chat_room, "chat_error"),
    "typing_start": (_typing_start, "chat_error"),
    "typing_stop": (_typing_stop, "chat_error"),
}


def _validation_message(exc: ValidationError) -> str:
    first = exc.errors()[0] if exc.errors() else None
    if not first:
        return InvalidPayload.message
    loc = ".".join(str(p) for p in first.get("loc", ()))
    return f"{InvalidPayload.message}: {loc} {first.get('msg', '')}".strip()


async def dispatch(ctx: EventContext, raw: str) -> None:
    """Run one inbound event. Every failure becomes an *_error event; nothing escapes to the socket loop."""
    try:
        frame = json.loads(raw)
    except ValueError:
        await ctx.services.gateway.send(ctx.websocket, "error", ErrorOut(message="Malformed JSON").dump())
        return
    if not isinstance(frame, dict):
        await ctx.services.gateway.send(ctx.websocket, "error", ErrorOut(message="Expected an object").dump())
        return
    event = frame.get("event")
    data = frame.get("data") or {}
    entry = HANDLERS.get(event) if isinstance(event, str) else None
    if entry is None:
        await ctx.services.gateway.send(ctx.websocket, "error", ErrorOut(message=f"Unknown event: {event}").dump())
        return
    handler, error_event = entry
    try:
        if not isinstance(data, dict):
            raise InvalidPayload()
        await handler(ctx, data)
    except MatchingError as e:
        logger.info("event_rejected user=%s event=%s error=%s", ctx.user_id, event, type(e).__name__)
        await ctx.services.gateway.send(ctx.websocket, error_event, ErrorOut(message=e.message).dump())
    except ValidationError as e:
        await ctx.services.gateway.send(ctx.websocket, error_event, ErrorOut(message=_validation_message(e)).dump())
    except Exception:
        logger.exception("event_failed user=%s event=%s", ctx.user_id, event)
        await ctx.services.gateway.send(
            ctx.websocket, error_event, ErrorOut(message=f"Failed to process {event}").dump()
        )


def _bearer(header: str | None) -> str | None:
    if header and header.lower().startswith("bearer "):
        return header[7:].strip()
    return None


@router.websocket("/ws/matching")
async def matching_ws(websocket: WebSocket):
    """Connect with ?token=JWT (or Authorization: Bearer). Frames are {"event": name, "data": {...}} both ways."""
    await websocket.accept()
    token = websocket.query_params.get("token") or _bearer(websocket.headers.get("authorization"))
    if not token:
        await websocket.close(code=4000)
        return
    try:
        user_id = user_id_from_token(token)
    except NotAuthenticated:
        await websocket.close(code=4001)
        return
    services = get_services()
    services.gateway.connect(user_id, websocket)
    logger.info("ws_connected user=%s", user_id)
    ctx = EventContext(services=services, user_id=user_id, websocket=websocket)
    try:
        while True:
            raw = await websocket.receive_text()
            await dispatch(ctx, raw)
    except WebSocketDisconnect:
        pass
    finally:
        last_socket = services.gateway.disconnect(user_id, websocket)
        logger.info("ws_disconnected user=%s last_socket=%s", user_id, last_socket)
        if last_socket:
            try:
                await services.coordinator.release_user(user_id)
            except Exception:
                logger.exception("disconnect_cleanup_failed user=%s", user_id)
