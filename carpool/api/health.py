"""Liveness endpoint."""
from fastapi import APIRouter

from carpool.config import settings
from carpool.redis_client import get_redis
from carpool.services.container import get_services

router = APIRouter(tags=["health"])


@router.get("/health")
async def health():
    body = {
        "status": "ok",
        "storage": settings.STORAGE_BACKEND,
        "pending_matches": len(get_services().coordinator.pending_matches()),
    }
    if settings.STORAGE_BACKEND != "memory":
        try:
            redis = await get_redis()
            body["redis"] = bool(await redis.ping())
        except Exception:
            body["redis"] = False
    return body
