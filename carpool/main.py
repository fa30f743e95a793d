import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from carpool.api.connections import router as connections_router
from carpool.api.health import router as health_router
from carpool.api.matching import router as matching_router
from carpool.api.ws import router as ws_router
from carpool.config import settings
from carpool.database import async_session, init_models
from carpool.redis_client import close_redis, open_redis
from carpool.services.connection_store import SqlConnectionStore
from carpool.services.container import Services, build_memory_services, build_services, set_services
from carpool.services.search_registry import RedisSearchRegistry
from carpool.services.user_directory import SqlUserDirectory
from carpool.tasks.scan_loop import run_scan_loop

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


async def _build_persistent_services() -> Services:
    await init_models(reset=settings.RESET_DB)
    redis_client = await open_redis()
    return build_services(
        RedisSearchRegistry(redis_client),
        SqlConnectionStore(async_session),
        SqlUserDirectory(async_session),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.STORAGE_BACKEND == "memory":
        services = build_memory_services()
    else:
        services = await _build_persistent_services()
    set_services(services)
    logger.info("matching_started storage=%s", settings.STORAGE_BACKEND)
    task = asyncio.create_task(run_scan_loop(services.coordinator))
    try:
        yield
    finally:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        await services.coordinator.shutdown()
        set_services(None)
        await close_redis()


app = FastAPI(title="Carpool Matching", version="0.1.0", lifespan=lifespan)
app.include_router(health_router, prefix="/api")
app.include_router(matching_router, prefix="/api")
app.include_router(connections_router, prefix="/api")
app.include_router(ws_router)


@app.get("/api")
def api_root():
    return {"message": "Carpool Matching API"}
