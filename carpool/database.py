from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from carpool.config import settings
from carpool.models import Base

# URL must use asyncpg for async
engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.LOG_LEVEL.upper() == "DEBUG",  # log SQL only when debugging
)

# Session factory shared by the SQL stores
async_session = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


async def init_models(reset: bool = False) -> None:
    """Create users/connections/chat_messages. reset=True drops them first (all data lost)."""
    async with engine.begin() as conn:
        if reset:
            await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
