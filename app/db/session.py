from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from app.core.config import settings


def _engine_options(database_url: str) -> dict:
    # SQLite (local runs of the late-fee script) has no server-side idle timeout to guard against.
    if database_url.startswith("sqlite"):
        return {}
    # pool_pre_ping: check connection is alive before use.
    # pool_recycle: discard connections after this many seconds to avoid stale connections.
    return {"pool_pre_ping": True, "pool_recycle": 300}


engine = create_async_engine(
    settings.database_url,
    echo=False,
    future=True,
    **_engine_options(settings.database_url),
)

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

Base = declarative_base()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one session per request. Services own commit/rollback."""
    async with AsyncSessionLocal() as session:
        yield session
