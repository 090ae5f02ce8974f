"""
Async database engine, declarative base and session dependency.
"""

from typing import Any, AsyncIterator, Dict

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from config import settings


def _connect_args(url: str) -> Dict[str, Any]:
    """Driver-level timeouts so no statement blocks indefinitely."""
    if url.startswith("postgresql+asyncpg"):
        return {"command_timeout": settings.DB_COMMAND_TIMEOUT_SECONDS}
    if url.startswith("sqlite"):
        return {"timeout": settings.DB_COMMAND_TIMEOUT_SECONDS}
    return {}


def build_engine(url: str):
    options: Dict[str, Any] = {
        "pool_pre_ping": True,
        "connect_args": _connect_args(url),
    }
    if not url.startswith("sqlite"):
        options["pool_timeout"] = settings.DB_POOL_TIMEOUT_SECONDS
    return create_async_engine(url, **options)


engine = build_engine(settings.DATABASE_URL)
async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

Base = declarative_base()


async def get_db() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency yielding one session per request."""
    async with async_session_maker() as session:
        yield session
