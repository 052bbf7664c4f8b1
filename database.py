"""
Database Connection

The engine and session factory are built in the application lifespan and
kept on `app.state`; request handlers get a session through `get_db`.
"""

import orjson
from fastapi import Request
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from config import get_settings
from models import Base


def _json_serializer(value) -> str:
    return orjson.dumps(value).decode("utf-8")


def build_engine(url: str = None, **kwargs):
    """Create an async engine; pool options only apply to server databases."""
    settings = get_settings()
    url = url or settings.DATABASE_URL

    options = {
        "echo": False,
        "json_serializer": _json_serializer,
        "json_deserializer": orjson.loads,
    }
    if not url.startswith("sqlite"):
        options.update(
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_recycle=settings.DB_POOL_RECYCLE,
            pool_pre_ping=True,
        )
    options.update(kwargs)
    return create_async_engine(url, **options)


def build_session_factory(bind) -> async_sessionmaker:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_db(bind):
    """Create all tables (development and tests; production runs alembic)."""
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db(request: Request):
    """Dependency for getting DB session."""
    async with request.app.state.session_factory() as session:
        try:
            yield session
        finally:
            await session.close()
