from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from agriqcert.core.config import Settings, get_settings


def build_engine(settings: Settings) -> AsyncEngine:
    options: dict[str, Any] = {"pool_pre_ping": True}
    # SQLite (tests, local dev) runs on its default pool; Postgres gets a bounded one.
    if not settings.database_url.startswith("sqlite"):
        options.update(
            pool_size=max(1, settings.api_db_pool_size),
            max_overflow=max(0, settings.api_db_max_overflow),
            pool_timeout=30,
            pool_recycle=1800,
        )
    return create_async_engine(settings.database_url, **options)


engine = build_engine(get_settings())
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session
