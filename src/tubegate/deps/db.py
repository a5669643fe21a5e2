from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from tubegate.config import settings
from tubegate.core.store import KeyStore, SqlKeyStore

engine: AsyncEngine | None = None
SessionLocal: async_sessionmaker[AsyncSession] | None = None


def get_engine(dsn: str | None = None) -> AsyncEngine:
    # Lazy singleton; nothing connects until the first query
    global engine, SessionLocal
    if engine is None:
        engine = create_async_engine(dsn or settings.postgres_dsn, pool_pre_ping=True)
        SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    return engine


async def close_engine() -> None:
    global engine, SessionLocal
    if engine is not None:
        await engine.dispose()
        engine = None
        SessionLocal = None


@asynccontextmanager
async def open_key_store(dsn: str | None = None) -> AsyncIterator[KeyStore]:
    get_engine(dsn)
    async with SessionLocal() as session:
        yield SqlKeyStore(session)


async def get_key_store(request: Request) -> AsyncIterator[KeyStore]:
    # app.state.open_store is swapped for an in-memory store in tests
    async with request.app.state.open_store() as store:
        yield store
