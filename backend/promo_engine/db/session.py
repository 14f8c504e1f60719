from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy import event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from promo_engine.core.config import settings
from promo_engine.core.errors import StoreUnavailable


def _connect_args(url: str) -> dict:
    timeout = float(settings.store_timeout_seconds)
    if url.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": timeout}
    if url.startswith("postgresql+asyncpg"):
        return {"timeout": timeout, "command_timeout": timeout}
    return {}


def _serialize_sqlite_writers(engine: AsyncEngine) -> None:
    """Make every SQLite transaction take the write lock up front.

    Coupon transitions are conditional UPDATEs; with deferred transactions two
    connections can read the same row and then deadlock on lock promotion.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):  # type: ignore[no-untyped-def]
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):  # type: ignore[no-untyped-def]
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(url: str, **kwargs) -> AsyncEngine:
    engine = create_async_engine(url, future=True, echo=False, connect_args=_connect_args(url), **kwargs)
    if url.startswith("sqlite"):
        _serialize_sqlite_writers(engine)
    return engine


def build_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False, class_=AsyncSession)


engine = build_engine(settings.database_url)
SessionLocal = build_sessionmaker(engine)


async def get_session() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency to provide a database session."""
    async with SessionLocal() as session:
        yield session


@asynccontextmanager
async def store_guard(operation: str) -> AsyncIterator[None]:
    """Translate driver failures and timeouts into ``StoreUnavailable``."""
    try:
        yield
    except (SQLAlchemyError, OSError, asyncio.TimeoutError) as exc:
        raise StoreUnavailable(f"Store call failed during {operation}") from exc
