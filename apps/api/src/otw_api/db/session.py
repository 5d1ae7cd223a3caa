"""Async engine and session factory shared by the API, workers and tasks."""

from __future__ import annotations

from typing import AsyncIterator

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

import otw_api.models  # noqa: F401  registers mappers on Base.metadata
from otw_api.core.settings import settings


def enable_sqlite_write_locking(engine: AsyncEngine) -> AsyncEngine:
    """Make every SQLite transaction take the write lock up front.

    pysqlite/aiosqlite defer BEGIN until the first write, so two claim
    transactions can both read and then deadlock on upgrade. Emitting
    ``BEGIN IMMEDIATE`` serializes writers the way row locks do on Postgres.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):  # noqa: ANN001
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):  # noqa: ANN001
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def build_engine(database_url: str, *, echo: bool = False) -> AsyncEngine:
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        engine = create_async_engine(
            database_url,
            echo=echo,
            future=True,
            connect_args={"timeout": 30},
        )
        return enable_sqlite_write_locking(engine)

    return create_async_engine(database_url, echo=echo, future=True, pool_pre_ping=True)


engine = build_engine(settings.database_url, echo=settings.database_echo)

async_session = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def get_session() -> AsyncIterator[AsyncSession]:
    async with async_session() as session:
        yield session


__all__ = ["async_session", "build_engine", "enable_sqlite_write_locking", "engine", "get_session"]
