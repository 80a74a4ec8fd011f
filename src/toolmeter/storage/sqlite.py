"""
Embedded-file backend on SQLite via aiosqlite.

SQLite has no row locks, so write atomicity comes from two layers: every
transaction starts with ``BEGIN IMMEDIATE`` (taking the database write lock
up front), and units of work inside one process are serialized by an
``asyncio.Lock`` so coroutines never contend for that lock.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator

import structlog
from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from toolmeter.storage.sql import SQLStorage

logger = structlog.get_logger()


class SQLiteStorage(SQLStorage):
    """SQLite storage adapter."""

    name = "sqlite"

    def __init__(
        self,
        url: str = "sqlite+aiosqlite:///./toolmeter.db",
        echo: bool = False,
        run_migrations: bool = True,
        busy_timeout_ms: int = 5000,
    ):
        super().__init__(url, echo=echo, run_migrations=run_migrations)
        self.busy_timeout_ms = busy_timeout_ms
        self._lock = asyncio.Lock()

    def _create_engine(self) -> AsyncEngine:
        database = make_url(self.url).database
        if database and database != ":memory:":
            Path(database).parent.mkdir(parents=True, exist_ok=True)

        engine = create_async_engine(
            self.url,
            echo=self.echo,
            connect_args={"check_same_thread": False},
        )

        @event.listens_for(engine.sync_engine, "connect")
        def _configure_connection(dbapi_conn: Any, _: Any) -> None:
            # Let the begin hook below own transaction control.
            dbapi_conn.isolation_level = None
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_ms)}")
            cursor.close()

        @event.listens_for(engine.sync_engine, "begin")
        def _begin_immediate(conn: Any) -> None:
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        logger.info("Created SQLite engine", url=self.url)
        return engine

    @asynccontextmanager
    async def _guard(self) -> AsyncIterator[None]:
        async with self._lock:
            yield
