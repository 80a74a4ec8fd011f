"""Relational-server backend on PostgreSQL via asyncpg."""

from __future__ import annotations

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from toolmeter.storage.sql import SQLStorage

logger = structlog.get_logger()


class PostgresStorage(SQLStorage):
    """PostgreSQL storage adapter with a pooled engine."""

    name = "postgresql"

    def __init__(
        self,
        url: str,
        pool_size: int = 10,
        max_overflow: int = 20,
        pool_timeout: float = 30.0,
        pool_recycle: int = 1800,
        echo: bool = False,
        run_migrations: bool = True,
        lock_timeout_ms: int = 10000,
    ):
        super().__init__(url, echo=echo, run_migrations=run_migrations)
        self.pool_size = pool_size
        self.max_overflow = max_overflow
        self.pool_timeout = pool_timeout
        self.pool_recycle = pool_recycle
        self.lock_timeout_ms = lock_timeout_ms

    def _create_engine(self) -> AsyncEngine:
        engine = create_async_engine(
            self.url,
            pool_size=self.pool_size,
            max_overflow=self.max_overflow,
            pool_timeout=self.pool_timeout,
            pool_recycle=self.pool_recycle,
            pool_pre_ping=True,
            echo=self.echo,
            connect_args={
                "server_settings": {
                    "lock_timeout": str(self.lock_timeout_ms),
                }
            },
        )
        logger.info(
            "Created PostgreSQL engine",
            pool_size=self.pool_size,
            max_overflow=self.max_overflow,
        )
        return engine
