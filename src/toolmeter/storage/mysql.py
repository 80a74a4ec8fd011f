"""Relational-server backend on MySQL/MariaDB (InnoDB) via aiomysql."""

from __future__ import annotations

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from toolmeter.storage.sql import SQLStorage

logger = structlog.get_logger()


class MySQLStorage(SQLStorage):
    """MySQL storage adapter with a pooled engine."""

    name = "mysql"

    def __init__(
        self,
        url: str,
        pool_size: int = 10,
        max_overflow: int = 20,
        pool_timeout: float = 30.0,
        pool_recycle: int = 1800,
        echo: bool = False,
        run_migrations: bool = True,
    ):
        super().__init__(url, echo=echo, run_migrations=run_migrations)
        self.pool_size = pool_size
        self.max_overflow = max_overflow
        self.pool_timeout = pool_timeout
        self.pool_recycle = pool_recycle

    def _create_engine(self) -> AsyncEngine:
        # READ COMMITTED so reads after a row lock see the latest committed rows
        engine = create_async_engine(
            self.url,
            pool_size=self.pool_size,
            max_overflow=self.max_overflow,
            pool_timeout=self.pool_timeout,
            pool_recycle=self.pool_recycle,
            pool_pre_ping=True,
            isolation_level="READ COMMITTED",
            echo=self.echo,
        )
        logger.info(
            "Created MySQL engine",
            pool_size=self.pool_size,
            max_overflow=self.max_overflow,
        )
        return engine
