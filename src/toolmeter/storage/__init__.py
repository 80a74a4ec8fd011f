"""
Storage backends for toolmeter.

All backends implement ``StorageAdapter`` with identical behaviour.
"""

from __future__ import annotations

from toolmeter.core.config import StorageSettings
from toolmeter.core.errors import ConfigurationError
from toolmeter.storage.base import StorageAdapter
from toolmeter.storage.memory import MemoryStorage


def create_storage(settings: StorageSettings) -> StorageAdapter:
    """Build the configured backend. Call ``initialize()`` before use."""
    backend = settings.backend
    url = settings.resolved_url

    if backend == "memory":
        return MemoryStorage()

    if backend == "sqlite":
        from toolmeter.storage.sqlite import SQLiteStorage

        return SQLiteStorage(url, echo=settings.echo, run_migrations=settings.run_migrations)

    pool_options = {
        "pool_size": settings.pool_size,
        "max_overflow": settings.max_overflow,
        "pool_timeout": settings.pool_timeout,
        "pool_recycle": settings.pool_recycle,
        "echo": settings.echo,
        "run_migrations": settings.run_migrations,
    }

    if backend == "postgresql":
        from toolmeter.storage.postgres import PostgresStorage

        return PostgresStorage(url, **pool_options)

    if backend == "mysql":
        from toolmeter.storage.mysql import MySQLStorage

        return MySQLStorage(url, **pool_options)

    raise ConfigurationError(f"Unknown storage backend: {backend}")


__all__ = ["StorageAdapter", "MemoryStorage", "create_storage"]
