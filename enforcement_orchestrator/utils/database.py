"""
Database utilities for Enforcement Orchestrator

Provides the asyncpg connection pool, transactions and schema installation
used by the Postgres storage backend.
"""

import json
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import asyncpg

from ..core.exceptions import DatabaseError

SCHEMA_PATH = Path(__file__).resolve().parent.parent / "sql" / "schema.sql"


async def _init_connection(connection) -> None:
    """Decode json/jsonb columns to Python objects on every pooled connection."""
    for type_name in ("json", "jsonb"):
        await connection.set_type_codec(
            type_name,
            encoder=json.dumps,
            decoder=json.loads,
            schema="pg_catalog"
        )


class DatabaseManager:
    """
    Manages database connections for the enforcement core.

    Provides pooled connections and transactions; the storage backend in
    ``storage.postgres`` issues the queries.
    """

    def __init__(self, connection_string: str, pool_size: int = 10, max_overflow: int = 20):
        """
        Initialize database manager.

        Args:
            connection_string: PostgreSQL connection string
            pool_size: Base connection pool size
            max_overflow: Maximum additional connections
        """
        self.connection_string = connection_string
        self.pool_size = pool_size
        self.max_overflow = max_overflow
        self.pool: Optional[asyncpg.Pool] = None

    async def initialize(self) -> None:
        """Initialize database connection pool."""
        try:
            self.pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=min(5, self.pool_size),
                max_size=self.pool_size + self.max_overflow,
                command_timeout=60,
                init=_init_connection
            )
        except Exception as e:
            raise DatabaseError("initialization", f"Failed to create connection pool: {str(e)}")

    async def close(self) -> None:
        """Close database connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None

    async def is_healthy(self) -> bool:
        """Check database connectivity."""
        try:
            async with self.get_connection() as connection:
                await connection.execute("SELECT 1")
                return True
        except Exception:
            return False

    @asynccontextmanager
    async def get_connection(self):
        """Get a database connection from the pool."""
        if not self.pool:
            raise DatabaseError("connection", "Database pool not initialized")

        async with self.pool.acquire() as connection:
            yield connection

    @asynccontextmanager
    async def transaction(self):
        """Get a pooled connection inside a transaction."""
        async with self.get_connection() as connection:
            async with connection.transaction():
                yield connection

    async def apply_schema(self, path: Optional[Path] = None) -> None:
        """Create the tables and indexes if they do not exist."""
        sql = (path or SCHEMA_PATH).read_text(encoding="utf-8")
        try:
            async with self.get_connection() as conn:
                await conn.execute(sql)
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError("apply_schema", str(e))
