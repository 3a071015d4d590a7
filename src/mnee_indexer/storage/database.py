"""
Database connection management for the commerce indexer.
"""

from __future__ import annotations

import logging
from typing import Any

import asyncpg

from mnee_indexer.exceptions import StorageError

logger = logging.getLogger(__name__)

# asyncpg raises its own hierarchy for server-side errors and plain OSError /
# ConnectionError subclasses when the socket goes away.
DB_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)

MIGRATIONS: list[str] = [
    """
    CREATE TABLE IF NOT EXISTS orders (
        id BIGSERIAL PRIMARY KEY,
        chain_id BIGINT NOT NULL,
        contract_address TEXT NOT NULL,
        order_id TEXT NOT NULL,
        buyer_address TEXT NOT NULL,
        amount NUMERIC(78,18) NOT NULL,
        product_name TEXT,
        tx_hash TEXT UNIQUE NOT NULL,
        block_number BIGINT NOT NULL,
        timestamp TIMESTAMPTZ,
        refunded BOOLEAN NOT NULL DEFAULT FALSE
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_orders_buyer ON orders(buyer_address);",
    "CREATE INDEX IF NOT EXISTS idx_orders_contract_order ON orders(contract_address, order_id);",
    "CREATE INDEX IF NOT EXISTS idx_orders_timestamp ON orders(timestamp DESC);",
    """
    CREATE TABLE IF NOT EXISTS indexer_state (
        chain_id BIGINT NOT NULL,
        contract_address TEXT NOT NULL,
        last_block BIGINT NOT NULL DEFAULT 0,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT timezone('utc', now()),
        UNIQUE (chain_id, contract_address)
    );
    """,
]


def rowcount(status: str | None) -> int:
    """Affected-row count from an asyncpg command tag ("INSERT 0 1", "UPDATE 3", "DELETE 0")."""
    if not status:
        return 0
    try:
        return int(status.rsplit(" ", 1)[-1])
    except ValueError:
        return 0


class Database:
    """Async PostgreSQL connection manager"""

    def __init__(
        self,
        database_url: str,
        *,
        min_size: int = 1,
        max_size: int = 5,
        command_timeout: float = 30,
    ):
        self.database_url = database_url
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self.pool: asyncpg.Pool | None = None

    async def connect(self) -> None:
        """Establish database connection pool"""
        try:
            self.pool = await asyncpg.create_pool(
                self.database_url,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=self.command_timeout,
            )
        except DB_ERRORS as e:
            logger.error(
                "Failed to connect to database: %s",
                e,
                extra={"event": "storage.connect_failed"},
            )
            raise StorageError(f"Failed to connect to database: {e}") from e
        logger.info("Database connection pool created", extra={"event": "storage.connected"})

    async def disconnect(self) -> None:
        """Close database connection pool"""
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("Database connection pool closed", extra={"event": "storage.disconnected"})

    async def is_connected(self) -> bool:
        if not self.pool:
            return False
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except DB_ERRORS:
            return False

    def _require_pool(self) -> asyncpg.Pool:
        if self.pool is None:
            raise StorageError("Database is not connected", recoverable=False)
        return self.pool

    async def fetch_one(self, query: str, *args: Any) -> dict[str, Any] | None:
        """Fetch single row"""
        try:
            async with self._require_pool().acquire() as conn:
                row = await conn.fetchrow(query, *args)
        except DB_ERRORS as e:
            raise StorageError(f"Query failed: {e}", details={"query": _summary(query)}) from e
        return dict(row) if row else None

    async def fetch_all(self, query: str, *args: Any) -> list[dict[str, Any]]:
        """Fetch multiple rows"""
        try:
            async with self._require_pool().acquire() as conn:
                rows = await conn.fetch(query, *args)
        except DB_ERRORS as e:
            raise StorageError(f"Query failed: {e}", details={"query": _summary(query)}) from e
        return [dict(row) for row in rows]

    async def execute(self, query: str, *args: Any) -> str:
        """Execute a statement and return its command tag."""
        try:
            async with self._require_pool().acquire() as conn:
                return await conn.execute(query, *args)
        except DB_ERRORS as e:
            raise StorageError(f"Statement failed: {e}", details={"query": _summary(query)}) from e

    async def run_migrations(self) -> None:
        """Create the orders and indexer_state tables (idempotent)."""
        for statement in MIGRATIONS:
            await self.execute(statement)
        logger.info("Indexer migrations executed successfully", extra={"event": "storage.migrated"})


def _summary(query: str) -> str:
    return " ".join(query.split())[:120]
