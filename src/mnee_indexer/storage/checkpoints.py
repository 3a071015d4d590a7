"""Per (chain, contract) record of the highest fully processed block."""

from __future__ import annotations

from typing import Any

from mnee_indexer.storage.database import Database


class CheckpointStore:
    """PostgreSQL-backed ``indexer_state`` table."""

    def __init__(self, db: Database):
        self.db = db

    async def get_last_block(self, chain_id: int, contract_address: str) -> int:
        """Return the checkpoint, creating it at zero on first use."""
        await self.db.execute(
            """
            INSERT INTO indexer_state (chain_id, contract_address, last_block)
            VALUES ($1, $2, 0)
            ON CONFLICT (chain_id, contract_address) DO NOTHING
            """,
            chain_id,
            contract_address,
        )
        row = await self.db.fetch_one(
            "SELECT last_block FROM indexer_state WHERE chain_id = $1 AND contract_address = $2",
            chain_id,
            contract_address,
        )
        return int(row["last_block"]) if row else 0

    async def advance(self, chain_id: int, contract_address: str, block_number: int) -> int:
        """Move the checkpoint forward to ``block_number``. Never moves it backwards."""
        row = await self.db.fetch_one(
            """
            INSERT INTO indexer_state (chain_id, contract_address, last_block)
            VALUES ($1, $2, $3)
            ON CONFLICT (chain_id, contract_address) DO UPDATE SET
                last_block = GREATEST(indexer_state.last_block, EXCLUDED.last_block),
                updated_at = timezone('utc', now())
            RETURNING last_block
            """,
            chain_id,
            contract_address,
            block_number,
        )
        return int(row["last_block"]) if row else block_number

    async def reset(self, chain_id: int, contract_address: str) -> None:
        """Set the checkpoint back to zero. Only the reset protocol calls this."""
        await self.db.execute(
            """
            UPDATE indexer_state SET last_block = 0, updated_at = timezone('utc', now())
            WHERE chain_id = $1 AND contract_address = $2
            """,
            chain_id,
            contract_address,
        )

    async def get_state(self, chain_id: int, contract_address: str) -> dict[str, Any] | None:
        return await self.db.fetch_one(
            """
            SELECT chain_id, contract_address, last_block, updated_at
            FROM indexer_state WHERE chain_id = $1 AND contract_address = $2
            """,
            chain_id,
            contract_address,
        )
