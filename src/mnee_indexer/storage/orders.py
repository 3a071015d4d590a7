"""
Order persistence.

Writes come only from the sync loop. The read paths and the product label
override at the bottom of ``OrderStore`` are what the HTTP API builds on.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from mnee_indexer.storage.database import Database, rowcount

ORDER_COLUMNS = (
    "chain_id, contract_address, order_id, buyer_address, amount, product_name, "
    "tx_hash, block_number, timestamp, refunded"
)


@dataclass(frozen=True)
class OrderRecord:
    """One purchase as observed on chain."""

    chain_id: int
    contract_address: str
    order_id: str
    buyer_address: str
    amount: Decimal
    product_name: str
    tx_hash: str
    block_number: int
    timestamp: datetime | None
    refunded: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class OrderStore:
    """PostgreSQL-backed order table."""

    def __init__(self, db: Database):
        self.db = db

    async def insert_order(self, order: OrderRecord) -> bool:
        """Insert ``order`` unless its transaction hash is already stored. True if inserted."""
        status = await self.db.execute(
            f"""
            INSERT INTO orders ({ORDER_COLUMNS})
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, FALSE)
            ON CONFLICT (tx_hash) DO NOTHING
            """,
            order.chain_id,
            order.contract_address,
            order.order_id,
            order.buyer_address.lower(),
            order.amount,
            order.product_name,
            order.tx_hash,
            order.block_number,
            order.timestamp,
        )
        return rowcount(status) > 0

    async def mark_refunded(self, contract_address: str, order_id: str) -> int:
        """Flag the order as refunded. Returns the number of matching rows."""
        status = await self.db.execute(
            """
            UPDATE orders SET refunded = TRUE
            WHERE contract_address = $1 AND order_id = $2
            """,
            contract_address,
            order_id,
        )
        return rowcount(status)

    async def purge_contract(self, contract_address: str) -> int:
        """Delete every order recorded for ``contract_address``."""
        status = await self.db.execute(
            "DELETE FROM orders WHERE contract_address = $1",
            contract_address,
        )
        return rowcount(status)

    async def get_order(self, tx_hash: str) -> dict[str, Any] | None:
        return await self.db.fetch_one(
            f"SELECT id, {ORDER_COLUMNS} FROM orders WHERE tx_hash = $1",
            tx_hash,
        )

    async def count_orders(self, contract_address: str | None = None) -> int:
        if contract_address is None:
            row = await self.db.fetch_one("SELECT COUNT(*) AS total FROM orders")
        else:
            row = await self.db.fetch_one(
                "SELECT COUNT(*) AS total FROM orders WHERE contract_address = $1",
                contract_address,
            )
        return int(row["total"]) if row else 0

    async def list_orders(self, buyer: str | None = None, limit: int | None = None) -> list[dict[str, Any]]:
        """Orders newest first, optionally only those of ``buyer`` (case-insensitive)."""
        args: list[Any] = []
        where = ""
        if buyer:
            args.append(buyer.lower())
            where = f"WHERE buyer_address = ${len(args)}"
        limit_clause = ""
        if limit is not None:
            args.append(max(1, int(limit)))
            limit_clause = f"LIMIT ${len(args)}"
        return await self.db.fetch_all(
            f"SELECT id, {ORDER_COLUMNS} FROM orders {where} ORDER BY timestamp DESC NULLS LAST {limit_clause}",
            *args,
        )

    async def attach_product_label(self, tx_hash: str, product_name: str) -> bool:
        """Administrative override of the catalog's guess. True if the order exists."""
        status = await self.db.execute(
            "UPDATE orders SET product_name = $1 WHERE tx_hash = $2",
            product_name,
            tx_hash,
        )
        return rowcount(status) > 0
