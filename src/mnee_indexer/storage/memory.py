"""
In-memory stores with the same contracts as the PostgreSQL ones.

Used by the test-suite and by ``mnee-indexer --dry-run``, which syncs against a
live node without touching a database.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

from mnee_indexer.storage.orders import OrderRecord

_EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


class InMemoryOrderStore:
    def __init__(self) -> None:
        self._orders: dict[str, OrderRecord] = {}
        self._lock = asyncio.Lock()

    async def insert_order(self, order: OrderRecord) -> bool:
        async with self._lock:
            if order.tx_hash in self._orders:
                return False
            self._orders[order.tx_hash] = replace(
                order,
                buyer_address=order.buyer_address.lower(),
                refunded=False,
            )
            return True

    async def mark_refunded(self, contract_address: str, order_id: str) -> int:
        async with self._lock:
            matched = 0
            for tx_hash, order in self._orders.items():
                if order.contract_address == contract_address and order.order_id == order_id:
                    self._orders[tx_hash] = replace(order, refunded=True)
                    matched += 1
            return matched

    async def purge_contract(self, contract_address: str) -> int:
        async with self._lock:
            doomed = [h for h, o in self._orders.items() if o.contract_address == contract_address]
            for tx_hash in doomed:
                del self._orders[tx_hash]
            return len(doomed)

    async def get_order(self, tx_hash: str) -> dict[str, Any] | None:
        order = self._orders.get(tx_hash)
        return order.to_dict() if order else None

    async def count_orders(self, contract_address: str | None = None) -> int:
        if contract_address is None:
            return len(self._orders)
        return sum(1 for o in self._orders.values() if o.contract_address == contract_address)

    async def list_orders(self, buyer: str | None = None, limit: int | None = None) -> list[dict[str, Any]]:
        orders = list(self._orders.values())
        if buyer:
            orders = [o for o in orders if o.buyer_address == buyer.lower()]
        orders.sort(key=lambda o: o.timestamp or _EPOCH, reverse=True)
        if limit is not None:
            orders = orders[: max(1, int(limit))]
        return [o.to_dict() for o in orders]

    async def attach_product_label(self, tx_hash: str, product_name: str) -> bool:
        async with self._lock:
            order = self._orders.get(tx_hash)
            if order is None:
                return False
            self._orders[tx_hash] = replace(order, product_name=product_name)
            return True


class InMemoryCheckpointStore:
    def __init__(self) -> None:
        self._state: dict[tuple[int, str], dict[str, Any]] = {}

    def _row(self, chain_id: int, contract_address: str) -> dict[str, Any]:
        key = (chain_id, contract_address)
        if key not in self._state:
            self._state[key] = {
                "chain_id": chain_id,
                "contract_address": contract_address,
                "last_block": 0,
                "updated_at": datetime.now(timezone.utc),
            }
        return self._state[key]

    async def get_last_block(self, chain_id: int, contract_address: str) -> int:
        return int(self._row(chain_id, contract_address)["last_block"])

    async def advance(self, chain_id: int, contract_address: str, block_number: int) -> int:
        row = self._row(chain_id, contract_address)
        row["last_block"] = max(int(row["last_block"]), int(block_number))
        row["updated_at"] = datetime.now(timezone.utc)
        return row["last_block"]

    async def reset(self, chain_id: int, contract_address: str) -> None:
        key = (chain_id, contract_address)
        if key in self._state:
            self._state[key]["last_block"] = 0
            self._state[key]["updated_at"] = datetime.now(timezone.utc)

    async def get_state(self, chain_id: int, contract_address: str) -> dict[str, Any] | None:
        row = self._state.get((chain_id, contract_address))
        return dict(row) if row else None
