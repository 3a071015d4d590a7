"""
Applies decoded contract events to the order table.

Both operations are idempotent: a purchase is keyed by its transaction hash and
inserted with ON CONFLICT DO NOTHING, a refund only ever sets a flag to true.
That is what lets the sync loop re-read the boundary block of every range and
replay a range after a crash without double counting.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable

from eth_utils import is_address

from mnee_indexer.catalog import product_for, to_token_units
from mnee_indexer.chain import EventKind, RawEvent
from mnee_indexer.exceptions import DecodeError, StorageError, get_error_context
from mnee_indexer.storage.orders import OrderRecord

logger = logging.getLogger(__name__)

TimestampLookup = Callable[[int], Awaitable[datetime]]


class Outcome(str, Enum):
    INSERTED = "inserted"
    ALREADY_PRESENT = "already_present"
    MARKED = "marked"
    NOT_FOUND = "not_found"


@dataclass
class BatchStats:
    """Per-kind tally for one pass."""

    kind: str
    total: int = 0
    applied: int = 0
    unchanged: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class EventApplier:
    """Turns ``RawEvent`` values into order rows for one contract binding."""

    def __init__(
        self,
        orders,
        block_timestamp: TimestampLookup,
        *,
        chain_id: int,
        contract_address: str,
        token_decimals: int = 18,
        metrics=None,
    ) -> None:
        self.orders = orders
        self.block_timestamp = block_timestamp
        self.chain_id = chain_id
        self.contract_address = contract_address
        self.token_decimals = token_decimals
        self.metrics = metrics

    async def apply_placed(self, event: RawEvent) -> Outcome:
        order_id, buyer, raw_amount = _decode_placed(event)
        amount = to_token_units(raw_amount, self.token_decimals)
        product_name = product_for(amount)
        timestamp = await self.block_timestamp(event.block_number)

        inserted = await self.orders.insert_order(
            OrderRecord(
                chain_id=self.chain_id,
                contract_address=self.contract_address,
                order_id=order_id,
                buyer_address=buyer.lower(),
                amount=amount,
                product_name=product_name,
                tx_hash=event.tx_hash,
                block_number=event.block_number,
                timestamp=timestamp,
            )
        )
        if inserted:
            logger.info(
                "Inserted order %s: %s for %s...",
                order_id,
                product_name,
                buyer[:8],
                extra={
                    "event": "applier.order_inserted",
                    "order_id": order_id,
                    "tx_hash": event.tx_hash,
                    "block": event.block_number,
                    "amount": str(amount),
                },
            )
            return Outcome.INSERTED
        logger.debug(
            "Order %s already exists",
            order_id,
            extra={"event": "applier.order_exists", "order_id": order_id, "tx_hash": event.tx_hash},
        )
        return Outcome.ALREADY_PRESENT

    async def apply_refunded(self, event: RawEvent) -> Outcome:
        order_id = _decode_order_id(event)
        matched = await self.orders.mark_refunded(self.contract_address, order_id)
        if matched:
            logger.info(
                "Marked order %s as refunded",
                order_id,
                extra={"event": "applier.order_refunded", "order_id": order_id, "tx_hash": event.tx_hash},
            )
            return Outcome.MARKED
        logger.warning(
            "Order %s not found for refund update",
            order_id,
            extra={"event": "applier.refund_unmatched", "order_id": order_id, "tx_hash": event.tx_hash},
        )
        return Outcome.NOT_FOUND

    async def apply(self, event: RawEvent) -> Outcome:
        if event.kind is EventKind.PLACED:
            return await self.apply_placed(event)
        return await self.apply_refunded(event)

    async def apply_batch(self, kind: EventKind, events: Iterable[RawEvent]) -> BatchStats:
        """
        Apply ``events`` in order, isolating per-event decode and storage failures.

        ``ChainUnavailableError`` (block timestamp lookups) is not caught here: it
        aborts the pass so the checkpoint does not move past unapplied events.
        """
        stats = BatchStats(kind=kind.value)
        for event in events:
            stats.total += 1
            try:
                outcome = await self.apply(event)
            except (DecodeError, StorageError) as exc:
                stats.failed += 1
                self._count(kind, "failed")
                logger.error(
                    "Error processing %s event in %s: %s",
                    kind.value,
                    event.tx_hash,
                    exc,
                    extra={
                        "event": "applier.event_failed",
                        "tx_hash": event.tx_hash,
                        "block": event.block_number,
                        **get_error_context(exc),
                    },
                )
                continue
            if outcome in (Outcome.INSERTED, Outcome.MARKED):
                stats.applied += 1
            else:
                stats.unchanged += 1
            self._count(kind, outcome.value)
        return stats

    def _count(self, kind: EventKind, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.events_applied.labels(kind=kind.value, outcome=outcome).inc()


def _decode_order_id(event: RawEvent) -> str:
    try:
        order_id = int(event.args["orderId"])
    except (KeyError, TypeError, ValueError) as exc:
        raise DecodeError(f"{event.kind.value} event has no usable orderId", tx_hash=event.tx_hash) from exc
    if order_id < 0:
        raise DecodeError(f"{event.kind.value} event has negative orderId", tx_hash=event.tx_hash)
    return str(order_id)


def _decode_placed(event: RawEvent) -> tuple[str, str, int]:
    order_id = _decode_order_id(event)
    buyer = event.args.get("buyer")
    if not isinstance(buyer, str) or not is_address(buyer):
        raise DecodeError(f"OrderPlaced event has invalid buyer {buyer!r}", tx_hash=event.tx_hash)
    try:
        raw_amount = int(event.args["amount"])
    except (KeyError, TypeError, ValueError) as exc:
        raise DecodeError("OrderPlaced event has no usable amount", tx_hash=event.tx_hash) from exc
    if raw_amount < 0:
        raise DecodeError("OrderPlaced event has negative amount", tx_hash=event.tx_hash)
    return order_id, buyer, raw_amount
