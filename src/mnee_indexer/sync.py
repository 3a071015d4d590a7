"""
Sync loop - mirrors commerce contract events into the order store.

One pass walks a fixed sequence of phases:

    resolve address -> check reset (purge) -> bind contract -> read checkpoint
    -> read chain height -> (caught up: stop) -> fetch + apply OrderPlaced
    -> fetch + apply OrderRefunded -> advance checkpoint

The scanned range is ``[checkpoint, height]``, inclusive on both ends. The
boundary block is therefore read twice across consecutive passes; duplicate
purchases are absorbed by the tx-hash uniqueness of the order table and refunds
are idempotent. Purchases are applied before refunds so a purchase and its
refund landing in the same range leave the order refunded.

``IndexerService`` drives passes on a fixed period with at most one pass in
flight. Ticks that fall due while a pass is still running are skipped rather
than queued.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from eth_utils import is_address, to_checksum_address

from mnee_indexer.applier import BatchStats, EventApplier
from mnee_indexer.chain import BoundContract, EventKind, rebind
from mnee_indexer.exceptions import IndexerError, get_error_context
from mnee_indexer.reset import ResetDetector

logger = logging.getLogger(__name__)


class SyncPhase(str, Enum):
    RESOLVE_ADDRESS = "resolve_address"
    CHECK_RESET = "check_reset"
    BIND_CONTRACT = "bind_contract"
    READ_CHECKPOINT = "read_checkpoint"
    READ_CHAIN_HEIGHT = "read_chain_height"
    FETCH_PLACED = "fetch_placed"
    APPLY_PLACED = "apply_placed"
    FETCH_REFUNDED = "fetch_refunded"
    APPLY_REFUNDED = "apply_refunded"
    ADVANCE_CHECKPOINT = "advance_checkpoint"
    IDLE = "idle"


@dataclass
class PassResult:
    """What one pass did. ``phase`` is the last phase entered."""

    phase: SyncPhase = SyncPhase.RESOLVE_ADDRESS
    address: str | None = None
    from_block: int | None = None
    to_block: int | None = None
    reset: bool = False
    advanced: bool = False
    skipped_reason: str | None = None
    error: str | None = None
    stats: dict[str, BatchStats] = field(default_factory=dict)
    duration: float = 0.0

    @property
    def outcome(self) -> str:
        if self.error is not None:
            return "failed"
        if self.skipped_reason is not None:
            return "skipped"
        return "advanced" if self.advanced else "idle"

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome,
            "phase": self.phase.value,
            "address": self.address,
            "from_block": self.from_block,
            "to_block": self.to_block,
            "reset": self.reset,
            "skipped_reason": self.skipped_reason,
            "error": self.error,
            "stats": {kind: s.to_dict() for kind, s in self.stats.items()},
            "duration": round(self.duration, 4),
        }


class SyncLoop:
    """Runs single sync passes. Holds the current contract binding between passes."""

    def __init__(
        self,
        resolver,
        chain,
        checkpoints,
        orders,
        *,
        chain_id: int,
        reset_detector: ResetDetector | None = None,
        token_decimals: int = 18,
        metrics=None,
    ) -> None:
        self.resolver = resolver
        self.chain = chain
        self.checkpoints = checkpoints
        self.orders = orders
        self.chain_id = chain_id
        self.reset_detector = reset_detector or ResetDetector(checkpoints, orders, chain, metrics=metrics)
        self.token_decimals = token_decimals
        self.metrics = metrics
        self.bound: BoundContract | None = None
        self.last_result: PassResult | None = None

    async def run_once(self) -> PassResult:
        """Run one pass. Never raises; failures are logged and reported in the result."""
        result = PassResult()
        started = time.monotonic()
        try:
            await self._run(result)
        except IndexerError as exc:
            result.error = str(exc)
            logger.error(
                "Sync pass failed during %s: %s",
                result.phase.value,
                exc,
                extra={"event": "sync.pass_failed", "phase": result.phase.value, **get_error_context(exc)},
            )
        except Exception as exc:
            result.error = str(exc) or type(exc).__name__
            logger.exception(
                "Unexpected error in sync pass during %s",
                result.phase.value,
                extra={"event": "sync.pass_crashed", "phase": result.phase.value, **get_error_context(exc)},
            )
        result.duration = time.monotonic() - started
        self._record(result)
        self.last_result = result
        return result

    async def _run(self, result: PassResult) -> None:
        result.phase = SyncPhase.RESOLVE_ADDRESS
        resolution = self.resolver.resolve()
        if not resolution.available:
            result.skipped_reason = resolution.reason or "no contract address"
            logger.info(
                "No commerce contract address available; skipping pass",
                extra={"event": "sync.pass_skipped", "reason": result.skipped_reason},
            )
            return
        if not is_address(resolution.address):
            result.skipped_reason = f"invalid contract address {resolution.address!r}"
            logger.warning(
                "Resolved contract address %r is not a valid address; skipping pass",
                resolution.address,
                extra={"event": "sync.pass_skipped", "reason": "invalid_address"},
            )
            return
        address = to_checksum_address(resolution.address)
        result.address = address

        result.phase = SyncPhase.CHECK_RESET
        result.reset = await self.reset_detector.check_and_reset(self.chain_id, address)

        result.phase = SyncPhase.BIND_CONTRACT
        previous = self.bound
        self.bound = rebind(previous, self.chain, address)
        if self.bound is not previous and self.metrics is not None:
            self.metrics.rebinds.inc()

        result.phase = SyncPhase.READ_CHECKPOINT
        last_block = await self.checkpoints.get_last_block(self.chain_id, address)

        result.phase = SyncPhase.READ_CHAIN_HEIGHT
        height = await self.chain.current_height()
        if self.metrics is not None:
            self.metrics.chain_height.set(height)
        if last_block >= height:
            result.phase = SyncPhase.IDLE
            return

        result.from_block, result.to_block = last_block, height
        logger.debug(
            "Scanning blocks %s to %s",
            last_block,
            height,
            extra={"event": "sync.scan_range", "from_block": last_block, "to_block": height, "address": address},
        )
        applier = EventApplier(
            self.orders,
            self.chain.block_timestamp,
            chain_id=self.chain_id,
            contract_address=address,
            token_decimals=self.token_decimals,
            metrics=self.metrics,
        )

        result.phase = SyncPhase.FETCH_PLACED
        placed = await self.bound.query_events(EventKind.PLACED, last_block, height)
        result.phase = SyncPhase.APPLY_PLACED
        result.stats[EventKind.PLACED.value] = await applier.apply_batch(EventKind.PLACED, placed)

        result.phase = SyncPhase.FETCH_REFUNDED
        refunded = await self.bound.query_events(EventKind.REFUNDED, last_block, height)
        result.phase = SyncPhase.APPLY_REFUNDED
        result.stats[EventKind.REFUNDED.value] = await applier.apply_batch(EventKind.REFUNDED, refunded)

        result.phase = SyncPhase.ADVANCE_CHECKPOINT
        checkpoint = await self.checkpoints.advance(self.chain_id, address, height)
        result.advanced = True
        result.phase = SyncPhase.IDLE
        if self.metrics is not None:
            self.metrics.last_block.set(checkpoint)

        if placed or refunded:
            logger.info(
                "Processed blocks %s-%s: %s purchases, %s refunds",
                last_block,
                height,
                len(placed),
                len(refunded),
                extra={
                    "event": "sync.range_processed",
                    "from_block": last_block,
                    "to_block": height,
                    "placed": len(placed),
                    "refunded": len(refunded),
                },
            )

    def _record(self, result: PassResult) -> None:
        if self.metrics is None:
            return
        self.metrics.passes.labels(outcome=result.outcome).inc()
        self.metrics.pass_duration.observe(result.duration)
        if result.error is None:
            self.metrics.last_success.set(time.time())


class IndexerService:
    """
    Periodic driver for a ``SyncLoop``.

    A single worker task runs passes every ``poll_interval`` seconds. ``stop()``
    ends the schedule and waits for an in-flight pass to finish instead of
    cancelling it.
    """

    def __init__(self, sync_loop: SyncLoop, poll_interval: float = 2.0):
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        self.sync_loop = sync_loop
        self.poll_interval = poll_interval
        self.running = False
        self.start_time: datetime | None = None
        self.passes_run = 0
        self.ticks_skipped = 0
        self._in_flight = False
        self._task: asyncio.Task | None = None
        self._stop_event: asyncio.Event | None = None

    async def start(self) -> None:
        """Start the indexer"""
        if self.running:
            return
        self.running = True
        self.start_time = datetime.now(timezone.utc)
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "Commerce indexer started (every %ss)",
            self.poll_interval,
            extra={"event": "indexer.started", "poll_interval": self.poll_interval},
        )

    async def stop(self) -> None:
        """Stop the indexer once the current pass, if any, completes."""
        if not self.running and self._task is None:
            return
        self.running = False
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
        logger.info("Commerce indexer stopped", extra={"event": "indexer.stopped", **self.get_stats()})

    def is_running(self) -> bool:
        """Check if indexer is running"""
        return self.running

    def get_uptime_hours(self) -> float:
        """Get indexer uptime in hours"""
        if not self.start_time:
            return 0.0
        return (datetime.now(timezone.utc) - self.start_time).total_seconds() / 3600

    async def tick(self):
        """Run one pass unless one is already in flight. Returns the ``PassResult`` or None."""
        if self._in_flight:
            self.ticks_skipped += 1
            logger.debug("Previous pass still running; tick skipped", extra={"event": "indexer.tick_skipped"})
            return None
        self._in_flight = True
        try:
            result = await self.sync_loop.run_once()
        finally:
            self._in_flight = False
        self.passes_run += 1
        return result

    async def _run_loop(self) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        while self.running:
            await self.tick()
            next_tick += self.poll_interval
            now = loop.time()
            if now >= next_tick:
                missed = int((now - next_tick) // self.poll_interval) + 1
                self.ticks_skipped += missed
                next_tick += missed * self.poll_interval
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=next_tick - now)
            except asyncio.TimeoutError:
                pass

    def get_stats(self) -> dict[str, Any]:
        """Get indexer statistics"""
        last = self.sync_loop.last_result
        bound = self.sync_loop.bound
        return {
            "running": self.running,
            "uptime_hours": self.get_uptime_hours(),
            "passes_run": self.passes_run,
            "ticks_skipped": self.ticks_skipped,
            "contract_address": bound.address if bound else None,
            "last_pass": last.to_dict() if last else None,
        }
