"""
Chain reset detection.

A local development node (Hardhat/Anvil) starts again from block zero every
time it is restarted, and redeploys the contracts at the same addresses. The
stored checkpoint is then far ahead of the live chain and every order row for
the contract refers to a chain that no longer exists.
"""

from __future__ import annotations

import logging

from mnee_indexer.config import DEFAULT_RESET_THRESHOLD
from mnee_indexer.exceptions import IndexerError, get_error_context

logger = logging.getLogger(__name__)


class ResetDetector:
    """Purges a contract's orders and zeroes its checkpoint when the chain went backwards."""

    def __init__(self, checkpoints, orders, chain, *, threshold: int = DEFAULT_RESET_THRESHOLD, metrics=None):
        self.checkpoints = checkpoints
        self.orders = orders
        self.chain = chain
        self.threshold = threshold
        self.metrics = metrics

    def is_reset(self, stored: int, height: int) -> bool:
        return stored > 0 and height < stored - self.threshold

    async def check_and_reset(self, network_id: int, address: str) -> bool:
        """
        Return True if a reset was detected and the stored state was cleared.

        Detection failures are logged and reported as "no reset": an unreachable
        node must never cause a purge.
        """
        try:
            stored = await self.checkpoints.get_last_block(network_id, address)
            height = await self.chain.current_height()
            if not self.is_reset(stored, height):
                return False

            logger.warning(
                "Chain reset detected (stored block %s, chain height %s); clearing orders for %s",
                stored,
                height,
                address,
                extra={
                    "event": "reset.detected",
                    "stored_block": stored,
                    "chain_height": height,
                    "address": address,
                },
            )
            purged = await self.orders.purge_contract(address)
            await self.checkpoints.reset(network_id, address)
        # Only translated chain and storage errors mean "no reset". Anything else is a
        # bug and propagates so the pass fails without purging.
        except IndexerError as exc:
            logger.error(
                "Error checking for chain reset: %s",
                exc,
                extra={"event": "reset.check_failed", "address": address, **get_error_context(exc)},
            )
            return False

        self.chain.clear_cache()
        if self.metrics is not None:
            self.metrics.resets.inc()
        logger.info(
            "Chain reset handled: %s orders removed, checkpoint set to 0",
            purged,
            extra={"event": "reset.completed", "address": address, "purged": purged},
        )
        return True
