"""
Indexer-specific exception hierarchy.

Library errors (asyncpg, aiohttp, web3) are translated into these types at the
storage and chain boundaries so the sync loop can decide, per error class,
whether a failure is scoped to one event or to the whole pass.
"""

from __future__ import annotations

from typing import Any


class IndexerError(Exception):
    """Base exception for all indexer errors.

    Attributes:
        message: Human-readable error description
        details: Additional context about the error
        recoverable: Whether the next scheduled pass can be expected to succeed
    """

    recoverable = False

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        recoverable: bool | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if recoverable is not None:
            self.recoverable = recoverable


class ChainUnavailableError(IndexerError):
    """Raised when the chain node is unreachable, times out or rejects an RPC call."""

    recoverable = True


class StorageError(IndexerError):
    """Raised when a relational store operation fails."""

    recoverable = True


class DecodeError(IndexerError):
    """Raised when an event payload cannot be decoded into the expected fields."""

    def __init__(
        self,
        message: str,
        tx_hash: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.tx_hash = tx_hash


class ConfigurationError(IndexerError):
    """Raised when indexer settings are missing or invalid."""


def get_error_context(exc: BaseException) -> dict[str, Any]:
    """Extract error context from an exception for structured logging."""
    context: dict[str, Any] = {
        "error_type": type(exc).__name__,
        "error_message": str(exc),
    }
    if isinstance(exc, IndexerError):
        context["recoverable"] = exc.recoverable
        if exc.details:
            context["details"] = exc.details
    if isinstance(exc, DecodeError) and exc.tx_hash:
        context["tx_hash"] = exc.tx_hash
    return context
