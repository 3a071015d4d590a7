"""Relational storage for orders and sync checkpoints."""

from mnee_indexer.storage.checkpoints import CheckpointStore
from mnee_indexer.storage.database import Database
from mnee_indexer.storage.memory import InMemoryCheckpointStore, InMemoryOrderStore
from mnee_indexer.storage.orders import OrderRecord, OrderStore

__all__ = [
    "CheckpointStore",
    "Database",
    "InMemoryCheckpointStore",
    "InMemoryOrderStore",
    "OrderRecord",
    "OrderStore",
]
