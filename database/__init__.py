"""
Database layer — queue store backends.

Backends:
  - In-memory (dict-based live view, for development/testing)
  - Firestore (production)

Quick start:
  from database import create_store, get_store
  store = create_store({"backend": "memory"})
  entry = await store.get("abc123")

The Firestore backend is imported lazily by the factory.
"""
from database.store_base import (
    QueueStore, FeedHandle, StoreError, StoreConflictError,
)
from database.store_memory import InMemoryQueueStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # Store interface
    "QueueStore", "FeedHandle", "StoreError", "StoreConflictError",
    # Store backends
    "InMemoryQueueStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
