"""
Store Factory — Create the right queue store backend from configuration.

Configuration in settings.yaml:
    store:
      # "memory"     — In-memory dicts (development, testing)
      # "firestore"  — Firestore collection (production)
      backend: "memory"
      collection: "notification_queue"
      project_id: "${FIREBASE_PROJECT_ID}"
      credentials_file: "${GOOGLE_APPLICATION_CREDENTIALS}"

Usage:
    from database.store_factory import create_store, get_store
    store = create_store(config)     # Create from config dict
    store = get_store()              # Get singleton instance
"""
from __future__ import annotations

import structlog
from typing import Optional

from database.store_base import QueueStore

logger = structlog.get_logger()

_instance: Optional[QueueStore] = None


def create_store(config: dict = None) -> QueueStore:
    """
    Factory: create the appropriate queue store backend.

    Args:
        config: dict with keys:
            backend: "memory" | "firestore"  (default: "memory")
            collection: str (default: "notification_queue")
            project_id, credentials_file, credentials_json: Firestore only
    """
    global _instance
    if _instance is not None:
        return _instance

    config = config or {}
    backend = config.get("backend", "memory")
    collection = config.get("collection", "notification_queue")

    if backend == "firestore":
        from database.store_firestore import FirestoreQueueStore, load_credentials
        credentials = load_credentials(
            credentials_json=config.get("credentials_json", ""),
            credentials_file=config.get("credentials_file", ""),
        )
        _instance = FirestoreQueueStore(
            project_id=config.get("project_id", ""),
            collection=collection,
            credentials=credentials,
        )
        logger.info("store_created", backend="firestore", collection=collection)

    else:  # "memory" or default
        from database.store_memory import InMemoryQueueStore
        _instance = InMemoryQueueStore(collection=collection)
        logger.info("store_created", backend="memory", collection=collection)

    return _instance


def get_store() -> QueueStore:
    """Return the singleton store instance, creating a memory store if none exists."""
    global _instance
    if _instance is None:
        _instance = create_store()
    return _instance


def reset_store() -> None:
    """Reset the singleton (for testing)."""
    global _instance
    _instance = None
