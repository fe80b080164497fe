"""
Firestore queue store — production backend.

Live view:  sync firestore.Client on_snapshot watch. The watch runs on its own
            thread, so every callback is marshalled onto the asyncio loop with
            call_soon_threadsafe. The Python watch has no error callback; a
            monitor task reports a watch that stopped without being cancelled
            as a transport-level feed error.
Writes:     firestore.AsyncClient partial updates, which fail only for a missing
            document. A precondition, when given, becomes
            write_option(last_update_time=...).

Credentials, in order: inline service-account JSON, service-account file,
application default credentials.
"""
from __future__ import annotations

import asyncio
import json
import structlog
from enum import Enum
from typing import Any, Optional

from google.api_core import exceptions as google_exceptions
from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter
from google.oauth2 import service_account

from database.store_base import (
    BatchCallback, ErrorCallback, FeedHandle, QueueStore,
    StoreConflictError, StoreError,
)
from models.schemas import SERVER_TIMESTAMP, ChangeType, DocumentChange, QueueEntry

logger = structlog.get_logger()


class WatchClosedError(ConnectionError):
    """The Firestore watch stream stopped on its own."""
    kind = "transport"


def load_credentials(credentials_json: str = "", credentials_file: str = ""):
    """Build service-account credentials, or None to fall back to ADC."""
    if credentials_json:
        return service_account.Credentials.from_service_account_info(json.loads(credentials_json))
    if credentials_file:
        return service_account.Credentials.from_service_account_file(credentials_file)
    return None


class _WatchHandle(FeedHandle):

    def __init__(self, watch: Any, monitor: Optional[asyncio.Task] = None):
        self._watch = watch
        self._monitor = monitor
        self._cancelled = False

    @property
    def active(self) -> bool:
        return not self._cancelled and bool(self._watch.is_active)

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if self._monitor is not None:
            self._monitor.cancel()
        try:
            self._watch.unsubscribe()
        except Exception as e:
            # the watch may already be torn down after a stream error
            logger.debug("firestore_unsubscribe_failed", error=str(e))


class FirestoreQueueStore(QueueStore):
    """Queue store backed by a Firestore collection."""

    def __init__(
        self,
        project_id: str,
        collection: str = "notification_queue",
        credentials: Any = None,
        monitor_interval_s: float = 5.0,
        client: Any = None,
        async_client: Any = None,
    ):
        self.collection = collection
        self.monitor_interval_s = monitor_interval_s
        self._client = client or firestore.Client(project=project_id, credentials=credentials)
        self._async_client = async_client or firestore.AsyncClient(
            project=project_id, credentials=credentials,
        )
        logger.info("firestore_store_created", project=project_id, collection=collection)

    # ── Live view ─────────────────────────────────────────────

    def subscribe(self, filters: dict[str, Any], on_batch: BatchCallback,
                  on_error: ErrorCallback) -> FeedHandle:
        loop = asyncio.get_running_loop()
        query = self._client.collection(self.collection)
        for field_name, value in filters.items():
            query = query.where(filter=FieldFilter(field_name, "==", value))

        def on_snapshot(docs, changes, read_time):
            try:
                batch = self._convert(changes)
            except Exception as e:
                loop.call_soon_threadsafe(on_error, e)
                return
            loop.call_soon_threadsafe(on_batch, batch)

        watch = query.on_snapshot(on_snapshot)
        handle = _WatchHandle(watch)
        handle._monitor = loop.create_task(self._monitor(handle, on_error))
        return handle

    async def _monitor(self, handle: _WatchHandle, on_error: ErrorCallback) -> None:
        while True:
            await asyncio.sleep(self.monitor_interval_s)
            if handle._cancelled:
                return
            if not handle._watch.is_active:
                handle._cancelled = True
                on_error(WatchClosedError("Firestore listen stream closed"))
                return

    @staticmethod
    def _convert(changes: list[Any]) -> list[DocumentChange]:
        batch = []
        for change in changes:
            doc = change.document
            entry = QueueEntry.parse_document(doc.id, doc.to_dict() or {},
                                              update_time=doc.update_time)
            if entry.is_malformed:
                logger.warning("queue_entry_malformed", entry_id=doc.id,
                               error=entry.malformed_reason)
            batch.append(DocumentChange(type=ChangeType(change.type.name.lower()), entry=entry))
        return batch

    # ── Reads / writes ────────────────────────────────────────

    @staticmethod
    def _resolve(fields: dict[str, Any]) -> dict[str, Any]:
        resolved = {}
        for k, v in fields.items():
            if v is SERVER_TIMESTAMP:
                v = firestore.SERVER_TIMESTAMP
            elif isinstance(v, Enum):
                v = v.value
            resolved[k] = v
        return resolved

    async def update_fields(self, entry_id: str, fields: dict[str, Any],
                            precondition: Optional[Any] = None) -> None:
        ref = self._async_client.collection(self.collection).document(entry_id)
        option = None
        if precondition is not None:
            option = self._async_client.write_option(last_update_time=precondition)
        try:
            await ref.update(self._resolve(fields), option=option)
        except google_exceptions.NotFound as e:
            raise StoreError(f"No document to update: {entry_id}", entry_id) from e
        except google_exceptions.FailedPrecondition as e:
            raise StoreConflictError(f"Document changed since it was read: {entry_id}",
                                     entry_id) from e
        except google_exceptions.GoogleAPICallError as e:
            raise StoreError(str(e), entry_id) from e

    async def add(self, data: dict[str, Any]) -> str:
        doc = self._resolve(data)
        doc.setdefault("created_at", firestore.SERVER_TIMESTAMP)
        _, ref = await self._async_client.collection(self.collection).add(doc)
        return ref.id

    async def get(self, entry_id: str) -> Optional[QueueEntry]:
        snap = await self._async_client.collection(self.collection).document(entry_id).get()
        if not snap.exists:
            return None
        return QueueEntry.parse_document(snap.id, snap.to_dict() or {},
                                         update_time=snap.update_time)

    async def close(self) -> None:
        # neither wrapper client exposes close(); release their gRPC channels
        self._client._firestore_api.transport.close()
        await self._async_client._firestore_api.transport.close()
        logger.info("firestore_store_closed", collection=self.collection)
