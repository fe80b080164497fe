"""
Tests for the in-memory queue store.

Covers:
  - Live-view change types (initial ADDED, ADDED / MODIFIED / REMOVED)
  - Conditional writes and missing documents
  - Fault injection hooks
  - Store factory
"""
import asyncio
from datetime import datetime

import pytest

from database.store_base import StoreConflictError, StoreError
from models.schemas import SERVER_TIMESTAMP, ChangeType, QueueStatus

PENDING = {"status": "pending"}


class _Recorder:
    def __init__(self):
        self.batches = []
        self.errors = []

    def on_batch(self, changes):
        self.batches.append(changes)

    def on_error(self, error):
        self.errors.append(error)

    def types(self):
        return [[(c.type, c.entry.id) for c in batch] for batch in self.batches]


async def _flush():
    for _ in range(3):
        await asyncio.sleep(0)


# ──────────────────────────────────────────────────────────────
#  Live view
# ──────────────────────────────────────────────────────────────

class TestLiveView:
    @pytest.mark.asyncio
    async def test_initial_snapshot_reports_matches_as_added(self, store, pending_entry):
        a = await store.add(pending_entry)
        await store.add({"telegram_id": "1", "message": "done", "status": "sent"})
        rec = _Recorder()
        store.subscribe(PENDING, rec.on_batch, rec.on_error)
        await _flush()
        assert rec.types() == [[(ChangeType.ADDED, a)]]

    @pytest.mark.asyncio
    async def test_empty_initial_snapshot_still_fires(self, store):
        rec = _Recorder()
        store.subscribe(PENDING, rec.on_batch, rec.on_error)
        await _flush()
        assert rec.batches == [[]]

    @pytest.mark.asyncio
    async def test_callbacks_never_inline(self, store, pending_entry):
        rec = _Recorder()
        store.subscribe(PENDING, rec.on_batch, rec.on_error)
        await store.add(pending_entry)
        assert rec.batches == []
        await _flush()
        assert len(rec.batches) == 2

    @pytest.mark.asyncio
    async def test_status_change_reports_removed(self, store, pending_entry):
        rec = _Recorder()
        store.subscribe(PENDING, rec.on_batch, rec.on_error)
        entry_id = await store.add(pending_entry)
        await store.update_fields(entry_id, {"status": "sent"})
        await _flush()
        assert rec.types()[1:] == [[(ChangeType.ADDED, entry_id)],
                                   [(ChangeType.REMOVED, entry_id)]]

    @pytest.mark.asyncio
    async def test_change_within_filter_reports_modified(self, store, pending_entry):
        rec = _Recorder()
        store.subscribe(PENDING, rec.on_batch, rec.on_error)
        entry_id = await store.add(pending_entry)
        await store.update_fields(entry_id, {"message": "Training moved to 6pm"})
        await _flush()
        assert rec.types()[-1] == [(ChangeType.MODIFIED, entry_id)]
        assert rec.batches[-1][0].entry.message == "Training moved to 6pm"

    @pytest.mark.asyncio
    async def test_cancel_stops_delivery(self, store, pending_entry):
        rec = _Recorder()
        handle = store.subscribe(PENDING, rec.on_batch, rec.on_error)
        handle.cancel()
        handle.cancel()
        await store.add(pending_entry)
        await _flush()
        assert rec.batches == []
        assert not handle.active
        assert store.active_subscriptions == 0

    @pytest.mark.asyncio
    async def test_malformed_document_reported_as_added(self, store):
        bad = await store.add({"message": "no recipient", "status": "pending"})
        rec = _Recorder()
        store.subscribe(PENDING, rec.on_batch, rec.on_error)
        await _flush()
        [[change]] = rec.batches
        assert (change.type, change.entry.id) == (ChangeType.ADDED, bad)
        assert change.entry.is_malformed
        assert "telegram_id" in change.entry.malformed_reason

    @pytest.mark.asyncio
    async def test_malformed_document_leaving_filter_reported_as_removed(self, store):
        rec = _Recorder()
        store.subscribe(PENDING, rec.on_batch, rec.on_error)
        bad = await store.add({"message": "no recipient", "status": "pending"})
        await store.update_fields(bad, {"status": "error", "error_message": "rejected"})
        await _flush()
        assert rec.types()[1:] == [[(ChangeType.ADDED, bad)], [(ChangeType.REMOVED, bad)]]
        entry = await store.get(bad)
        assert entry.status == QueueStatus.ERROR
        assert entry.error_message == "rejected"


# ──────────────────────────────────────────────────────────────
#  Writes
# ──────────────────────────────────────────────────────────────

class TestWrites:
    @pytest.mark.asyncio
    async def test_add_assigns_created_at(self, store, pending_entry):
        entry = await store.get(await store.add(pending_entry))
        assert isinstance(entry.created_at, datetime)
        assert entry.status == QueueStatus.PENDING

    @pytest.mark.asyncio
    async def test_server_timestamp_resolved(self, store, pending_entry):
        entry_id = await store.add(pending_entry)
        await store.update_fields(entry_id, {"status": "sent", "sent_at": SERVER_TIMESTAMP})
        entry = await store.get(entry_id)
        assert isinstance(entry.sent_at, datetime)

    @pytest.mark.asyncio
    async def test_precondition_conflict(self, store, pending_entry):
        entry_id = await store.add(pending_entry)
        seen = (await store.get(entry_id)).update_time
        await store.update_fields(entry_id, {"message": "edited"})
        with pytest.raises(StoreConflictError):
            await store.update_fields(entry_id, {"status": "sent"}, precondition=seen)

    @pytest.mark.asyncio
    async def test_precondition_match(self, store, pending_entry):
        entry_id = await store.add(pending_entry)
        seen = (await store.get(entry_id)).update_time
        await store.update_fields(entry_id, {"status": "sent"}, precondition=seen)
        assert (await store.get(entry_id)).status == QueueStatus.SENT

    @pytest.mark.asyncio
    async def test_missing_document(self, store):
        with pytest.raises(StoreError) as exc:
            await store.update_fields("nope", {"status": "sent"})
        assert exc.value.entry_id == "nope"
        assert await store.get("nope") is None


# ──────────────────────────────────────────────────────────────
#  Fault injection
# ──────────────────────────────────────────────────────────────

class TestFaults:
    @pytest.mark.asyncio
    async def test_fail_feeds(self, store):
        rec = _Recorder()
        handle = store.subscribe(PENDING, rec.on_batch, rec.on_error)
        assert store.fail_feeds(ConnectionError("idle stream")) == 1
        await _flush()
        assert [str(e) for e in rec.errors] == ["idle stream"]
        assert rec.batches == []
        assert not handle.active

    @pytest.mark.asyncio
    async def test_fail_next_subscribes(self, store):
        store.fail_next_subscribes(1, RuntimeError("permission denied"))
        first, second = _Recorder(), _Recorder()
        store.subscribe(PENDING, first.on_batch, first.on_error)
        store.subscribe(PENDING, second.on_batch, second.on_error)
        await _flush()
        assert len(first.errors) == 1 and first.batches == []
        assert second.errors == [] and second.batches == [[]]
        assert store.subscribe_count == 2

    @pytest.mark.asyncio
    async def test_fail_updates_counted(self, store, pending_entry):
        entry_id = await store.add(pending_entry)
        store.fail_updates(RuntimeError("unavailable"), count=2)
        for _ in range(2):
            with pytest.raises(RuntimeError):
                await store.update_fields(entry_id, {"status": "sent"})
        await store.update_fields(entry_id, {"status": "sent"})
        assert store.update_count == 1

    @pytest.mark.asyncio
    async def test_clear_faults(self, store, pending_entry):
        entry_id = await store.add(pending_entry)
        store.fail_updates(RuntimeError("unavailable"))
        store.clear_faults()
        await store.update_fields(entry_id, {"status": "sent"})


# ──────────────────────────────────────────────────────────────
#  Store Factory
# ──────────────────────────────────────────────────────────────

class TestStoreFactory:
    def test_default_is_memory(self):
        from database.store_factory import create_store
        from database.store_memory import InMemoryQueueStore
        assert isinstance(create_store({}), InMemoryQueueStore)

    def test_collection_passed_through(self):
        from database.store_factory import create_store
        assert create_store({"backend": "memory", "collection": "outbox"}).collection == "outbox"

    def test_singleton(self):
        from database.store_factory import create_store, get_store
        s1 = create_store({"backend": "memory"})
        assert get_store() is s1

    def test_firestore_backend(self):
        from unittest.mock import patch
        from database.store_factory import create_store
        with patch("database.store_firestore.FirestoreQueueStore") as fs, \
                patch("database.store_firestore.load_credentials", return_value=None):
            store = create_store({"backend": "firestore", "project_id": "team-app",
                                  "collection": "notification_queue"})
        assert store is fs.return_value
        fs.assert_called_once_with(project_id="team-app",
                                   collection="notification_queue", credentials=None)
