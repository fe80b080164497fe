"""Tests for queue entry parsing and feed event models."""
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from models.schemas import (
    SERVER_TIMESTAMP, ChangeType, DocumentChange, FeedBatch, FeedError,
    QueueEntry, QueueStatus, _ServerTimestamp,
)


class TestQueueEntry:
    def test_from_document(self):
        created = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        entry = QueueEntry.from_document("doc1", {
            "telegram_id": "42",
            "message": "Training at 5pm",
            "status": "pending",
            "created_at": created,
        }, update_time=7)
        assert entry.id == "doc1"
        assert entry.telegram_id == "42"
        assert entry.status == QueueStatus.PENDING
        assert entry.created_at == created
        assert entry.update_time == 7
        assert entry.sent_at is None

    def test_numeric_recipient_coerced(self):
        entry = QueueEntry.from_document("d", {"telegram_id": 123456789, "message": "x"})
        assert entry.telegram_id == "123456789"

    def test_missing_recipient_rejected(self):
        with pytest.raises(ValidationError):
            QueueEntry.from_document("d", {"message": "x"})

    def test_null_recipient_rejected(self):
        with pytest.raises(ValidationError):
            QueueEntry.from_document("d", {"telegram_id": None, "message": "x"})

    def test_unknown_status_rejected(self):
        with pytest.raises(ValidationError):
            QueueEntry.from_document("d", {"telegram_id": "1", "status": "queued"})

    def test_extra_fields_ignored(self):
        entry = QueueEntry.from_document("d", {
            "telegram_id": "1", "message": "x", "team": "U12", "priority": 3,
        })
        assert not hasattr(entry, "team")

    def test_document_cannot_override_id(self):
        entry = QueueEntry.from_document("real", {"id": "fake", "telegram_id": "1"})
        assert entry.id == "real"

    def test_is_terminal(self):
        assert not QueueEntry(id="a", telegram_id="1").is_terminal
        assert QueueEntry(id="a", telegram_id="1", status="sent").is_terminal
        assert QueueEntry(id="a", telegram_id="1", status="error").is_terminal

    def test_numeric_message_coerced(self):
        assert QueueEntry.from_document("d", {"telegram_id": "1", "message": 12345}).message == "12345"
        assert QueueEntry.from_document("d", {"telegram_id": "1", "message": None}).message == ""

    def test_structured_message_rejected(self):
        with pytest.raises(ValidationError):
            QueueEntry.from_document("d", {"telegram_id": "1", "message": {"text": "hi"}})

    def test_document_cannot_mark_itself_malformed(self):
        entry = QueueEntry.from_document("d", {"telegram_id": "1", "malformed_reason": "x"})
        assert not entry.is_malformed


class TestParseDocument:
    def test_valid_document(self):
        entry = QueueEntry.parse_document("d", {"telegram_id": 5, "message": "x"}, update_time=3)
        assert not entry.is_malformed
        assert entry.telegram_id == "5"
        assert entry.update_time == 3

    def test_missing_recipient(self):
        entry = QueueEntry.parse_document("d", {"message": "x", "status": "pending"}, update_time=3)
        assert entry.is_malformed
        assert entry.malformed_reason.startswith("Malformed queue entry: ")
        assert "telegram_id" in entry.malformed_reason
        assert (entry.id, entry.telegram_id, entry.status) == ("d", "", QueueStatus.PENDING)
        assert entry.update_time == 3

    def test_keeps_stored_outcome(self):
        entry = QueueEntry.parse_document("d", {
            "message": {"text": "x"}, "telegram_id": "9",
            "status": "error", "error_message": "rejected",
        })
        assert entry.is_malformed
        assert "message" in entry.malformed_reason
        assert entry.status == QueueStatus.ERROR
        assert entry.error_message == "rejected"
        assert entry.telegram_id == "9"

    def test_unknown_status_falls_back_to_pending(self):
        entry = QueueEntry.parse_document("d", {"telegram_id": "1", "status": "queued"})
        assert entry.is_malformed
        assert "status" in entry.malformed_reason
        assert entry.status == QueueStatus.PENDING


class TestFeedEvents:
    def test_batch_defaults_empty(self):
        assert FeedBatch(generation=3).changes == []

    def test_change_holds_entry(self):
        entry = QueueEntry(id="a", telegram_id="1")
        change = DocumentChange(type="added", entry=entry)
        assert change.type == ChangeType.ADDED
        assert change.entry.id == "a"

    def test_error_detail(self):
        event = FeedError(generation=1, error=ConnectionError("idle stream"))
        assert event.detail == "idle stream"
        assert event.kind == ""


class TestServerTimestamp:
    def test_singleton(self):
        assert _ServerTimestamp() is SERVER_TIMESTAMP

    def test_repr(self):
        assert repr(SERVER_TIMESTAMP) == "SERVER_TIMESTAMP"
