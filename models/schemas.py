"""
Core data models for NotifyRelay.
These are the universal types shared across the store, sink and consumer.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class QueueStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    ERROR = "error"


class ChangeType(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


class ConsumerState(str, Enum):
    IDLE = "idle"
    CONNECTED = "connected"
    BACKING_OFF = "backing_off"
    STOPPED = "stopped"


# ──────────────────────────────────────────────────────────────
#  Server timestamp sentinel
# ──────────────────────────────────────────────────────────────

class _ServerTimestamp:
    """Placeholder asking the store to fill in its own clock on write."""

    _instance: Optional[_ServerTimestamp] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()

# fields the consumer owns; a document cannot set them
_RESERVED_FIELDS = ("id", "update_time", "malformed_reason")


# ──────────────────────────────────────────────────────────────
#  Queue Entry
# ──────────────────────────────────────────────────────────────

class QueueEntry(BaseModel):
    """A document in the notification queue collection."""
    model_config = ConfigDict(extra="ignore")

    id: str
    telegram_id: str                          # recipient chat id
    message: str = ""                         # body, may carry HTML markup
    status: QueueStatus = QueueStatus.PENDING
    created_at: Optional[datetime] = None     # store-assigned
    sent_at: Optional[datetime] = None
    error_message: Optional[str] = None
    update_time: Optional[Any] = None         # store write time seen in the feed
    malformed_reason: Optional[str] = None    # set when the document failed validation

    @field_validator("telegram_id", mode="before")
    @classmethod
    def _coerce_recipient(cls, v: Any) -> str:
        # producers write chat ids as numbers or strings
        if v is None:
            raise ValueError("telegram_id is required")
        return str(v)

    @field_validator("message", mode="before")
    @classmethod
    def _coerce_body(cls, v: Any) -> Any:
        if v is None:
            return ""
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v

    @classmethod
    def from_document(cls, doc_id: str, data: dict[str, Any],
                      update_time: Any = None) -> QueueEntry:
        return cls(id=doc_id, update_time=update_time, **{
            k: v for k, v in data.items() if k not in _RESERVED_FIELDS
        })

    @classmethod
    def parse_document(cls, doc_id: str, data: dict[str, Any],
                       update_time: Any = None) -> QueueEntry:
        """
        Like from_document, but never raises. A document that fails validation
        comes back with malformed_reason set, so the consumer can close it out
        as an error instead of leaving it pending forever.
        """
        try:
            return cls.from_document(doc_id, data, update_time)
        except ValidationError as e:
            reason = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'document'}: {err['msg']}"
                for err in e.errors()
            )
            recipient = data.get("telegram_id")
            try:
                status = QueueStatus(data.get("status", QueueStatus.PENDING))
            except (ValueError, TypeError):
                status = QueueStatus.PENDING
            error_message = data.get("error_message")
            return cls(
                id=doc_id,
                telegram_id="" if recipient is None else str(recipient),
                status=status,
                error_message=error_message if isinstance(error_message, str) else None,
                update_time=update_time,
                malformed_reason=f"Malformed queue entry: {reason}",
            )

    @property
    def is_terminal(self) -> bool:
        return self.status in (QueueStatus.SENT, QueueStatus.ERROR)

    @property
    def is_malformed(self) -> bool:
        return self.malformed_reason is not None


# ──────────────────────────────────────────────────────────────
#  Feed events
# ──────────────────────────────────────────────────────────────

class DocumentChange(BaseModel):
    """One change in a live-view snapshot."""
    type: ChangeType
    entry: QueueEntry


class FeedBatch(BaseModel):
    """A snapshot callback: every change since the previous snapshot."""
    generation: int
    changes: list[DocumentChange] = []


class FeedError(BaseModel):
    """An error callback from a live-view subscription."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    generation: int
    error: Any
    kind: str = ""                            # "transport" when the store knows

    @property
    def detail(self) -> str:
        return str(self.error)


FeedEvent = Union[FeedBatch, FeedError]
