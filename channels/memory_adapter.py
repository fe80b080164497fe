"""
In-memory delivery sink — records every send instead of talking to a network.

Useful for local development (sink_backend: memory) and tests. Failures can be
scripted per recipient to exercise the consumer's error path.
"""
from __future__ import annotations

import asyncio
import uuid
import structlog
from dataclasses import dataclass
from typing import Any, Optional

from channels.base import DeliveryError, DeliverySink

logger = structlog.get_logger()


@dataclass
class SentMessage:
    recipient_id: str
    body: str
    parse_mode: Optional[str]
    message_id: str


class RecordingSink(DeliverySink):
    """Delivery sink that keeps every attempted message in memory."""

    channel = "memory"

    def __init__(self, delay_s: float = 0.0):
        super().__init__()
        self.delay_s = delay_s
        self.sent: list[SentMessage] = []
        self.attempts: list[tuple[str, str]] = []
        self._failures: dict[str, str] = {}

    async def initialize(self, config: dict[str, Any]) -> None:
        self._config = config
        self._initialized = True

    def fail_for(self, recipient_id: str, reason: str) -> None:
        """Make every send to recipient_id fail with reason."""
        self._failures[str(recipient_id)] = reason

    def calls_for(self, recipient_id: str) -> int:
        return sum(1 for r, _ in self.attempts if r == str(recipient_id))

    async def _do_send(self, recipient_id: str, body: str,
                       parse_mode: Optional[str]) -> dict[str, Any]:
        self.attempts.append((recipient_id, body))
        if self.delay_s:
            await asyncio.sleep(self.delay_s)

        reason = self._failures.get(recipient_id)
        if reason is not None:
            raise DeliveryError(reason, self.channel, recipient_id)

        msg = SentMessage(recipient_id, body, parse_mode, uuid.uuid4().hex[:12])
        self.sent.append(msg)
        logger.info("memory_message_sent", chat_id=recipient_id, message_id=msg.message_id)
        return {"status": "sent", "channel_message_id": msg.message_id}
