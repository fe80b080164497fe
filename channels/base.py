"""
Delivery Sinks — base infrastructure for every outbound messaging endpoint.

Provides:
- ChannelError / DeliveryError: structured error hierarchy
- SinkMetrics: per-sink send/fail/latency tracking
- DeliverySink: abstract base wrapping every send with metrics and logging

A sink attempts each send exactly once. Retrying a send that may already
have reached the recipient would risk a duplicate notification, so retries
belong only to idempotent calls inside concrete sinks.
"""
from __future__ import annotations

import abc
import time
from collections import deque
import structlog
from typing import Any, Optional

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all sink operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class DeliveryError(ChannelError):
    """The sink rejected the message or could not reach the recipient."""

    def __init__(self, message: str, channel: str = "", recipient: str = "",
                 retryable: bool = False, error_code: Optional[int] = None):
        self.recipient = recipient
        self.error_code = error_code
        super().__init__(message, channel, retryable)


class SinkNotInitializedError(ChannelError):
    def __init__(self, channel: str = ""):
        super().__init__(f"Sink {channel} used before initialize()", channel)


# ══════════════════════════════════════════════════════════════
#  SINK METRICS
# ══════════════════════════════════════════════════════════════

class SinkMetrics:
    """Send / failure counters plus a rolling window of latencies and failure reasons."""

    def __init__(self, channel: str, window: int = 500):
        self.channel = channel
        self.sent = 0
        self.failed = 0
        self.latencies_ms: deque[float] = deque(maxlen=window)
        self.failure_reasons: deque[str] = deque(maxlen=20)

    def observe_success(self, latency_ms: float) -> None:
        self.sent += 1
        self.latencies_ms.append(latency_ms)

    def observe_failure(self, reason: str) -> None:
        self.failed += 1
        self.failure_reasons.append(reason)

    def snapshot(self) -> dict[str, Any]:
        attempts = self.sent + self.failed
        window = list(self.latencies_ms)
        return {
            "channel": self.channel,
            "sent": self.sent,
            "failed": self.failed,
            "mean_latency_ms": round(sum(window) / len(window), 1) if window else 0.0,
            "failure_ratio": round(self.failed / attempts, 4) if attempts else 0.0,
            "last_failures": list(self.failure_reasons)[-5:],
        }


# ══════════════════════════════════════════════════════════════
#  DELIVERY SINK — Abstract Base
# ══════════════════════════════════════════════════════════════

class DeliverySink(abc.ABC):
    """
    Base class for all delivery sinks.

    Subclasses implement _do_send. The base class wraps every send with
    metrics and turns unexpected exceptions into DeliveryError so callers
    only ever see one failure type.
    """

    channel: str = ""

    def __init__(self):
        self._initialized = False
        self._config: dict[str, Any] = {}
        self._metrics = SinkMetrics(self.channel)

    # ── Abstract hooks ────────────────────────────────────────

    @abc.abstractmethod
    async def _do_send(self, recipient_id: str, body: str,
                       parse_mode: Optional[str]) -> dict[str, Any]:
        ...

    @abc.abstractmethod
    async def initialize(self, config: dict[str, Any]) -> None:
        ...

    # ── Public send ───────────────────────────────────────────

    async def send_message(self, recipient_id: str, body: str,
                           parse_mode: Optional[str] = None) -> dict[str, Any]:
        """
        Deliver one message. Returns the sink's result dict on success,
        raises DeliveryError on failure. Never retries.
        """
        if not self._initialized:
            raise SinkNotInitializedError(self.channel)

        start = time.monotonic()
        try:
            result = await self._do_send(recipient_id, body, parse_mode)
        except DeliveryError as e:
            self._metrics.observe_failure(str(e))
            raise
        except Exception as e:
            self._metrics.observe_failure(str(e))
            raise DeliveryError(str(e) or type(e).__name__, self.channel,
                                recipient_id, retryable=True) from e

        latency = (time.monotonic() - start) * 1000
        self._metrics.observe_success(latency)
        result.setdefault("status", "sent")
        result["latency_ms"] = round(latency, 1)
        return result

    # ── Health ────────────────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "initialized": self._initialized,
            "metrics": self._metrics.snapshot(),
        }

    async def shutdown(self) -> None:
        pass
