"""
Logging setup — routes structlog and stdlib logging through one formatter.

Call configure_logging() once at process start. Console rendering by
default; JSON lines when log_json is set (for hosted log collectors).
"""
from __future__ import annotations

import logging
import re
import sys
from typing import Any

import structlog

_TOKEN_RE = re.compile(r"\bbot\d+:[A-Za-z0-9_\-]{20,}")


def redact_event(_, __, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Mask Telegram bot tokens, which appear in Bot API URLs."""
    for k, v in list(event_dict.items()):
        if isinstance(v, str):
            event_dict[k] = _TOKEN_RE.sub("bot***REDACTED***", v)
    return event_dict


def configure_logging(level: str = "INFO", json_logs: bool = False) -> None:
    shared_processors = [
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        redact_event,
    ]
    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            renderer,
        ],
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())

    # httpx logs every request URL, which carries the bot token
    logging.getLogger("httpx").setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared_processors,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
