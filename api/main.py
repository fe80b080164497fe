"""
FastAPI Application — liveness endpoints + background relay workers.

Provides:
- GET / and GET /health for host-platform keep-alive checks
- Lifespan hook starting the queue consumer and the /start command listener,
  and stopping both on shutdown (uvicorn turns SIGTERM into lifespan exit)
- main(): validate configuration, configure logging, serve
"""
from __future__ import annotations

import sys
import structlog
from datetime import datetime, timezone
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from config.settings import ConfigError, Settings, get_settings
from channels.base import DeliverySink
from channels.command_listener import CommandListener
from channels.memory_adapter import RecordingSink
from channels.telegram_adapter import TelegramAdapter, TelegramBotClient
from database.store_base import QueueStore
from database.store_factory import create_store
from job_queue.consumer import QueueConsumer
from job_queue.ledger import DispatchLedger
from utils.log import configure_logging

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

class Relay:
    """The running pieces of one process: store, sink, consumer, listener."""

    def __init__(
        self,
        settings: Settings,
        store: Optional[QueueStore] = None,
        sink: Optional[DeliverySink] = None,
        listener: Optional[CommandListener] = None,
    ):
        self.settings = settings
        self.store = store
        self.sink = sink
        self.listener = listener
        self.consumer: Optional[QueueConsumer] = None
        self.started_at: Optional[datetime] = None

    def _build(self) -> None:
        s = self.settings
        if self.store is None:
            self.store = create_store({
                "backend": s.store.backend,
                "collection": s.store.collection,
                "project_id": s.store.project_id,
                "credentials_file": s.store.credentials_file,
                "credentials_json": s.store.credentials_json,
            })

        if self.sink is None:
            if s.sink_backend == "memory":
                self.sink = RecordingSink()
            else:
                client = TelegramBotClient(
                    token=s.telegram.bot_token,
                    api_base_url=s.telegram.api_base_url,
                    timeout_s=s.telegram.timeout_s,
                )
                self.sink = TelegramAdapter(client)
                if self.listener is None and s.telegram.listener_enabled:
                    self.listener = CommandListener(
                        client,
                        web_app_url=s.telegram.web_app_url,
                        poll_timeout_s=s.telegram.poll_timeout_s,
                    )

        self.consumer = QueueConsumer(
            self.store,
            self.sink,
            ledger=DispatchLedger(s.feed.ledger_ttl_s, s.feed.ledger_max_size),
            backoff_floor_s=s.feed.backoff_floor_s,
            backoff_ceiling_s=s.feed.backoff_ceiling_s,
        )

    async def start(self) -> None:
        self._build()
        await self.sink.initialize({
            "bot_token": self.settings.telegram.bot_token,
            "api_base_url": self.settings.telegram.api_base_url,
            "parse_mode": self.settings.telegram.parse_mode,
            "timeout_s": self.settings.telegram.timeout_s,
        })
        await self.consumer.start_background()
        if self.listener is not None:
            await self.listener.start()
        self.started_at = datetime.now(timezone.utc)
        logger.info("notify_relay_started",
                    store=type(self.store).__name__,
                    sink=type(self.sink).__name__,
                    collection=self.store.collection)

    async def stop(self) -> None:
        logger.info("notify_relay_stopping")
        if self.consumer is not None:
            await self.consumer.stop()
        if self.listener is not None:
            await self.listener.stop()
        if self.sink is not None:
            await self.sink.shutdown()
        if self.store is not None:
            await self.store.close()
        logger.info("notify_relay_stopped")

    async def health(self) -> dict[str, Any]:
        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "consumer": self.consumer.health() if self.consumer else None,
            "sink": await self.sink.health_check() if self.sink else None,
            "listener": self.listener.is_running if self.listener else False,
        }


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

def create_app(
    settings: Optional[Settings] = None,
    store: Optional[QueueStore] = None,
    sink: Optional[DeliverySink] = None,
    listener: Optional[CommandListener] = None,
) -> FastAPI:
    settings = settings or get_settings()
    relay = Relay(settings, store=store, sink=sink, listener=listener)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await relay.start()
        yield
        await relay.stop()

    app = FastAPI(
        title=f"{settings.app_name} API",
        description="Relays pending queue entries to Telegram",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.relay = relay

    @app.get("/", response_class=PlainTextResponse)
    async def root():
        return f"{settings.app_name} is running and healthy!"

    @app.get("/health")
    async def health():
        return await relay.health()

    return app


def main() -> None:
    configure_logging()
    try:
        settings = get_settings()
        settings.validate()
    except ConfigError as e:
        logger.critical("startup_config_invalid", error=str(e))
        sys.exit(1)
    configure_logging(settings.log_level, settings.log_json)
    logger.info("notify_relay_booting", app=settings.app_name,
                store=settings.store.backend, sink=settings.sink_backend)

    import uvicorn
    uvicorn.run(create_app(settings), host=settings.server.host, port=settings.server.port)


if __name__ == "__main__":
    main()
