"""
Command Listener — answers /start with the web-app menu.

Long-polls getUpdates and replies to every /start message with a static
greeting plus an inline keyboard button that opens the web app. Anything else
is ignored. Runs as a background task inside the FastAPI lifespan.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Optional

import httpx

from channels.telegram_adapter import TelegramApiError, TelegramBotClient

logger = structlog.get_logger()

START_COMMAND = "/start"
START_GREETING = "Привет! Нажми кнопку ниже, чтобы открыть приложение:"
START_BUTTON_TEXT = "🎾 Открыть приложение"


def build_start_menu(web_app_url: str) -> dict[str, Any]:
    """Inline keyboard with a single web-app button."""
    return {
        "inline_keyboard": [
            [{"text": START_BUTTON_TEXT, "web_app": {"url": web_app_url}}],
        ]
    }


class CommandListener:
    """
    Polls Telegram for incoming messages and replies to /start.

    Usage:
        listener = CommandListener(client, web_app_url)
        await listener.start()
        await listener.stop()
    """

    def __init__(
        self,
        client: TelegramBotClient,
        web_app_url: str = "",
        poll_timeout_s: int = 30,
        error_pause_s: float = 5.0,
    ):
        self.client = client
        self.web_app_url = web_app_url
        self.poll_timeout_s = poll_timeout_s
        self.error_pause_s = error_pause_s
        self._offset: Optional[int] = None
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the polling loop as a background task."""
        self._running = True
        self._task = asyncio.create_task(self._poll_loop(), name="command_listener")
        logger.info("command_listener_started", web_app=bool(self.web_app_url))

    async def stop(self) -> None:
        """Stop accepting new input."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("command_listener_stopped")

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                break
            except TelegramApiError as e:
                # 401/404 mean the token itself is wrong; keep polling but shout
                if e.error_code in (401, 404):
                    logger.error("polling_error", code=e.error_code, error=e.description)
                else:
                    logger.warning("polling_warning", code=e.error_code, error=e.description)
                await asyncio.sleep(e.retry_after or self.error_pause_s)
            except httpx.HTTPError as e:
                logger.warning("polling_warning", error=str(e) or type(e).__name__)
                await asyncio.sleep(self.error_pause_s)

    async def poll_once(self) -> int:
        """Fetch one page of updates and handle them. Returns the number handled."""
        updates = await self.client.get_updates(offset=self._offset, timeout=self.poll_timeout_s)
        for update in updates:
            self._offset = update["update_id"] + 1
            await self.handle_update(update)
        return len(updates)

    async def handle_update(self, update: dict[str, Any]) -> bool:
        """Reply to /start; returns True when a reply was sent."""
        message = update.get("message") or {}
        text = (message.get("text") or "").strip()
        chat_id = (message.get("chat") or {}).get("id")
        command = text.split(maxsplit=1)[0].split("@", 1)[0] if text else ""
        if chat_id is None or command != START_COMMAND:
            return False

        markup = build_start_menu(self.web_app_url) if self.web_app_url else None
        try:
            await self.client.send_message(str(chat_id), START_GREETING, reply_markup=markup)
        except (TelegramApiError, httpx.HTTPError) as e:
            logger.warning("start_reply_failed", chat_id=chat_id, error=str(e))
            return False
        logger.info("start_menu_sent", chat_id=chat_id)
        return True
