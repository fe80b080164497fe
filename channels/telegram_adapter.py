"""
Telegram Channel Adapter — Bot API integration over httpx.

Provides:
- TelegramBotClient: thin async Bot API client (sendMessage, getMe, getUpdates)
- TelegramApiError: Bot API failures carrying error_code / description
- TelegramAdapter: DeliverySink sending queue entries as chat messages

sendMessage is never retried. getMe and getUpdates are read-only and are
retried on transport errors with tenacity.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from channels.base import DeliveryError, DeliverySink

logger = structlog.get_logger()

TELEGRAM_API_URL = "https://api.telegram.org"


class TelegramApiError(Exception):
    """The Bot API answered with ok=false."""

    def __init__(self, description: str, error_code: Optional[int] = None,
                 retry_after: Optional[int] = None):
        self.description = description
        self.error_code = error_code
        self.retry_after = retry_after
        super().__init__(description)


# ══════════════════════════════════════════════════════════════
#  BOT API CLIENT
# ══════════════════════════════════════════════════════════════

class TelegramBotClient:
    """Minimal async client for the Telegram Bot API."""

    def __init__(
        self,
        token: str,
        api_base_url: str = TELEGRAM_API_URL,
        timeout_s: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not token:
            raise ValueError("Telegram bot token is required")
        self.token = token
        self.api_base_url = api_base_url.rstrip("/")
        self.timeout_s = timeout_s
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                base_url=f"{self.api_base_url}/bot{self.token}/",
                timeout=self.timeout_s,
                transport=self._transport,
            )
        return self.client

    async def call(self, method: str, payload: dict[str, Any] = None,
                   timeout: Optional[float] = None) -> Any:
        """POST a Bot API method and return its `result`, raising TelegramApiError on ok=false."""
        client = await self._get_client()
        kwargs: dict[str, Any] = {"json": payload or {}}
        if timeout is not None:
            kwargs["timeout"] = timeout
        response = await client.post(method, **kwargs)

        try:
            data = response.json()
        except ValueError:
            response.raise_for_status()
            raise TelegramApiError(f"Invalid JSON from Telegram ({response.status_code})",
                                   response.status_code)

        if not isinstance(data, dict) or not data.get("ok", False):
            data = data if isinstance(data, dict) else {}
            params = data.get("parameters") or {}
            raise TelegramApiError(
                data.get("description") or f"Telegram HTTP {response.status_code}",
                data.get("error_code", response.status_code),
                params.get("retry_after"),
            )
        return data.get("result")

    async def send_message(self, chat_id: str, text: str, parse_mode: Optional[str] = None,
                           reply_markup: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        payload: dict[str, Any] = {"chat_id": chat_id, "text": text}
        if parse_mode:
            payload["parse_mode"] = parse_mode
        if reply_markup:
            payload["reply_markup"] = reply_markup
        return await self.call("sendMessage", payload)

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        reraise=True,
    )
    async def get_me(self) -> dict[str, Any]:
        return await self.call("getMe")

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        reraise=True,
    )
    async def get_updates(self, offset: Optional[int] = None, timeout: int = 30) -> list[dict[str, Any]]:
        payload: dict[str, Any] = {"timeout": timeout, "allowed_updates": ["message"]}
        if offset is not None:
            payload["offset"] = offset
        # the HTTP timeout must outlast the long-poll window
        return await self.call("getUpdates", payload, timeout=self.timeout_s + timeout) or []

    async def close(self) -> None:
        if self.client is not None and not self.client.is_closed:
            await self.client.aclose()


# ══════════════════════════════════════════════════════════════
#  TELEGRAM ADAPTER
# ══════════════════════════════════════════════════════════════

class TelegramAdapter(DeliverySink):
    """
    Delivers queue entries as Telegram chat messages.

    Config keys: bot_token, api_base_url, parse_mode, timeout_s.
    A prebuilt TelegramBotClient may be passed in instead of a token,
    which lets the command listener share the same HTTP client.
    """

    channel = "telegram"

    def __init__(self, client: Optional[TelegramBotClient] = None):
        super().__init__()
        self.client = client
        self._default_parse_mode: Optional[str] = "HTML"

    async def initialize(self, config: dict[str, Any]) -> None:
        self._config = config
        self._default_parse_mode = config.get("parse_mode", "HTML") or None
        if self.client is None:
            self.client = TelegramBotClient(
                token=config.get("bot_token", ""),
                api_base_url=config.get("api_base_url", TELEGRAM_API_URL),
                timeout_s=float(config.get("timeout_s", 30.0)),
            )
        self._initialized = True
        logger.info("telegram_sink_initialized", parse_mode=self._default_parse_mode)

    async def verify(self) -> dict[str, Any]:
        """Check the token against getMe; returns the bot profile."""
        me = await self.client.get_me()
        logger.info("telegram_bot_verified", username=me.get("username"))
        return me

    async def _do_send(self, recipient_id: str, body: str,
                       parse_mode: Optional[str]) -> dict[str, Any]:
        try:
            result = await self.client.send_message(
                recipient_id, body, parse_mode=parse_mode or self._default_parse_mode,
            )
        except TelegramApiError as e:
            raise DeliveryError(
                e.description, self.channel, recipient_id,
                retryable=e.error_code == 429 or (e.error_code or 0) >= 500,
                error_code=e.error_code,
            ) from e
        except httpx.HTTPError as e:
            raise DeliveryError(str(e) or type(e).__name__, self.channel,
                                recipient_id, retryable=True) from e

        msg_id = (result or {}).get("message_id")
        logger.info("telegram_message_sent", chat_id=recipient_id, message_id=msg_id)
        return {"status": "sent", "channel_message_id": msg_id}

    async def shutdown(self) -> None:
        if self.client is not None:
            await self.client.close()
