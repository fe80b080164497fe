"""Delivery sinks and the Telegram command listener."""
from channels.base import (
    DeliverySink,
    ChannelError,
    DeliveryError,
    SinkMetrics,
)
from channels.telegram_adapter import TelegramAdapter, TelegramBotClient, TelegramApiError
from channels.memory_adapter import RecordingSink
from channels.command_listener import CommandListener

__all__ = [
    "DeliverySink", "ChannelError", "DeliveryError", "SinkMetrics",
    "TelegramAdapter", "TelegramBotClient", "TelegramApiError",
    "RecordingSink", "CommandListener",
]
