"""
Channel Handlers

Webhook handlers for the chat channels that feed the capture pipeline.
Each handler converts channel-specific updates to a common Message format
and delivers replies back to the sender.

Available Handlers:
- TelegramHandler: Telegram Bot API updates (text and photos)
- LineHandler: LINE Messaging API events (text)
"""

from .base import BaseHandler, Message
from .line import LineHandler
from .telegram import TelegramAPIError, TelegramHandler, TelegramPhoto

__all__ = [
    "BaseHandler",
    "Message",
    "LineHandler",
    "TelegramAPIError",
    "TelegramHandler",
    "TelegramPhoto",
]
