"""Telegram Bot API records, decoder and HTTP session."""

from .api_models import Chat, Message, Sticker, Update, User
from .client import SessionState, TelegramClient

__all__ = [
    "Chat",
    "Message",
    "SessionState",
    "Sticker",
    "TelegramClient",
    "Update",
    "User",
]
