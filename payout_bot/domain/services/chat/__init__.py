"""
Chat Transport Abstraction Layer

Sends, edits and deletes chat messages. The controller only talks to
``BaseChatTransport`` so the Bot API client can be replaced in tests.
"""
from payout_bot.domain.services.chat.base_transport import (
    BaseChatTransport,
    Button,
    ReplyOptions,
)
from payout_bot.domain.services.chat.telegram_transport import TelegramTransport

__all__ = ["BaseChatTransport", "Button", "ReplyOptions", "TelegramTransport"]
