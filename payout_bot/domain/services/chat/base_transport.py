"""
Chat transport interface - Dependency Inversion.

The conversation controller only talks to this interface; the Telegram
adapter (or a test fake) implements it.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Union


@dataclass(frozen=True)
class Button:
    """An inline action: a label plus either a callback token or a URL"""
    label: str
    callback_data: Optional[str] = None
    url: Optional[str] = None


@dataclass
class ReplyOptions:
    """
    Rendering hints for an outbound message.

    Attributes:
        parse_mode: "HTML" for rich text, None for plain text.
        buttons: rows of inline buttons.
        force_reply: ask the client to open the reply box.
        placeholder: hint shown in the reply box (with force_reply).
    """
    parse_mode: Optional[str] = "HTML"
    buttons: list[list[Button]] = field(default_factory=list)
    force_reply: bool = False
    placeholder: Optional[str] = None


ChatId = Union[int, str]


class BaseChatTransport(ABC):
    """
    Outbound reply surface.

    Implementations own the HTTP details and circuit breaking. Delivery
    failures are logged by the implementation and reported as a ``None``
    message id (send) or ``False`` (edit/delete); they never raise into the
    conversation flow.
    """

    @abstractmethod
    async def send_message(
        self,
        chat_id: ChatId,
        text: str,
        options: Optional[ReplyOptions] = None,
    ) -> Optional[int]:
        """
        Send a message.

        Returns:
            The message id, or None when delivery failed.
        """

    @abstractmethod
    async def edit_message(
        self,
        chat_id: ChatId,
        message_id: int,
        text: Optional[str] = None,
        options: Optional[ReplyOptions] = None,
    ) -> bool:
        """
        Edit a message's text, or only its buttons when ``text`` is None.
        """

    @abstractmethod
    async def delete_message(self, chat_id: ChatId, message_id: int) -> bool:
        """Delete a message; a message that is already gone counts as failure."""

    @abstractmethod
    async def answer_callback(
        self,
        callback_query_id: str,
        text: Optional[str] = None,
        show_alert: bool = False,
    ) -> bool:
        """Acknowledge a button press so the client stops its spinner."""
