"""
Notification channel interface - Dependency Inversion.

A channel holds at most one live subscription per conversation and pushes
deposit events for the conversation's organization to a callback until the
handle is closed.
"""
from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional, Union

from payout_bot.domain.models import DepositEvent

ConversationId = Union[int, str]


class SubscriptionStatus(str, Enum):
    SUBSCRIBED = "subscribed"
    FAILED = "failed"


DepositCallback = Callable[[DepositEvent], Awaitable[None]]
StatusCallback = Callable[[SubscriptionStatus], Awaitable[None]]


@dataclass
class NotificationHandle:
    """Ownership token for one open subscription"""
    conversation_id: ConversationId
    organization_id: str
    channel_name: str
    opened_at: float = field(default_factory=time.monotonic)
    subscribed: bool = False
    closed: bool = False


class BaseNotificationChannel(ABC):

    @abstractmethod
    async def open(
        self,
        conversation_id: ConversationId,
        organization_id: str,
        token: str,
        on_deposit: DepositCallback,
        on_status: Optional[StatusCallback] = None,
    ) -> NotificationHandle:
        """
        Subscribe the conversation to its organization's deposit events.

        Opening while a subscription is already open for the conversation is
        a no-op that returns the existing handle. Connection and
        authorization happen in the background; ``on_status`` reports the
        outcome.
        """

    @abstractmethod
    async def close(self, handle: NotificationHandle) -> None:
        """Tear the subscription down; closing twice is harmless."""

    @abstractmethod
    def is_open(self, conversation_id: ConversationId) -> bool:
        ...

    async def close_all(self) -> None:
        """Close every open subscription (process shutdown)"""
