"""
Pytest Configuration and Fixtures

Provides fixtures for:
- A recording chat transport (no network)
- A mocked payments gateway with realistic default answers
- A recording notification channel
- A conversation controller wired to all of the above
"""
# Settings() refuses to load without a bot token, so set it before importing payout_bot
import os
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "123456:test-bot-token")
os.environ.setdefault("TELEGRAM_WEBHOOK_SECRET_TOKEN", "test-webhook-secret")

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional
from unittest.mock import MagicMock

import pytest

from payout_bot.core.circuit_breaker import CircuitBreaker
from payout_bot.core.config import settings
from payout_bot.domain.models import (
    AuthResult,
    BankAccount,
    BankAccountDetails,
    OtpRequestResult,
    TokenBalance,
    TransferResult,
    UserProfile,
    Wallet,
    WalletBalance,
)
from payout_bot.domain.services.chat.base_transport import BaseChatTransport, ReplyOptions
from payout_bot.domain.services.notifications.base_channel import (
    BaseNotificationChannel,
    NotificationHandle,
)
from payout_bot.domain.services.payments.base_gateway import BasePaymentsGateway
from payout_bot.state_machine.controller import ConversationController
from payout_bot.state_machine.scheduler import DeferredTaskScheduler
from payout_bot.state_machine.store import SessionStore

CHAT_ID = 4242
TOKEN = "access-token-1"
ORG_ID = "org-1"


# ============================================================================
# Fakes
# ============================================================================

@dataclass
class SentMessage:
    message_id: int
    chat_id: int | str
    text: str
    options: ReplyOptions


class RecordingTransport(BaseChatTransport):
    """Chat transport that records every call instead of talking to Telegram"""

    def __init__(self):
        self.sent: list[SentMessage] = []
        self.edits: list[tuple[int, Optional[str], ReplyOptions]] = []
        self.deleted: list[int] = []
        self.answered: list[tuple[str, Optional[str], bool]] = []
        self.edit_result = True
        self._next_id = 1000

    async def send_message(self, chat_id, text, options=None):
        self._next_id += 1
        self.sent.append(SentMessage(self._next_id, chat_id, text, options or ReplyOptions()))
        return self._next_id

    async def edit_message(self, chat_id, message_id, text=None, options=None):
        self.edits.append((message_id, text, options or ReplyOptions()))
        return self.edit_result

    async def delete_message(self, chat_id, message_id):
        self.deleted.append(message_id)
        return True

    async def answer_callback(self, callback_query_id, text=None, show_alert=False):
        self.answered.append((callback_query_id, text, show_alert))
        return True

    @property
    def visible(self) -> list[SentMessage]:
        """Messages still on screen (loading indicators are deleted right away)"""
        return [message for message in self.sent if message.message_id not in self.deleted]

    @property
    def texts(self) -> list[str]:
        return [message.text for message in self.visible]

    @property
    def last(self) -> SentMessage:
        return self.visible[-1]

    def callback_tokens(self, message: Optional[SentMessage] = None) -> list[str]:
        message = message or self.last
        return [
            button.callback_data
            for row in message.options.buttons
            for button in row
            if button.callback_data
        ]

    def clear(self) -> None:
        self.sent.clear()
        self.edits.clear()
        self.deleted.clear()
        self.answered.clear()


class RecordingChannel(BaseNotificationChannel):
    """Notification channel that records opens and closes"""

    def __init__(self):
        self.opened: list[tuple] = []
        self.closed: list[NotificationHandle] = []
        self.callbacks: dict = {}
        self._handles: dict = {}

    async def open(self, conversation_id, organization_id, token, on_deposit, on_status=None):
        existing = self._handles.get(conversation_id)
        if existing is not None:
            return existing
        handle = NotificationHandle(
            conversation_id=conversation_id,
            organization_id=organization_id,
            channel_name=f"private-org-{organization_id}",
        )
        self._handles[conversation_id] = handle
        self.opened.append((conversation_id, organization_id, token))
        self.callbacks[conversation_id] = (on_deposit, on_status)
        return handle

    async def close(self, handle):
        handle.closed = True
        self._handles.pop(handle.conversation_id, None)
        self.closed.append(handle)

    def is_open(self, conversation_id):
        return conversation_id in self._handles


# ============================================================================
# Builders
# ============================================================================

def make_wallet_balance(usdc: str = "1000", is_default: bool = True) -> WalletBalance:
    return WalletBalance(
        wallet_id="wallet-1",
        is_default=is_default,
        network="polygon",
        balances=[TokenBalance(symbol="USDC", balance=Decimal(usdc))],
    )


def make_bank_account() -> BankAccount:
    return BankAccount(
        id="bank-1",
        country="usa",
        status="active",
        is_default=True,
        bank_account=BankAccountDetails(
            bank_name="First Bank",
            bank_account_number="****1234",
            bank_beneficiary_name="Jane Doe",
        ),
    )


def make_gateway() -> MagicMock:
    """Gateway mock whose async methods answer like a healthy account"""
    gateway = MagicMock(spec=BasePaymentsGateway)
    gateway.request_otp.return_value = OtpRequestResult(request_id="sid-1")
    gateway.verify_otp.return_value = AuthResult(token=TOKEN, user_id="user-1", organization_id=ORG_ID)
    gateway.get_profile.return_value = UserProfile(
        id="user-1", email="user@example.com", organization_id=ORG_ID, first_name="Jane"
    )
    gateway.get_kyc_status.return_value = None
    gateway.get_wallets.return_value = [
        Wallet(id="wallet-1", network="polygon", wallet_address="0x" + "a" * 40, is_default=True),
        Wallet(id="wallet-2", network="solana", wallet_address="So1" + "b" * 40),
    ]
    gateway.get_balances.return_value = [make_wallet_balance()]
    gateway.get_default_wallet.return_value = Wallet(id="wallet-1", network="polygon", is_default=True)
    gateway.get_default_bank_account.return_value = make_bank_account()
    gateway.send_transfer.return_value = TransferResult(id="tx-1", status="pending")
    gateway.send_bulk_transfer.return_value = TransferResult(id="batch-1", status="pending")
    gateway.submit_withdrawal.return_value = TransferResult(id="wd-1", status="pending")
    return gateway


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Circuit breakers are process-wide singletons"""
    CircuitBreaker.reset_all()
    yield
    CircuitBreaker.reset_all()


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def gateway() -> MagicMock:
    return make_gateway()


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def config():
    """Settings with notifications configured and long deferred delays"""
    return settings.model_copy(update={
        "PUSHER_KEY": "test-pusher-key",
        "NOTIFICATIONS_ENABLED": True,
        "OTP_RESEND_PROMPT_DELAY_SECONDS": 60.0,
        "NOTICE_AUTO_DELETE_SECONDS": 60.0,
    })


@pytest.fixture
async def controller(gateway, transport, channel, config):
    ctrl = ConversationController(
        store=SessionStore(),
        gateway=gateway,
        transport=transport,
        channel=channel,
        scheduler=DeferredTaskScheduler(),
        config=config,
    )
    yield ctrl
    await ctrl.scheduler.shutdown()


async def login(controller: ConversationController, chat_id: int = CHAT_ID) -> None:
    """Drive the login flow to AUTHENTICATED"""
    await controller.on_command("/login", chat_id)
    await controller.on_text(chat_id, "user@example.com")
    await controller.on_text(chat_id, "123456")


@pytest.fixture
async def logged_in(controller, transport):
    """Controller with CHAT_ID already authenticated and a clean transcript"""
    await login(controller)
    transport.clear()
    return controller
