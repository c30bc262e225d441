"""
Conversation Controller - the per-conversation state machine

Receives inbound events (commands, free text, button presses, deposit
pushes), resolves the active flow from the session state, validates input,
drives the payments gateway and notification channel, and emits replies.

Per event the side effects run in a fixed order: validate, remote call,
session mutation, notification-channel action, reply. Events for one
conversation are serialized by a per-conversation lock; every error is
caught at the event boundary and turned into a user-visible notice.
"""
import asyncio
import uuid
import weakref
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import Awaitable, Callable, Optional, Union

from payout_bot.core.config import Settings, settings
from payout_bot.core.exceptions import (
    BusinessRuleError,
    DuplicateRecipientError,
    InsufficientBalanceError,
    InvalidStateTransitionError,
    MissingDefaultAccountError,
    RemoteApiError,
    SessionExpiredError,
    ValidationException,
)
from payout_bot.core.logging import bind_conversation, get_logger
from payout_bot.core.validation import (
    AmountValidator,
    classify_recipient,
    convert_to_base_unit,
    is_valid_email,
    is_valid_otp,
    mask_email,
    parse_amount,
)
from payout_bot.domain.models import (
    BulkTransferEntry,
    DepositEvent,
    OffRampQuoteParams,
    WithdrawalParams,
)
from payout_bot.domain.services.chat.base_transport import BaseChatTransport, Button, ReplyOptions
from payout_bot.domain.services.notifications.base_channel import (
    BaseNotificationChannel,
    SubscriptionStatus,
)
from payout_bot.domain.services.payments.base_gateway import BasePaymentsGateway
from payout_bot.state_machine import messages
from payout_bot.state_machine.messages import Reply
from payout_bot.state_machine.scheduler import DeferredTaskScheduler
from payout_bot.state_machine.session import (
    BulkEntryDraft,
    BulkTransferDraft,
    ConversationSession,
    PendingAuth,
    TransferDraft,
    WithdrawalDraft,
)
from payout_bot.state_machine.states import (
    BULK_STATES,
    TRANSFER_STATES,
    ConversationState,
)
from payout_bot.state_machine.store import SessionStore

logger = get_logger(__name__)

ConversationId = Union[int, str]

# Commands that read or move money; rejected before any remote call when logged out
AUTH_REQUIRED_COMMANDS = frozenset({
    "profile", "kyc", "balance", "wallets", "default", "history",
    "send", "withdraw", "bulk", "add_recipient", "review", "clear", "send_bulk",
    "notifications",
})

COMMAND_ALIASES = {
    "bulk_start": "bulk",
    "bulk-start": "bulk",
    "add-recipient": "add_recipient",
    "send-bulk": "send_bulk",
}

# USD amounts are settled from the wallet's USDC balance
SETTLEMENT_SYMBOLS = {"USD": "USDC"}


def normalize_command(name: str) -> str:
    """'/Send@PayoutBot' -> 'send'"""
    parts = name.strip().lstrip("/").split()
    command = parts[0].split("@", 1)[0].lower() if parts else ""
    return COMMAND_ALIASES.get(command, command)


class ConversationController:
    """Routes inbound events through the conversation state machine"""

    def __init__(
        self,
        store: SessionStore,
        gateway: BasePaymentsGateway,
        transport: BaseChatTransport,
        channel: Optional[BaseNotificationChannel] = None,
        scheduler: Optional[DeferredTaskScheduler] = None,
        config: Optional[Settings] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.transport = transport
        self.channel = channel
        self.scheduler = scheduler or DeferredTaskScheduler()
        self.config = config or settings
        self._locks: "weakref.WeakValueDictionary[ConversationId, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    # ==================== Entry points ====================

    async def on_command(self, name: str, conversation_id: ConversationId) -> None:
        command = normalize_command(name)
        await self._run_event(conversation_id, f"command:{command}", self._handle_command, command)

    async def on_text(self, conversation_id: ConversationId, text: str) -> None:
        await self._run_event(conversation_id, "text", self._handle_text, text or "")

    async def on_callback(
        self,
        conversation_id: ConversationId,
        data: str,
        message_id: Optional[int] = None,
        callback_query_id: Optional[str] = None,
    ) -> None:
        answered = await self._run_event(
            conversation_id, f"callback:{data}", self._handle_callback, data, message_id, callback_query_id
        )
        if callback_query_id and not answered:
            await self.transport.answer_callback(callback_query_id)

    async def on_deposit(self, conversation_id: ConversationId, event: DepositEvent) -> None:
        await self._run_event(conversation_id, "deposit", self._handle_deposit, event)

    async def on_subscription_status(
        self,
        conversation_id: ConversationId,
        status: SubscriptionStatus,
    ) -> None:
        await self._run_event(conversation_id, "subscription", self._handle_subscription_status, status)

    async def shutdown(self) -> None:
        """Close every open subscription and cancel deferred actions"""
        for session in self.store:
            await self._teardown(session)
        await self.scheduler.shutdown()

    # ==================== Event boundary ====================

    def _lock_for(self, conversation_id: ConversationId) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock

    async def _run_event(self, conversation_id: ConversationId, event: str, handler, *args):
        lock = self._lock_for(conversation_id)
        with bind_conversation(conversation_id):
            async with lock:
                await self._expire_idle_sessions(conversation_id)
                session = self.store.get_or_create(conversation_id)
                self.store.touch(conversation_id)
                state_before = session.state
                try:
                    return await handler(session, *args)
                except ValidationException as e:
                    await self._notice(conversation_id, f"❌ {e.message}", transient=True)
                except SessionExpiredError as e:
                    logger.warning(
                        "Flow data missing",
                        extra_data={"conversation_id": conversation_id, "event": event, **e.details}
                    )
                    session.reset_to_rest()
                    await self._notice(conversation_id, e.message)
                except MissingDefaultAccountError as e:
                    await self._send(conversation_id, self._missing_account_reply(e))
                except BusinessRuleError as e:
                    await self._notice(conversation_id, f"❌ {e.message}")
                except RemoteApiError as e:
                    logger.warning(
                        "Remote call failed",
                        extra_data={
                            "conversation_id": conversation_id,
                            "event": event,
                            "status_code": e.status_code,
                            "error": e.message,
                        }
                    )
                    await self._send(conversation_id, messages.remote_error("Request failed", e.message))
                except InvalidStateTransitionError as e:
                    logger.error(
                        "Invalid state transition",
                        extra_data={"conversation_id": conversation_id, "event": event, **e.details}
                    )
                    await self._notice(conversation_id, messages.INVALID_STATE, transient=True)
                except Exception as e:
                    logger.error(
                        "Unhandled error while processing event",
                        extra_data={"conversation_id": conversation_id, "event": event, "error": str(e)},
                        exc_info=True,
                    )
                    await self._notice(conversation_id, messages.UNEXPECTED_ERROR)
                finally:
                    current = self.store.get(conversation_id)
                    if current is not None and current.state != state_before:
                        logger.info(
                            "Conversation state changed",
                            extra_data={
                                "conversation_id": conversation_id,
                                "event": event,
                                "from_state": state_before.value,
                                "to_state": current.state.value,
                            }
                        )
        return None

    def _is_busy(self, conversation_id: ConversationId) -> bool:
        lock = self._locks.get(conversation_id)
        return lock is not None and lock.locked()

    async def _expire_idle_sessions(self, conversation_id: ConversationId) -> None:
        # Another conversation holding its lock is mid-event; it is not idle
        for expired in self.store.pop_expired(
            skip=lambda other: other != conversation_id and self._is_busy(other)
        ):
            await self._teardown(expired)
            if expired.id == conversation_id and expired.is_authenticated:
                await self._notice(conversation_id, messages.SESSION_TIMED_OUT)

    # ==================== Output helpers ====================

    async def _send(self, conversation_id: ConversationId, reply: Reply) -> Optional[int]:
        return await self.transport.send_message(conversation_id, reply.text, reply.options)

    async def _notice(
        self,
        conversation_id: ConversationId,
        text: str,
        transient: bool = False,
    ) -> Optional[int]:
        message_id = await self._send(conversation_id, messages.notice(text))
        if transient and message_id is not None:
            self._delete_later(conversation_id, message_id, self.config.NOTICE_AUTO_DELETE_SECONDS)
        return message_id

    def _delete_later(self, conversation_id: ConversationId, message_id: int, delay: float) -> None:
        async def _delete() -> None:
            await self.transport.delete_message(conversation_id, message_id)

        self.scheduler.schedule(conversation_id, delay, _delete, name="auto_delete")

    async def _show(
        self,
        conversation_id: ConversationId,
        reply: Reply,
        message_id: Optional[int] = None,
    ) -> None:
        """Edit ``message_id`` in place when given, otherwise send a new message"""
        if message_id is not None and await self.transport.edit_message(
            conversation_id, message_id, reply.text, reply.options
        ):
            return
        await self._send(conversation_id, reply)

    @asynccontextmanager
    async def _loading(self, conversation_id: ConversationId, what: str):
        message_id = await self._send(conversation_id, messages.loading(what))
        try:
            yield
        finally:
            if message_id is not None:
                await self.transport.delete_message(conversation_id, message_id)

    def _missing_account_reply(self, error: MissingDefaultAccountError) -> Reply:
        if error.account_kind == "bank account":
            return messages.no_default_bank_account()
        return Reply(messages.NO_DEFAULT_WALLET)

    # ==================== Session lifecycle ====================

    async def _teardown(self, session: ConversationSession) -> None:
        """Release what a session owns before it is dropped"""
        handle = session.notification_subscription
        if handle is not None and self.channel is not None:
            try:
                await self.channel.close(handle)
            except Exception as e:
                logger.error(
                    "Failed to close notification subscription",
                    extra_data={"conversation_id": session.id, "error": str(e)},
                )
        session.notification_subscription = None
        self.scheduler.cancel(session.id)

    async def _open_notifications(self, session: ConversationSession) -> bool:
        if self.channel is None or not self.config.notifications_configured:
            return False
        if not session.organization_id or not session.auth_token:
            return False

        conversation_id = session.id

        async def _deliver(event: DepositEvent) -> None:
            await self.on_deposit(conversation_id, event)

        async def _status(status: SubscriptionStatus) -> None:
            await self.on_subscription_status(conversation_id, status)

        session.notification_subscription = await self.channel.open(
            conversation_id,
            session.organization_id,
            session.auth_token,
            on_deposit=_deliver,
            on_status=_status,
        )
        return True

    # ==================== Commands ====================

    async def _handle_command(self, session: ConversationSession, command: str) -> None:
        if command in AUTH_REQUIRED_COMMANDS and not session.is_authenticated:
            await self._notice(session.id, messages.NOT_LOGGED_IN, transient=True)
            return

        handlers: dict[str, Callable[[ConversationSession], Awaitable[None]]] = {
            "start": self._cmd_help,
            "help": self._cmd_help,
            "login": self._cmd_login,
            "logout": self._cmd_logout,
            "exit": self._cmd_exit,
            "cancel": self._cmd_cancel,
            "profile": self._cmd_profile,
            "kyc": self._cmd_kyc,
            "balance": self._cmd_balance,
            "wallets": self._cmd_wallets,
            "default": self._cmd_default,
            "history": self._cmd_history,
            "notifications": self._cmd_notifications,
            "send": self._cmd_send,
            "withdraw": self._cmd_withdraw,
            "bulk": self._cmd_bulk,
            "add_recipient": self._cmd_add_recipient,
            "review": self._cmd_review,
            "send_bulk": self._cmd_review,
            "clear": self._cmd_clear,
        }
        handler = handlers.get(command)
        if handler is None:
            await self._notice(session.id, messages.UNKNOWN_COMMAND)
            return
        await handler(session)

    async def _cmd_help(self, session: ConversationSession) -> None:
        await self._send(session.id, messages.welcome())

    async def _cmd_login(self, session: ConversationSession) -> None:
        if session.is_authenticated:
            await self._notice(session.id, messages.ALREADY_LOGGED_IN)
            return
        self.scheduler.cancel(session.id)
        session.transition(ConversationState.WAITING_EMAIL, draft=None)
        await self._send(session.id, messages.enter_email())

    async def _cmd_logout(self, session: ConversationSession) -> None:
        await self._end_session(session, messages.LOGOUT_SUCCESS)

    async def _cmd_exit(self, session: ConversationSession) -> None:
        await self._end_session(session, messages.EXIT_SUCCESS)

    async def _end_session(self, session: ConversationSession, farewell: str) -> None:
        if not session.is_authenticated:
            await self._notice(session.id, messages.NOT_LOGGED_IN, transient=True)
            return
        await self._teardown(session)
        self.store.delete(session.id)
        logger.info("Session cleared", extra_data={"conversation_id": session.id})
        await self._notice(session.id, farewell)

    async def _cmd_cancel(self, session: ConversationSession) -> None:
        if session.state in (ConversationState.IDLE, ConversationState.AUTHENTICATED):
            await self._notice(session.id, messages.NOTHING_TO_CANCEL, transient=True)
            return
        self.scheduler.cancel(session.id)
        session.reset_to_rest()
        await self._notice(session.id, messages.OPERATION_CANCELLED)

    # ── account reads ──

    async def _cmd_profile(self, session: ConversationSession, message_id: Optional[int] = None) -> None:
        async with self._loading(session.id, "Fetching your profile"):
            profile = await self.gateway.get_profile(session.auth_token)
        await self._show(session.id, messages.profile(profile), message_id)

    async def _cmd_kyc(self, session: ConversationSession, message_id: Optional[int] = None) -> None:
        async with self._loading(session.id, "Checking your KYC status"):
            record = await self.gateway.get_kyc_status(session.auth_token)
        await self._show(session.id, messages.kyc_status(record), message_id)

    async def _cmd_balance(self, session: ConversationSession, message_id: Optional[int] = None) -> None:
        async with self._loading(session.id, "Fetching your balances"):
            wallet_balances = await self.gateway.get_balances(session.auth_token)
        await self._show(session.id, messages.balances(wallet_balances), message_id)

    async def _cmd_wallets(self, session: ConversationSession, message_id: Optional[int] = None) -> None:
        async with self._loading(session.id, "Fetching your wallets"):
            wallet_list = await self.gateway.get_wallets(session.auth_token)
        await self._show(session.id, messages.wallets(wallet_list), message_id)

    async def _cmd_default(self, session: ConversationSession) -> None:
        async with self._loading(session.id, "Fetching your wallets"):
            wallet_list = await self.gateway.get_wallets(session.auth_token)
        current = next((wallet for wallet in wallet_list if wallet.is_default), None)
        await self._send(session.id, messages.default_wallet(current, wallet_list))

    async def _cmd_history(
        self,
        session: ConversationSession,
        page: int = 1,
        message_id: Optional[int] = None,
    ) -> None:
        async with self._loading(session.id, "Fetching your transactions"):
            history_page = await self.gateway.get_transfer_history(
                session.auth_token, page, self.config.HISTORY_PAGE_SIZE
            )
        await self._show(session.id, messages.history(history_page), message_id)

    async def _cmd_notifications(self, session: ConversationSession) -> None:
        handle = session.notification_subscription
        if handle is not None and self.channel is not None:
            await self._teardown(session)
            await self._notice(session.id, messages.NOTIFICATIONS_OFF)
            return
        if not await self._open_notifications(session):
            await self._notice(session.id, messages.NOTIFICATIONS_UNAVAILABLE)

    # ── single transfer ──

    async def _cmd_send(self, session: ConversationSession) -> None:
        session.transition(
            ConversationState.WAITING_TRANSFER_EMAIL,
            draft=TransferDraft(currency=self.config.DEFAULT_CURRENCY),
        )
        await self._send(session.id, messages.transfer_intro())

    # ── withdrawal ──

    async def _cmd_withdraw(self, session: ConversationSession) -> None:
        async with self._loading(session.id, "Checking your accounts"):
            wallet = await self.gateway.get_default_wallet(session.auth_token)
            if wallet is None:
                raise MissingDefaultAccountError("wallet")
            bank_account = await self.gateway.get_default_bank_account(session.auth_token)
            if bank_account is None:
                raise MissingDefaultAccountError("bank account")

        session.transition(
            ConversationState.WAITING_WITHDRAWAL_AMOUNT,
            draft=WithdrawalDraft(bank_account=bank_account, wallet_id=wallet.id),
        )
        await self._send(session.id, messages.withdrawal_enter_amount())

    # ── bulk transfer ──

    async def _cmd_bulk(self, session: ConversationSession) -> None:
        session.transition(ConversationState.BULK_TRANSFER_MENU, draft=BulkTransferDraft())
        await self._send(session.id, messages.bulk_menu())

    async def _cmd_add_recipient(self, session: ConversationSession) -> None:
        if session.state not in BULK_STATES:
            await self._notice(session.id, messages.BULK_NOT_STARTED)
            return
        draft = session.require_bulk_transfer()
        session.transition(ConversationState.WAITING_BULK_RECIPIENT, draft=replace(draft, current=None))
        await self._send(session.id, messages.bulk_enter_recipient())

    async def _cmd_review(self, session: ConversationSession) -> None:
        if session.state not in BULK_STATES:
            await self._notice(session.id, messages.BULK_NOT_STARTED)
            return
        if session.state not in (
            ConversationState.BULK_TRANSFER_MENU,
            ConversationState.WAITING_BULK_CONFIRMATION,
        ):
            await self._notice(session.id, messages.INVALID_STATE, transient=True)
            return
        draft = session.require_bulk_transfer()
        if not draft.entries:
            await self._notice(session.id, messages.BULK_NO_RECIPIENTS)
            return
        session.transition(ConversationState.WAITING_BULK_CONFIRMATION)
        await self._send(session.id, messages.bulk_review(draft.entries, draft.totals_by_currency()))

    async def _cmd_clear(self, session: ConversationSession) -> None:
        if session.state not in BULK_STATES:
            await self._notice(session.id, messages.BULK_NOT_STARTED)
            return
        session.transition(ConversationState.BULK_TRANSFER_MENU, draft=BulkTransferDraft())
        await self._send(session.id, messages.bulk_cleared())

    # ==================== Free text ====================

    async def _handle_text(self, session: ConversationSession, text: str) -> None:
        handlers = {
            ConversationState.WAITING_EMAIL: self._text_login_email,
            ConversationState.WAITING_OTP: self._text_login_otp,
            ConversationState.WAITING_TRANSFER_EMAIL: self._text_transfer_email,
            ConversationState.WAITING_TRANSFER_AMOUNT: self._text_transfer_amount,
            ConversationState.WAITING_TRANSFER_NOTE: self._text_transfer_note,
            ConversationState.WAITING_WITHDRAWAL_AMOUNT: self._text_withdrawal_amount,
            ConversationState.WAITING_BULK_RECIPIENT: self._text_bulk_recipient,
            ConversationState.WAITING_BULK_AMOUNT: self._text_bulk_amount,
            ConversationState.WAITING_BULK_CONFIRMATION: self._text_bulk_confirmation,
        }
        handler = handlers.get(session.state)
        if handler is None:
            await self._notice(session.id, messages.INVALID_STATE, transient=True)
            return
        await handler(session, text.strip())

    # ── login ──

    async def _text_login_email(self, session: ConversationSession, text: str) -> None:
        if not is_valid_email(text):
            await self._notice(session.id, messages.INVALID_EMAIL, transient=True)
            return

        try:
            async with self._loading(session.id, "Sending OTP"):
                otp_request = await self.gateway.request_otp(text)
        except RemoteApiError as e:
            # Stay in WAITING_EMAIL so the user can retype the address
            await self._send(session.id, messages.remote_error("Failed to send OTP", e.message))
            return

        session.transition(
            ConversationState.WAITING_OTP,
            draft=PendingAuth(email=text, otp_request_id=otp_request.request_id),
        )
        logger.info(
            "OTP requested",
            extra_data={"conversation_id": session.id, "email": mask_email(text)}
        )
        await self._send(session.id, messages.enter_otp(text))
        self._schedule_resend_prompt(session.id)

    def _schedule_resend_prompt(self, conversation_id: ConversationId) -> None:
        async def _prompt() -> None:
            message_id = await self._send(conversation_id, messages.resend_otp_prompt())
            if message_id is not None:
                self._delete_later(conversation_id, message_id, self.config.NOTICE_AUTO_DELETE_SECONDS)

        self.scheduler.schedule(
            conversation_id,
            self.config.OTP_RESEND_PROMPT_DELAY_SECONDS,
            _prompt,
            name="resend_otp_prompt",
        )

    async def _text_login_otp(self, session: ConversationSession, text: str) -> None:
        if not is_valid_otp(text):
            await self._notice(session.id, messages.INVALID_OTP, transient=True)
            return
        pending = session.require_pending_auth()

        try:
            async with self._loading(session.id, "Verifying OTP"):
                auth = await self.gateway.verify_otp(pending.email, text, pending.otp_request_id)
        except RemoteApiError as e:
            # A failed verification keeps the pending login so another code can be tried
            await self._send(session.id, messages.remote_error("Login failed", e.message))
            return

        self.scheduler.cancel(session.id)
        self.store.upsert(
            session.id,
            lambda s: s.authenticate(auth.token, auth.organization_id, auth.user_id),
        )
        try:
            profile = await self.gateway.get_profile(auth.token)
        except RemoteApiError as e:
            logger.warning(
                "Profile fetch after login failed",
                extra_data={"conversation_id": session.id, "error": e.message}
            )
        else:
            session.organization_id = session.organization_id or profile.organization_id
            session.user_id = session.user_id or profile.id
            session.email = profile.email or session.email

        logger.info(
            "User logged in",
            extra_data={"conversation_id": session.id, "email": mask_email(session.email or "")}
        )
        await self._open_notifications(session)
        await self._send(session.id, messages.login_success())

    # ── single transfer ──

    async def _text_transfer_email(self, session: ConversationSession, text: str) -> None:
        if not is_valid_email(text):
            await self._notice(session.id, messages.TRANSFER_INVALID_EMAIL, transient=True)
            return
        draft = session.require_transfer()
        session.transition(ConversationState.WAITING_TRANSFER_AMOUNT, draft=replace(draft, recipient=text))
        await self._send(session.id, messages.transfer_enter_amount())

    async def _text_transfer_amount(self, session: ConversationSession, text: str) -> None:
        try:
            amount = parse_amount(text)
        except ValidationException:
            await self._notice(session.id, messages.TRANSFER_INVALID_AMOUNT, transient=True)
            return
        draft = session.require_transfer()
        # A new amount invalidates an earlier purpose choice
        session.transition(
            ConversationState.WAITING_TRANSFER_AMOUNT,
            draft=replace(draft, amount=amount, purpose_code=None),
        )
        await self._send(session.id, messages.purpose_selection(messages.TRANSFER_PURPOSE_PREFIX))

    async def _text_transfer_note(self, session: ConversationSession, text: str) -> None:
        draft = session.require_transfer()
        note = None if text.lower() == "skip" or not text else text
        draft = replace(draft, note=note)
        session.transition(ConversationState.WAITING_TRANSFER_AMOUNT, draft=draft)
        await self._send(session.id, self._transfer_confirmation(draft))

    def _transfer_confirmation(self, draft: TransferDraft) -> Reply:
        return messages.transfer_confirmation(
            draft.recipient, draft.amount, draft.currency, draft.purpose_code, draft.note
        )

    # ── withdrawal ──

    async def _text_withdrawal_amount(self, session: ConversationSession, text: str) -> None:
        try:
            amount = parse_amount(text)
        except ValidationException as e:
            await self._send(session.id, messages.withdrawal_invalid_amount(e.message))
            return
        in_range, reason = AmountValidator.validate_range(
            amount,
            self.config.WITHDRAWAL_MIN_AMOUNT,
            self.config.WITHDRAWAL_MAX_AMOUNT,
            self.config.DEFAULT_CURRENCY,
        )
        if not in_range:
            await self._send(session.id, messages.withdrawal_invalid_amount(reason))
            return

        draft = session.require_withdrawal()
        base_amount = convert_to_base_unit(amount)
        try:
            async with self._loading(session.id, "Getting a withdrawal quote"):
                quote = await self.gateway.get_off_ramp_quote(
                    session.auth_token,
                    OffRampQuoteParams(
                        amount=base_amount,
                        preferred_bank_account_id=draft.bank_account_ref,
                        currency=self.config.DEFAULT_CURRENCY,
                    ),
                )
        except RemoteApiError as e:
            await self._send(session.id, messages.remote_error("Failed to get withdrawal quote", e.message))
            return

        summary = messages.withdrawal_summary(quote, draft.bank_account)
        session.transition(
            ConversationState.WAITING_WITHDRAWAL_AMOUNT,
            draft=replace(draft, amount=amount, base_amount=base_amount, quote=quote),
        )
        await self._send(session.id, summary)
        await self._send(session.id, messages.withdrawal_purpose_selection())

    # ── bulk transfer ──

    async def _text_bulk_recipient(self, session: ConversationSession, text: str) -> None:
        recipient_type = classify_recipient(text)
        if recipient_type is None:
            await self._notice(session.id, messages.BULK_INVALID_RECIPIENT, transient=True)
            return
        draft = session.require_bulk_transfer()
        session.transition(
            ConversationState.WAITING_BULK_AMOUNT,
            draft=replace(draft, current=BulkEntryDraft(recipient=text, recipient_type=recipient_type)),
        )
        await self._send(session.id, messages.bulk_enter_amount())

    async def _text_bulk_amount(self, session: ConversationSession, text: str) -> None:
        try:
            amount = parse_amount(text)
        except ValidationException:
            await self._notice(session.id, messages.BULK_INVALID_AMOUNT, transient=True)
            return
        draft = session.require_bulk_transfer()
        if draft.current is None:
            raise SessionExpiredError("bulk", missing="current_recipient")
        session.transition(
            ConversationState.WAITING_BULK_AMOUNT,
            draft=replace(draft, current=replace(draft.current, amount=amount)),
        )
        await self._send(session.id, messages.purpose_selection(messages.BULK_PURPOSE_PREFIX))

    async def _text_bulk_confirmation(self, session: ConversationSession, text: str) -> None:
        answer = text.lower()
        if answer == "yes":
            await self._submit_bulk(session)
        elif answer == "no":
            session.transition(ConversationState.BULK_TRANSFER_MENU)
            await self._send(session.id, messages.bulk_menu())
        elif answer == "cancel":
            session.reset_to_rest()
            await self._notice(session.id, messages.BULK_CANCELLED)
        else:
            await self._notice(session.id, messages.INVALID_STATE, transient=True)

    def _check_bulk_duplicates(self, draft: BulkTransferDraft) -> None:
        duplicates = draft.duplicate_recipients()
        if duplicates:
            raise DuplicateRecipientError(duplicates)

    async def _check_bulk_balance(self, session: ConversationSession, draft: BulkTransferDraft) -> None:
        wallet_balances = await self.gateway.get_balances(session.auth_token)
        wallet = next((item for item in wallet_balances if item.is_default), None)
        if wallet is None:
            raise MissingDefaultAccountError("wallet")
        for currency, required in draft.totals_by_currency().items():
            available = wallet.balance_for(SETTLEMENT_SYMBOLS.get(currency, currency))
            if required > available:
                raise InsufficientBalanceError(currency, available, required)

    async def _submit_bulk(self, session: ConversationSession) -> None:
        draft = session.require_bulk_transfer()
        if not draft.entries:
            session.transition(ConversationState.BULK_TRANSFER_MENU)
            await self._notice(session.id, messages.BULK_NO_RECIPIENTS)
            return

        try:
            self._check_bulk_duplicates(draft)
            async with self._loading(session.id, "Processing bulk transfer"):
                await self._check_bulk_balance(session, draft)
                result = await self.gateway.send_bulk_transfer(session.auth_token, draft.entries)
        except MissingDefaultAccountError as e:
            session.transition(ConversationState.BULK_TRANSFER_MENU)
            await self._send(session.id, self._missing_account_reply(e))
            return
        except BusinessRuleError as e:
            logger.info(
                "Bulk transfer rejected before submission",
                extra_data={"conversation_id": session.id, "reason": e.error_code.value}
            )
            session.transition(ConversationState.BULK_TRANSFER_MENU)
            await self._send(session.id, messages.bulk_rejected(e.message))
            return
        except RemoteApiError as e:
            session.transition(ConversationState.BULK_TRANSFER_MENU)
            await self._send(session.id, messages.bulk_failed(e.message))
            return

        count = len(draft.entries)
        session.reset_to_rest()
        logger.info(
            "Bulk transfer submitted",
            extra_data={"conversation_id": session.id, "recipients": count, "transfer_id": result.id}
        )
        await self._send(session.id, messages.bulk_success(result, count))

    # ==================== Buttons ====================

    async def _handle_callback(
        self,
        session: ConversationSession,
        data: str,
        message_id: Optional[int],
        callback_query_id: Optional[str],
    ) -> bool:
        """Returns True when the callback query was already answered"""
        exact = {
            messages.RESEND_OTP: self._cb_resend_otp,
            messages.TRANSFER_CONFIRM: self._cb_transfer_confirm,
            messages.TRANSFER_CANCEL: self._cb_transfer_cancel,
            messages.TRANSFER_NOTE: self._cb_transfer_note,
            messages.BULK_CONFIRM: self._cb_bulk_confirm,
            messages.BULK_CANCEL: self._cb_bulk_cancel,
            messages.WITHDRAW_CANCEL: self._cb_withdraw_cancel,
        }
        prefixed = {
            messages.TRANSFER_PURPOSE_PREFIX: self._cb_transfer_purpose,
            messages.BULK_PURPOSE_PREFIX: self._cb_bulk_purpose,
            messages.WITHDRAW_PURPOSE_PREFIX: self._cb_withdraw_purpose,
        }
        authenticated_reads = {
            messages.REFRESH_BALANCE: self._cmd_balance,
            messages.REFRESH_WALLETS: self._cmd_wallets,
            messages.CHECK_KYC_STATUS: self._cmd_kyc,
        }

        if data == messages.ALREADY_DEFAULT:
            if callback_query_id:
                await self.transport.answer_callback(
                    callback_query_id, messages.ALREADY_DEFAULT_ALERT, show_alert=True
                )
                return True
            await self._notice(session.id, messages.ALREADY_DEFAULT_ALERT, transient=True)
            return False

        if data in exact:
            await exact[data](session)
            return False
        for prefix, handler in prefixed.items():
            if data.startswith(prefix):
                await handler(session, data[len(prefix):])
                return False

        is_read = (
            data in authenticated_reads
            or data == messages.REFRESH_HISTORY
            or data.startswith(messages.HISTORY_PAGE_PREFIX)
            or data.startswith(messages.SET_DEFAULT_PREFIX)
        )
        if is_read and not session.is_authenticated:
            await self._notice(session.id, messages.NOT_LOGGED_IN, transient=True)
            return False

        if data in authenticated_reads:
            await authenticated_reads[data](session, message_id)
        elif data == messages.REFRESH_HISTORY:
            await self._cmd_history(session, 1)
        elif data.startswith(messages.HISTORY_PAGE_PREFIX):
            page = data[len(messages.HISTORY_PAGE_PREFIX):]
            if not page.isdigit() or int(page) < 1:
                await self._notice(session.id, messages.INVALID_STATE, transient=True)
            else:
                await self._cmd_history(session, int(page), message_id)
        elif data.startswith(messages.SET_DEFAULT_PREFIX):
            await self._cb_set_default(session, data[len(messages.SET_DEFAULT_PREFIX):], message_id)
        else:
            logger.warning(
                "Unknown callback data",
                extra_data={"conversation_id": session.id, "data": data}
            )
            await self._notice(session.id, messages.INVALID_STATE, transient=True)
        return False

    async def _cb_resend_otp(self, session: ConversationSession) -> None:
        if session.state != ConversationState.WAITING_OTP:
            await self._notice(session.id, messages.INVALID_STATE, transient=True)
            return
        pending = session.require_pending_auth()
        async with self._loading(session.id, "Sending a new OTP"):
            otp_request = await self.gateway.request_otp(pending.email)
        self.scheduler.cancel(session.id)
        session.transition(
            ConversationState.WAITING_OTP,
            draft=replace(pending, otp_request_id=otp_request.request_id),
        )
        await self._send(session.id, messages.enter_otp(pending.email))
        self._schedule_resend_prompt(session.id)

    async def _cb_set_default(
        self,
        session: ConversationSession,
        wallet_id: str,
        message_id: Optional[int],
    ) -> None:
        def _single_button(label: str, callback_data: str) -> ReplyOptions:
            return ReplyOptions(buttons=[[Button(label, callback_data=callback_data)]])

        if message_id is not None:
            await self.transport.edit_message(
                session.id, message_id, options=_single_button(messages.SETTING_DEFAULT, messages.ALREADY_DEFAULT)
            )
        try:
            wallet = await self.gateway.set_default_wallet(session.auth_token, wallet_id)
        except RemoteApiError as e:
            if message_id is not None:
                await self.transport.edit_message(
                    session.id,
                    message_id,
                    options=_single_button(
                        messages.DEFAULT_SET_ERROR, f"{messages.SET_DEFAULT_PREFIX}{wallet_id}"
                    ),
                )
            await self._send(session.id, messages.remote_error("Error setting default wallet", e.message))
            return

        logger.info(
            "Default wallet changed",
            extra_data={"conversation_id": session.id, "wallet_id": wallet.id}
        )
        if message_id is not None:
            await self.transport.edit_message(
                session.id, message_id, options=_single_button(messages.DEFAULT_SET, messages.ALREADY_DEFAULT)
            )
        else:
            await self._notice(session.id, messages.DEFAULT_SET)

    # ── single transfer ──

    async def _cb_transfer_purpose(self, session: ConversationSession, purpose_code: str) -> None:
        draft = session.require_transfer()
        if purpose_code not in messages.PURPOSE_LABELS or not (draft.recipient and draft.amount):
            await self._notice(session.id, messages.INVALID_STATE, transient=True)
            return
        draft = replace(draft, purpose_code=purpose_code)
        session.transition(session.state, draft=draft)
        await self._send(session.id, self._transfer_confirmation(draft))

    async def _cb_transfer_note(self, session: ConversationSession) -> None:
        draft = session.require_transfer()
        if not draft.is_complete:
            await self._notice(session.id, messages.INVALID_STATE, transient=True)
            return
        session.transition(ConversationState.WAITING_TRANSFER_NOTE)
        await self._send(session.id, messages.transfer_enter_note())

    async def _cb_transfer_confirm(self, session: ConversationSession) -> None:
        draft = session.require_transfer()
        if not draft.is_complete:
            await self._notice(session.id, messages.INVALID_STATE, transient=True)
            return

        try:
            async with self._loading(session.id, "Processing transfer"):
                result = await self.gateway.send_transfer(session.auth_token, draft.to_request())
        except RemoteApiError as e:
            # Draft kept so the user can confirm again
            await self._send(session.id, messages.transfer_failed(e.message))
            return

        session.reset_to_rest()
        logger.info(
            "Transfer submitted",
            extra_data={
                "conversation_id": session.id,
                "recipient": mask_email(draft.recipient),
                "transfer_id": result.id,
            }
        )
        await self._send(
            session.id,
            messages.transfer_success(result, draft.recipient, draft.amount, draft.currency),
        )

    async def _cb_transfer_cancel(self, session: ConversationSession) -> None:
        if session.state not in TRANSFER_STATES:
            await self._notice(session.id, messages.INVALID_STATE, transient=True)
            return
        session.reset_to_rest()
        await self._notice(session.id, messages.TRANSFER_CANCELLED)

    # ── withdrawal ──

    async def _cb_withdraw_purpose(self, session: ConversationSession, purpose_code: str) -> None:
        draft = session.require_withdrawal()
        if purpose_code not in messages.PURPOSE_LABELS or draft.quote is None:
            await self._notice(session.id, messages.INVALID_STATE, transient=True)
            return

        try:
            async with self._loading(session.id, "Submitting withdrawal"):
                result = await self.gateway.submit_withdrawal(
                    session.auth_token,
                    WithdrawalParams(
                        purpose_code=purpose_code,
                        quote_payload=draft.quote.quote_payload,
                        quote_signature=draft.quote.quote_signature,
                        preferred_wallet_id=draft.wallet_id,
                    ),
                )
        except RemoteApiError as e:
            await self._send(session.id, messages.withdrawal_failed(e.message))
            return

        session.reset_to_rest()
        logger.info(
            "Withdrawal submitted",
            extra_data={"conversation_id": session.id, "transfer_id": result.id}
        )
        await self._send(session.id, messages.withdrawal_success(result))

    async def _cb_withdraw_cancel(self, session: ConversationSession) -> None:
        if session.state != ConversationState.WAITING_WITHDRAWAL_AMOUNT:
            await self._notice(session.id, messages.INVALID_STATE, transient=True)
            return
        session.reset_to_rest()
        await self._notice(session.id, messages.WITHDRAWAL_CANCELLED)

    # ── bulk transfer ──

    async def _cb_bulk_purpose(self, session: ConversationSession, purpose_code: str) -> None:
        draft = session.require_bulk_transfer()
        current = draft.current
        if (
            purpose_code not in messages.PURPOSE_LABELS
            or current is None
            or current.amount is None
        ):
            await self._notice(session.id, messages.INVALID_STATE, transient=True)
            return

        entry = BulkTransferEntry(
            request_id=str(uuid.uuid4()),
            recipient=current.recipient,
            recipient_type=current.recipient_type,
            amount=current.amount,
            purpose_code=purpose_code,
            currency=self.config.DEFAULT_CURRENCY,
        )
        entries = draft.entries + [entry]
        session.transition(
            ConversationState.BULK_TRANSFER_MENU,
            draft=BulkTransferDraft(entries=entries, current=None),
        )
        await self._send(session.id, messages.bulk_entry_added(len(entries)))

    async def _cb_bulk_confirm(self, session: ConversationSession) -> None:
        if session.state != ConversationState.WAITING_BULK_CONFIRMATION:
            await self._notice(session.id, messages.INVALID_STATE, transient=True)
            return
        await self._submit_bulk(session)

    async def _cb_bulk_cancel(self, session: ConversationSession) -> None:
        if session.state not in BULK_STATES:
            await self._notice(session.id, messages.INVALID_STATE, transient=True)
            return
        session.reset_to_rest()
        await self._notice(session.id, messages.BULK_CANCELLED)

    # ==================== Pushes ====================

    async def _handle_deposit(self, session: ConversationSession, event: DepositEvent) -> None:
        if not session.is_authenticated:
            logger.warning(
                "Deposit for a conversation that is no longer logged in",
                extra_data={"conversation_id": session.id}
            )
            return
        await self._send(session.id, messages.deposit(event))

    async def _handle_subscription_status(
        self,
        session: ConversationSession,
        status: SubscriptionStatus,
    ) -> None:
        if not session.is_authenticated:
            return
        if status == SubscriptionStatus.SUBSCRIBED:
            await self._notice(session.id, messages.SUBSCRIBED)
            return
        handle = session.notification_subscription
        if handle is not None and self.channel is not None:
            await self.channel.close(handle)
        session.notification_subscription = None
        await self._notice(session.id, messages.SUBSCRIPTION_FAILED)
