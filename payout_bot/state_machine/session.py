"""
Conversation session model

A session holds the flow state of one conversation plus at most one draft:
the flow-local data collected across steps before a remote submission.
Which draft type a state may carry is fixed by ``STATE_DRAFT_TYPES``; the
session refuses any other combination.
"""
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional, Union

from payout_bot.core.exceptions import InvalidStateTransitionError, SessionExpiredError
from payout_bot.core.validation import RecipientType
from payout_bot.domain.models import (
    BankAccount,
    BulkTransferEntry,
    OffRampQuote,
    TransferRequest,
)
from payout_bot.state_machine.states import ConversationState, is_valid_transition


@dataclass
class PendingAuth:
    email: str
    otp_request_id: str


@dataclass
class TransferDraft:
    recipient: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: str = "USD"
    purpose_code: Optional[str] = None
    note: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return bool(self.recipient and self.amount and self.purpose_code)

    def to_request(self) -> TransferRequest:
        return TransferRequest(
            recipient=self.recipient,
            amount=self.amount,
            currency=self.currency,
            purpose_code=self.purpose_code,
            note=self.note,
        )


@dataclass
class BulkEntryDraft:
    """The recipient currently being added to a bulk transfer"""
    recipient: str
    recipient_type: RecipientType
    amount: Optional[Decimal] = None


@dataclass
class BulkTransferDraft:
    entries: list[BulkTransferEntry] = field(default_factory=list)
    current: Optional[BulkEntryDraft] = None

    def totals_by_currency(self) -> dict[str, Decimal]:
        totals: dict[str, Decimal] = {}
        for entry in self.entries:
            totals[entry.currency] = totals.get(entry.currency, Decimal("0")) + entry.amount
        return totals

    def duplicate_recipients(self) -> list[str]:
        """Recipients listed more than once (exact string match), in first-seen order"""
        seen: set[str] = set()
        duplicates: list[str] = []
        for entry in self.entries:
            if entry.recipient in seen and entry.recipient not in duplicates:
                duplicates.append(entry.recipient)
            seen.add(entry.recipient)
        return duplicates


@dataclass
class WithdrawalDraft:
    bank_account: BankAccount
    wallet_id: str
    amount: Optional[Decimal] = None
    base_amount: Optional[str] = None
    quote: Optional[OffRampQuote] = None

    @property
    def bank_account_ref(self) -> str:
        return self.bank_account.id


Draft = Union[PendingAuth, TransferDraft, BulkTransferDraft, WithdrawalDraft]

# Draft type each state may carry; None is always allowed
STATE_DRAFT_TYPES: dict[ConversationState, Optional[type]] = {
    ConversationState.IDLE: None,
    ConversationState.WAITING_EMAIL: None,
    ConversationState.WAITING_OTP: PendingAuth,
    ConversationState.AUTHENTICATED: None,
    ConversationState.WAITING_WITHDRAWAL_AMOUNT: WithdrawalDraft,
    ConversationState.WAITING_TRANSFER_EMAIL: TransferDraft,
    ConversationState.WAITING_TRANSFER_AMOUNT: TransferDraft,
    ConversationState.WAITING_TRANSFER_NOTE: TransferDraft,
    ConversationState.BULK_TRANSFER_MENU: BulkTransferDraft,
    ConversationState.WAITING_BULK_RECIPIENT: BulkTransferDraft,
    ConversationState.WAITING_BULK_AMOUNT: BulkTransferDraft,
    ConversationState.WAITING_BULK_CONFIRMATION: BulkTransferDraft,
}

_KEEP: Any = object()


@dataclass
class ConversationSession:
    """Per-conversation state, mutated only by the conversation controller"""

    id: Union[int, str]
    state: ConversationState = ConversationState.IDLE
    auth_token: Optional[str] = None
    organization_id: Optional[str] = None
    user_id: Optional[str] = None
    email: Optional[str] = None
    draft: Optional[Draft] = None
    notification_subscription: Optional[Any] = None
    last_activity: float = field(default_factory=time.monotonic)

    @property
    def is_authenticated(self) -> bool:
        return self.auth_token is not None

    # ── transitions ──

    def transition(self, new_state: ConversationState, draft: Optional[Draft] = _KEEP) -> None:
        """
        Move to ``new_state``, replacing the draft unless ``draft`` is omitted.

        Raises:
            InvalidStateTransitionError: the move is not in the transition
                table, or the draft does not belong to the new state.
        """
        if not is_valid_transition(self.state, new_state):
            raise InvalidStateTransitionError(
                self.state.value, new_state.value, conversation_id=self.id
            )
        next_draft = self.draft if draft is _KEEP else draft
        if next_draft is not None:
            expected = STATE_DRAFT_TYPES[new_state]
            if expected is None or not isinstance(next_draft, expected):
                raise InvalidStateTransitionError(
                    self.state.value,
                    new_state.value,
                    conversation_id=self.id,
                    reason=f"state does not accept a {type(next_draft).__name__} draft",
                )
        self.state = new_state
        self.draft = next_draft

    def authenticate(
        self,
        token: str,
        organization_id: Optional[str],
        user_id: Optional[str],
    ) -> None:
        email = self.pending_auth.email if self.pending_auth else self.email
        self.transition(ConversationState.AUTHENTICATED, draft=None)
        self.auth_token = token
        self.organization_id = organization_id
        self.user_id = user_id
        self.email = email

    def reset_to_rest(self) -> None:
        """Drop any draft and return to the resting state for this session"""
        target = (
            ConversationState.AUTHENTICATED if self.is_authenticated else ConversationState.IDLE
        )
        self.transition(target, draft=None)

    # ── typed draft accessors ──

    @property
    def pending_auth(self) -> Optional[PendingAuth]:
        return self.draft if isinstance(self.draft, PendingAuth) else None

    @property
    def active_transfer(self) -> Optional[TransferDraft]:
        return self.draft if isinstance(self.draft, TransferDraft) else None

    @property
    def bulk_transfer(self) -> Optional[BulkTransferDraft]:
        return self.draft if isinstance(self.draft, BulkTransferDraft) else None

    @property
    def withdrawal_draft(self) -> Optional[WithdrawalDraft]:
        return self.draft if isinstance(self.draft, WithdrawalDraft) else None

    def require_pending_auth(self) -> PendingAuth:
        if self.pending_auth is None:
            raise SessionExpiredError("login", missing="pending_auth")
        return self.pending_auth

    def require_transfer(self) -> TransferDraft:
        if self.active_transfer is None:
            raise SessionExpiredError("send", missing="active_transfer")
        return self.active_transfer

    def require_bulk_transfer(self) -> BulkTransferDraft:
        if self.bulk_transfer is None:
            raise SessionExpiredError("bulk", missing="bulk_transfer")
        return self.bulk_transfer

    def require_withdrawal(self) -> WithdrawalDraft:
        if self.withdrawal_draft is None:
            raise SessionExpiredError("withdraw", missing="withdrawal_draft")
        return self.withdrawal_draft
