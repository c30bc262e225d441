"""
State Definitions for the Login, Transfer, Withdrawal and Bulk Transfer Flows
"""
from enum import Enum


class ConversationState(str, Enum):
    """States for a conversation with the payout bot"""

    # Initial state (no session record is the same as IDLE)
    IDLE = "IDLE"

    # Login flow
    WAITING_EMAIL = "AUTH.WAITING_EMAIL"
    WAITING_OTP = "AUTH.WAITING_OTP"

    # Resting state between flows
    AUTHENTICATED = "AUTHENTICATED"

    # Bank withdrawal flow
    WAITING_WITHDRAWAL_AMOUNT = "WITHDRAW.WAITING_AMOUNT"

    # Single transfer flow
    WAITING_TRANSFER_EMAIL = "TRANSFER.WAITING_EMAIL"
    WAITING_TRANSFER_AMOUNT = "TRANSFER.WAITING_AMOUNT"
    WAITING_TRANSFER_NOTE = "TRANSFER.WAITING_NOTE"

    # Bulk transfer flow
    BULK_TRANSFER_MENU = "BULK.MENU"
    WAITING_BULK_RECIPIENT = "BULK.WAITING_RECIPIENT"
    WAITING_BULK_AMOUNT = "BULK.WAITING_AMOUNT"
    WAITING_BULK_CONFIRMATION = "BULK.WAITING_CONFIRMATION"


UNAUTHENTICATED_STATES = frozenset({
    ConversationState.IDLE,
    ConversationState.WAITING_EMAIL,
    ConversationState.WAITING_OTP,
})

TRANSFER_STATES = frozenset({
    ConversationState.WAITING_TRANSFER_EMAIL,
    ConversationState.WAITING_TRANSFER_AMOUNT,
    ConversationState.WAITING_TRANSFER_NOTE,
})

BULK_STATES = frozenset({
    ConversationState.BULK_TRANSFER_MENU,
    ConversationState.WAITING_BULK_RECIPIENT,
    ConversationState.WAITING_BULK_AMOUNT,
    ConversationState.WAITING_BULK_CONFIRMATION,
})

AUTHENTICATED_STATES = frozenset(ConversationState) - UNAUTHENTICATED_STATES

# Flow entry points reachable from every authenticated state; starting a flow
# discards whatever another flow had drafted
_FLOW_ENTRIES = [
    ConversationState.AUTHENTICATED,
    ConversationState.WAITING_TRANSFER_EMAIL,
    ConversationState.WAITING_WITHDRAWAL_AMOUNT,
    ConversationState.BULK_TRANSFER_MENU,
]


# State transitions mapping
CONVERSATION_TRANSITIONS = {
    # Login
    ConversationState.IDLE: [ConversationState.WAITING_EMAIL],
    ConversationState.WAITING_EMAIL: [
        ConversationState.IDLE,
        ConversationState.WAITING_EMAIL,
        ConversationState.WAITING_OTP,
    ],
    ConversationState.WAITING_OTP: [
        ConversationState.IDLE,
        ConversationState.WAITING_EMAIL,
        ConversationState.WAITING_OTP,  # resend OTP replaces the request id
        ConversationState.AUTHENTICATED,
    ],

    ConversationState.AUTHENTICATED: _FLOW_ENTRIES,

    # Withdrawal: amount -> quote -> purpose button -> AUTHENTICATED
    ConversationState.WAITING_WITHDRAWAL_AMOUNT: _FLOW_ENTRIES,

    # Transfer: email -> amount -> purpose -> (note) -> confirm
    ConversationState.WAITING_TRANSFER_EMAIL: _FLOW_ENTRIES + [
        ConversationState.WAITING_TRANSFER_AMOUNT,
    ],
    ConversationState.WAITING_TRANSFER_AMOUNT: _FLOW_ENTRIES + [
        ConversationState.WAITING_TRANSFER_AMOUNT,
        ConversationState.WAITING_TRANSFER_NOTE,
    ],
    ConversationState.WAITING_TRANSFER_NOTE: _FLOW_ENTRIES + [
        ConversationState.WAITING_TRANSFER_AMOUNT,
    ],

    # Bulk: menu -> recipient -> amount -> purpose -> menu -> review -> confirm
    ConversationState.BULK_TRANSFER_MENU: _FLOW_ENTRIES + [
        ConversationState.WAITING_BULK_RECIPIENT,
        ConversationState.WAITING_BULK_CONFIRMATION,
    ],
    ConversationState.WAITING_BULK_RECIPIENT: _FLOW_ENTRIES + [
        ConversationState.WAITING_BULK_RECIPIENT,
        ConversationState.WAITING_BULK_AMOUNT,
    ],
    ConversationState.WAITING_BULK_AMOUNT: _FLOW_ENTRIES + [
        ConversationState.WAITING_BULK_RECIPIENT,
        ConversationState.WAITING_BULK_AMOUNT,
    ],
    ConversationState.WAITING_BULK_CONFIRMATION: _FLOW_ENTRIES + [
        ConversationState.WAITING_BULK_RECIPIENT,
    ],
}


def is_valid_transition(current: ConversationState, target: ConversationState) -> bool:
    """Check if transition from current to target state is valid"""
    # Staying put (e.g. re-entering an invalid amount) is always allowed
    if current == target:
        return True
    return target in CONVERSATION_TRANSITIONS.get(current, [])
