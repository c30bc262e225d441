"""
State Machine Module for Conversation Flows
"""
from payout_bot.state_machine.states import ConversationState
from payout_bot.state_machine.store import SessionStore
from payout_bot.state_machine.controller import ConversationController

__all__ = ["ConversationState", "SessionStore", "ConversationController"]
