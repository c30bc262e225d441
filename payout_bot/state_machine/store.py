"""
Session Store - keyed, in-memory storage of conversation sessions

A dumb store: no business logic and no transition rules. Every operation is
synchronous, never raises for an unknown id, and touches only the entry for
the id it was given. Sessions do not survive a process restart.
"""
import time
from typing import Callable, Iterator, Optional, Union

from payout_bot.core.logging import get_logger
from payout_bot.state_machine.session import ConversationSession

logger = get_logger(__name__)

ConversationId = Union[int, str]


class SessionStore:
    """Manages conversation sessions by conversation id"""

    def __init__(self, ttl_seconds: float = 0):
        # ttl_seconds == 0 disables idle expiry
        self.ttl_seconds = ttl_seconds
        self._sessions: dict[ConversationId, ConversationSession] = {}

    def get(self, conversation_id: ConversationId) -> Optional[ConversationSession]:
        return self._sessions.get(conversation_id)

    def get_or_create(self, conversation_id: ConversationId) -> ConversationSession:
        """Get existing session or create a fresh IDLE one"""
        session = self._sessions.get(conversation_id)
        if session is None:
            session = ConversationSession(id=conversation_id)
            self._sessions[conversation_id] = session
        return session

    def upsert(
        self,
        conversation_id: ConversationId,
        mutator: Callable[[ConversationSession], None],
    ) -> ConversationSession:
        """
        Apply ``mutator`` to the session, creating it first if needed.

        The session is stored before the mutator runs; if the mutator raises,
        the changes it made up to that point remain.
        """
        session = self.get_or_create(conversation_id)
        mutator(session)
        return session

    def touch(self, conversation_id: ConversationId) -> None:
        session = self._sessions.get(conversation_id)
        if session is not None:
            session.last_activity = time.monotonic()

    def delete(self, conversation_id: ConversationId) -> Optional[ConversationSession]:
        """Remove and return the session; closing its resources is the caller's job"""
        return self._sessions.pop(conversation_id, None)

    def pop_expired(
        self,
        now: Optional[float] = None,
        skip: Optional[Callable[[ConversationId], bool]] = None,
    ) -> list[ConversationSession]:
        """
        Remove and return sessions idle for longer than the TTL.

        Sessions for which ``skip(conversation_id)`` is true stay in the
        store even when idle.
        """
        if not self.ttl_seconds:
            return []
        now = time.monotonic() if now is None else now
        expired_ids = [
            conversation_id
            for conversation_id, session in self._sessions.items()
            if now - session.last_activity > self.ttl_seconds
            and not (skip is not None and skip(conversation_id))
        ]
        expired = [self._sessions.pop(conversation_id) for conversation_id in expired_ids]
        if expired:
            logger.info(
                "Expired idle sessions",
                extra_data={"count": len(expired), "ttl_seconds": self.ttl_seconds}
            )
        return expired

    def __iter__(self) -> Iterator[ConversationSession]:
        return iter(list(self._sessions.values()))

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._sessions
