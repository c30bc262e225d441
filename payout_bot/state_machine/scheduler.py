"""
Deferred task scheduler

Runs delayed UI side-actions (the "resend OTP" prompt, auto-deleting a
transient notice) as asyncio tasks that never hold up the main flow. Tasks
are grouped by conversation id so that clearing a session cancels whatever
that conversation still had pending.
"""
import asyncio
from typing import Awaitable, Callable, Union

from payout_bot.core.logging import get_logger

logger = get_logger(__name__)

ConversationId = Union[int, str]


class DeferredTaskScheduler:
    """Cancellable delayed actions keyed by conversation id"""

    def __init__(self):
        self._tasks: dict[ConversationId, set[asyncio.Task]] = {}

    def schedule(
        self,
        conversation_id: ConversationId,
        delay_seconds: float,
        action: Callable[[], Awaitable[None]],
        name: str = "deferred",
    ) -> asyncio.Task:
        """
        Run ``action`` after ``delay_seconds`` unless cancelled first.

        Failures of the action are logged; they never reach the caller.
        """
        task = asyncio.create_task(
            self._run(conversation_id, delay_seconds, action, name),
            name=f"{name}:{conversation_id}",
        )
        self._tasks.setdefault(conversation_id, set()).add(task)
        task.add_done_callback(lambda t: self._forget(conversation_id, t))
        return task

    async def _run(
        self,
        conversation_id: ConversationId,
        delay_seconds: float,
        action: Callable[[], Awaitable[None]],
        name: str,
    ) -> None:
        await asyncio.sleep(delay_seconds)
        try:
            await action()
        except Exception as e:
            logger.warning(
                f"Deferred action '{name}' failed",
                extra_data={"conversation_id": conversation_id, "error": str(e)}
            )

    def _forget(self, conversation_id: ConversationId, task: asyncio.Task) -> None:
        tasks = self._tasks.get(conversation_id)
        if tasks is None:
            return
        tasks.discard(task)
        if not tasks:
            del self._tasks[conversation_id]

    def pending(self, conversation_id: ConversationId) -> int:
        return len(self._tasks.get(conversation_id, ()))

    def cancel(self, conversation_id: ConversationId) -> int:
        """Cancel every pending action of a conversation; returns how many"""
        tasks = self._tasks.pop(conversation_id, set())
        for task in tasks:
            task.cancel()
        if tasks:
            logger.debug(
                "Cancelled deferred actions",
                extra_data={"conversation_id": conversation_id, "count": len(tasks)}
            )
        return len(tasks)

    async def shutdown(self) -> None:
        """Cancel everything and wait for the tasks to finish unwinding"""
        tasks = [task for group in self._tasks.values() for task in group]
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
