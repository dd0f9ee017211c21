"""Per-thread FIFO of user messages waiting for a busy session."""
import asyncio
from collections import deque
from typing import Awaitable, Callable, Deque, Dict, Set
import structlog

from ..models import UserMessage

logger = structlog.get_logger()

# Delivers one message to its thread's session; returns True when a turn started
Dispatcher = Callable[[str, UserMessage], Awaitable[bool]]


class MessageQueue:
    """Serializes messages per thread; threads are independent.

    A thread is busy from the moment a message is dispatched until
    ``on_turn_complete`` finds nothing left to send.
    """

    def __init__(self, dispatch: Dispatcher):
        self._dispatch = dispatch
        self._busy: Set[str] = set()
        self._pending: Dict[str, Deque[UserMessage]] = {}
        self._tasks: Set[asyncio.Task] = set()

    def is_busy(self, thread_id: str) -> bool:
        return thread_id in self._busy

    def pending_count(self, thread_id: str) -> int:
        return len(self._pending.get(thread_id, ()))

    def enqueue(self, thread_id: str, message: UserMessage) -> bool:
        """Dispatch now if the thread is idle, else queue. Never waits.

        Returns True when the message was dispatched immediately.
        """
        if thread_id in self._busy:
            self._pending.setdefault(thread_id, deque()).append(message)
            logger.debug(
                "Queued message for busy thread",
                thread_id=thread_id,
                pending=self.pending_count(thread_id),
            )
            return False

        self._busy.add(thread_id)
        self._start(thread_id, message)
        return True

    def on_turn_complete(self, thread_id: str) -> bool:
        """Send the next queued message, or mark the thread idle.

        Returns True when another message was dispatched.
        """
        queue = self._pending.get(thread_id)
        if queue:
            message = queue.popleft()
            if not queue:
                del self._pending[thread_id]
            self._start(thread_id, message)
            return True

        self._pending.pop(thread_id, None)
        self._busy.discard(thread_id)
        return False

    def clear(self, thread_id: str) -> int:
        """Drop queued messages for a thread. Returns how many were dropped."""
        dropped = self._pending.pop(thread_id, None)
        return len(dropped) if dropped else 0

    async def join(self):
        """Wait for in-flight dispatches to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _start(self, thread_id: str, message: UserMessage):
        task = asyncio.create_task(self._run(thread_id, message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, thread_id: str, message: UserMessage):
        try:
            sent = await self._dispatch(thread_id, message)
        except Exception:
            logger.exception("Failed to dispatch message", thread_id=thread_id)
            sent = False

        if not sent:
            # Nothing will signal completion for an undelivered message
            self.on_turn_complete(thread_id)
