"""Tests for the per-thread message queue."""
import asyncio

import pytest

from threadbridge.bot.message_queue import MessageQueue
from threadbridge.models import UserMessage


def _message(thread_id, text):
    return UserMessage(thread_id=thread_id, channel_id="c1", content=text)


class Dispatcher:
    def __init__(self, results=None):
        self.calls = []
        self._results = list(results or [])

    async def __call__(self, thread_id, message):
        self.calls.append((thread_id, message.content))
        if self._results:
            result = self._results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return True


class TestMessageQueue:
    @pytest.mark.asyncio
    async def test_one_in_flight_fifo_per_thread(self):
        dispatch = Dispatcher()
        queue = MessageQueue(dispatch)

        assert queue.enqueue("t1", _message("t1", "A")) is True
        assert queue.enqueue("t1", _message("t1", "B")) is False
        assert queue.enqueue("t1", _message("t1", "C")) is False
        assert queue.pending_count("t1") == 2
        await queue.join()
        assert dispatch.calls == [("t1", "A")]

        assert queue.on_turn_complete("t1") is True
        await queue.join()
        assert dispatch.calls == [("t1", "A"), ("t1", "B")]

        assert queue.on_turn_complete("t1") is True
        await queue.join()
        assert [text for _, text in dispatch.calls] == ["A", "B", "C"]

        assert queue.on_turn_complete("t1") is False
        assert not queue.is_busy("t1")
        assert queue.pending_count("t1") == 0

    @pytest.mark.asyncio
    async def test_threads_are_independent(self):
        dispatch = Dispatcher()
        queue = MessageQueue(dispatch)

        assert queue.enqueue("t1", _message("t1", "one"))
        assert queue.enqueue("t2", _message("t2", "two"))
        await queue.join()

        assert sorted(dispatch.calls) == [("t1", "one"), ("t2", "two")]
        assert queue.is_busy("t1") and queue.is_busy("t2")

    @pytest.mark.asyncio
    async def test_undelivered_message_moves_on(self):
        dispatch = Dispatcher(results=[False, True])
        queue = MessageQueue(dispatch)

        queue.enqueue("t1", _message("t1", "lost"))
        queue.enqueue("t1", _message("t1", "next"))
        await queue.join()

        assert [text for _, text in dispatch.calls] == ["lost", "next"]
        assert queue.is_busy("t1")
        assert queue.pending_count("t1") == 0

    @pytest.mark.asyncio
    async def test_dispatch_error_counts_as_completed(self):
        dispatch = Dispatcher(results=[RuntimeError("boom")])
        queue = MessageQueue(dispatch)

        queue.enqueue("t1", _message("t1", "bad"))
        await queue.join()

        assert not queue.is_busy("t1")
        assert queue.enqueue("t1", _message("t1", "good")) is True

    @pytest.mark.asyncio
    async def test_clear_drops_pending_but_keeps_turn(self):
        started = asyncio.Event()
        release = asyncio.Event()

        async def dispatch(thread_id, message):
            started.set()
            await release.wait()
            return True

        queue = MessageQueue(dispatch)
        queue.enqueue("t1", _message("t1", "running"))
        queue.enqueue("t1", _message("t1", "waiting 1"))
        queue.enqueue("t1", _message("t1", "waiting 2"))
        await started.wait()

        assert queue.clear("t1") == 2
        assert queue.clear("t1") == 0
        assert queue.is_busy("t1")

        release.set()
        await queue.join()
        assert queue.on_turn_complete("t1") is False
        assert not queue.is_busy("t1")

    def test_enqueue_to_busy_thread_is_synchronous(self):
        queue = MessageQueue(Dispatcher())
        queue._busy.add("t1")
        assert queue.enqueue("t1", _message("t1", "x")) is False
        assert queue.pending_count("t1") == 1
