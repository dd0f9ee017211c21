"""Routes chat messages to per-thread Claude Code sessions and streams replies back."""
from functools import partial
from typing import Optional
import structlog

from ..models import SessionStats, TurnResult, UserMessage
from ..utils.config import Config
from ..utils.logging import bind_session_context
from .chat import ChatClient
from .message_queue import MessageQueue
from .process import SessionBusyError, SessionStartError
from .session_manager import RegistryClosedError, SessionLimitError, SessionRegistry, SessionStoppedError
from .streaming import StreamingResponse
from .tool_parser import get_tool_summary

logger = structlog.get_logger()

# A session can die between lookup and write; one fresh attempt after that
SEND_ATTEMPTS = 2


class Bridge:
    """Glue between inbound messages, the session registry and streaming posts."""

    def __init__(self, registry: SessionRegistry, chat: ChatClient, config: Config):
        self.registry = registry
        self.chat = chat
        self.config = config
        self.queue = MessageQueue(self._dispatch)

    def handle_message(self, message: UserMessage) -> bool:
        """Accept an inbound message. Returns False when it was queued behind a running turn."""
        self.registry.touch(message.thread_id)
        dispatched = self.queue.enqueue(message.thread_id, message)
        logger.info(
            "Message received",
            thread_id=message.thread_id,
            sender=message.sender,
            queued=not dispatched,
            preview=message.preview(),
        )
        return dispatched

    async def _dispatch(self, thread_id: str, message: UserMessage) -> bool:
        # Runs in its own queue task, so the binding does not leak to other threads
        bind_session_context(thread_id)
        response = StreamingResponse(
            self.chat,
            channel_id=message.channel_id,
            thread_id=thread_id,
            thread_root=message.thread_root,
            debounce=self.config.stream_debounce_ms / 1000,
        )

        for attempt in range(SEND_ATTEMPTS):
            try:
                session = await self.registry.get_or_create(thread_id, channel_id=message.channel_id)
            except RegistryClosedError:
                logger.info("Dropping message during shutdown")
                return False
            except SessionStoppedError:
                logger.info("Dropping message for a thread stopped while starting")
                return False
            except (SessionLimitError, SessionStartError) as e:
                logger.error("Failed to get session", error=str(e))
                await self._post_error(message, f"❌ {e}")
                return False

            session.set_callbacks(
                on_text=response.on_text,
                on_tool_use=response.on_tool_use,
                on_complete=partial(self._on_complete, thread_id, response),
            )
            response.start_typing()

            try:
                if await session.send_message(message.content):
                    return True
            except SessionBusyError as e:
                logger.error("Session busy on dispatch", error=str(e))
                break

            if session.is_alive():
                break
            logger.warning("Session died before delivery", attempt=attempt + 1)

        await response.on_complete(error="Failed to deliver message to Claude Code")
        return False

    async def _on_complete(self, thread_id: str, response: StreamingResponse, result: TurnResult):
        stats = result.stats
        try:
            prefix = "Stopped" if result.failed else "Done"
            summary = stats.format_summary(prefix)
            await response.on_complete(stats_line=summary, error=result.error)
            self.registry.record_turn(thread_id, stats)
            logger.info(
                "Turn finished",
                summary=summary,
                tools=get_tool_summary(response.tools_used) or None,
                error=result.error,
            )
        finally:
            self.queue.on_turn_complete(thread_id)

    async def _post_error(self, message: UserMessage, text: str):
        try:
            await self.chat.create_post(message.channel_id, text, message.thread_root)
        except Exception as e:
            logger.error("Failed to post error", thread_id=message.thread_id, error=str(e))

    async def stop(self, thread_id: str) -> bool:
        """Graceful stop: drop queued messages, SIGINT then SIGKILL, forget the session."""
        dropped = self.queue.clear(thread_id)
        if dropped:
            logger.info("Dropped queued messages", thread_id=thread_id, count=dropped)
        return await self.registry.stop_session(thread_id, graceful=True)

    async def kill(self, thread_id: str) -> bool:
        """Immediate SIGKILL of the thread's session."""
        self.queue.clear(thread_id)
        return await self.registry.stop_session(thread_id, graceful=False)

    def interrupt(self, thread_id: str) -> bool:
        """Abort the running turn but keep the session."""
        session = self.registry.get(thread_id)
        if session is None:
            return False
        return session.interrupt()

    def stats_text(self, thread_id: str) -> Optional[str]:
        """Stats of the live session, or totals of a paused one."""
        session = self.registry.get(thread_id)
        if session is not None:
            text = session.stats.format_table()
            pending = self.queue.pending_count(thread_id)
            if pending:
                text += f"\nQueued messages: {pending}"
            return text

        record = self.registry.store.get(thread_id)
        if record is None:
            return None
        stats = SessionStats.seeded(
            total_cost=record.total_cost,
            total_input_tokens=record.total_input_tokens,
            total_output_tokens=record.total_output_tokens,
        )
        return (
            stats.format_table("📊 Session Stats (not running)")
            + f"\nMessages: {record.message_count}"
        )
