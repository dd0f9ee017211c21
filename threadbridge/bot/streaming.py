"""Streams one assistant turn into a single, edited chat post."""
import asyncio
import time
from enum import Enum
from typing import List, Optional
import structlog

from ..models import ToolUse
from .chat import ChatClient
from .tool_parser import format_tool_use

logger = structlog.get_logger()

DEBOUNCE_SECONDS = 0.3
TYPING_INTERVAL = 4.0
NO_OUTPUT_TEXT = "✅ Done (no output)"


class ResponseState(str, Enum):
    IDLE = "idle"
    POSTED = "posted"
    FINALIZED = "finalized"


class StreamingResponse:
    """Turns text and tool events of one turn into create-then-edit posting.

    The first segment creates the post; later segments edit it at most once
    per ``debounce`` seconds through a single pending timer. ``on_complete``
    writes the final text immediately. Instances are never reused.
    """

    def __init__(
        self,
        chat: ChatClient,
        channel_id: str,
        thread_id: str,
        thread_root: Optional[int] = None,
        debounce: float = DEBOUNCE_SECONDS,
    ):
        self.chat = chat
        self.channel_id = channel_id
        self.thread_id = thread_id
        self.thread_root = thread_root
        self.debounce = debounce
        self.state = ResponseState.IDLE
        self.post_id: Optional[str] = None

        self._segments: List[str] = []
        self._tools: List[str] = []
        self._create_failed = False
        self._last_update_at = 0.0
        self._timer: Optional[asyncio.Task] = None
        self._typing_task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()

    @property
    def text(self) -> str:
        return "\n\n".join(self._segments)

    @property
    def tools_used(self) -> List[str]:
        return list(self._tools)

    def start_typing(self):
        """Show a typing indicator until the first segment arrives."""
        if self._typing_task is None and self.state is ResponseState.IDLE:
            self._typing_task = asyncio.create_task(self._typing_loop())

    async def _typing_loop(self):
        try:
            while True:
                await self.chat.send_typing(self.channel_id, self.thread_root)
                await asyncio.sleep(TYPING_INTERVAL)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Typing indicator failed", thread_id=self.thread_id, error=str(e))

    def _stop_typing(self):
        if self._typing_task is not None:
            self._typing_task.cancel()
            self._typing_task = None

    async def on_text(self, text: str):
        async with self._lock:
            await self._append(text)

    async def on_tool_use(self, tool_use: ToolUse):
        async with self._lock:
            self._tools.append(tool_use.name)
            await self._append(format_tool_use(tool_use))

    async def on_complete(self, stats_line: Optional[str] = None, error: Optional[str] = None):
        """Write the final text with footer and release the buffers."""
        async with self._lock:
            if self.state is ResponseState.FINALIZED:
                return

            self._stop_typing()
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

            final_text = self._final_text(stats_line, error)
            if self.post_id is not None:
                await self._update_post(final_text)
            else:
                # Nothing streamed (or the first create failed): post once anyway
                try:
                    await self.chat.create_post(self.channel_id, final_text, self.thread_root)
                except Exception as e:
                    logger.error("Failed to create final post", thread_id=self.thread_id, error=str(e))

            self.state = ResponseState.FINALIZED
            self._segments.clear()

    def _final_text(self, stats_line: Optional[str], error: Optional[str]) -> str:
        text = self.text or NO_OUTPUT_TEXT
        if error:
            text += f"\n\n⚠️ {error}"
        if stats_line:
            text += f"\n\n---\n{stats_line}"
        return text

    async def _append(self, segment: str):
        if self.state is ResponseState.FINALIZED:
            logger.debug("Dropping output after finalize", thread_id=self.thread_id)
            return

        self._segments.append(segment)
        self._stop_typing()

        if self._create_failed:
            return
        if self.post_id is None:
            await self._create_post()
            return
        await self._schedule_update()

    async def _create_post(self):
        post_id = None
        try:
            post_id = await self.chat.create_post(self.channel_id, self.text, self.thread_root)
        except Exception as e:
            logger.error("Failed to create post", thread_id=self.thread_id, error=str(e))

        if not post_id:
            self._create_failed = True
            logger.error("No post to stream into, later text is dropped until completion", thread_id=self.thread_id)
            return

        self.post_id = post_id
        self.state = ResponseState.POSTED
        self._last_update_at = time.monotonic()

    async def _schedule_update(self):
        if self._timer is not None:
            return

        elapsed = time.monotonic() - self._last_update_at
        if elapsed >= self.debounce:
            await self._update_post()
        else:
            self._timer = asyncio.create_task(self._debounced_update(self.debounce - elapsed))

    async def _debounced_update(self, delay: float):
        await asyncio.sleep(delay)
        async with self._lock:
            self._timer = None
            if self.state is ResponseState.POSTED:
                await self._update_post()

    async def _update_post(self, text: Optional[str] = None):
        try:
            await self.chat.update_post(self.post_id, self.text if text is None else text)
        except Exception as e:
            logger.warning("Failed to update post", thread_id=self.thread_id, post_id=self.post_id, error=str(e))
        self._last_update_at = time.monotonic()
