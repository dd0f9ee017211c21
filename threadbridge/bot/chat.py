"""Chat platform posting interface and its Telegram implementation."""
from typing import Optional, Protocol
import structlog

from telegram import Bot
from telegram.constants import ChatAction
from telegram.error import BadRequest

logger = structlog.get_logger()

# Telegram rejects messages over 4096 characters
MAX_MESSAGE_LENGTH = 4000


class ChatClient(Protocol):
    """What the streaming engine needs from a chat platform."""

    async def create_post(self, channel_id: str, text: str, thread_root: Optional[int] = None) -> Optional[str]:
        """Post a message into a thread, return its post ID."""

    async def update_post(self, post_id: str, text: str) -> None:
        """Replace the text of an existing post."""

    async def send_typing(self, channel_id: str, thread_root: Optional[int] = None) -> None:
        """Show a typing indicator."""


def fit_message(text: str) -> str:
    """Trim text to Telegram's message limit."""
    if not text.strip():
        return "…"
    if len(text) > MAX_MESSAGE_LENGTH:
        return text[:MAX_MESSAGE_LENGTH] + "\n\n... (truncated)"
    return text


class TelegramChat:
    """ChatClient backed by python-telegram-bot.

    Post IDs are ``"<chat_id>:<message_id>"`` since Telegram edits need both.
    """

    def __init__(self, bot: Bot):
        self.bot = bot

    async def create_post(self, channel_id: str, text: str, thread_root: Optional[int] = None) -> Optional[str]:
        message = await self.bot.send_message(
            chat_id=int(channel_id),
            text=fit_message(text),
            message_thread_id=thread_root,
        )
        return f"{message.chat_id}:{message.message_id}"

    async def update_post(self, post_id: str, text: str) -> None:
        chat_id, message_id = post_id.split(":", 1)
        try:
            await self.bot.edit_message_text(
                text=fit_message(text),
                chat_id=int(chat_id),
                message_id=int(message_id),
            )
        except BadRequest as e:
            # Editing to identical text is not a failure
            if "not modified" in str(e).lower():
                logger.debug("Post unchanged", post_id=post_id)
                return
            raise

    async def send_typing(self, channel_id: str, thread_root: Optional[int] = None) -> None:
        await self.bot.send_chat_action(
            chat_id=int(channel_id),
            action=ChatAction.TYPING,
            message_thread_id=thread_root,
        )
