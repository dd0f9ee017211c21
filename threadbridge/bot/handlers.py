"""Telegram bot command handlers."""
from typing import Optional, Tuple
import structlog

from telegram import Message, Update
from telegram.error import TelegramError
from telegram.ext import ContextTypes

from ..models import MessageContent, UserMessage
from .attachments import build_content, download_images
from .bridge import Bridge

logger = structlog.get_logger()


def thread_key(message: Message) -> Tuple[str, str, Optional[int]]:
    """Thread ID, channel ID and reply root for a Telegram message.

    Forum topics are separate threads; a plain chat is one thread.
    """
    channel_id = str(message.chat_id)
    if message.is_topic_message and message.message_thread_id:
        return f"{channel_id}:{message.message_thread_id}", channel_id, message.message_thread_id
    return channel_id, channel_id, None


class BotHandlers:
    """Telegram bot command handlers."""

    def __init__(self, bridge: Bridge, authorized_user_id: Optional[int] = None):
        self.bridge = bridge
        self.authorized_user_id = authorized_user_id

    def authorized_only(self, handler):
        """Decorator to check authorization."""

        async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE):
            user = update.effective_user
            if update.message is None or user is None:
                return

            if self.authorized_user_id and user.id != self.authorized_user_id:
                logger.warning("Unauthorized access", user_id=user.id)
                await update.message.reply_text("❌ Unauthorized")
                return

            return await handler(update, context)

        return wrapper

    async def start_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /start command."""
        await update.message.reply_text(
            "👋 threadbridge - Claude Code in your chat threads\n\n"
            "Every chat (or forum topic) gets its own Claude Code session.\n"
            "Just send a message to start one.\n\n"
            "/help - Full command reference"
        )

    async def help_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /help command."""
        await update.message.reply_text(
            "📖 threadbridge Command Reference\n\n"
            "/interrupt - Abort the running turn, keep the session\n"
            "/stop - Stop the session and forget it\n"
            "/kill - Force-kill the session immediately\n"
            "/stats - Token usage and cost for this thread\n\n"
            "Messages sent while Claude is working are queued and\n"
            "delivered in order once the current turn finishes."
        )

    async def stop_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /stop command."""
        thread_id, _, _ = thread_key(update.message)
        try:
            stopped = await self.bridge.stop(thread_id)
        except Exception as e:
            logger.error("Failed to stop session", thread_id=thread_id, error=str(e))
            await update.message.reply_text(f"❌ Failed to stop session: {e}")
            return

        if stopped:
            await update.message.reply_text("✅ Session stopped. The next message starts a new one.")
        else:
            await update.message.reply_text("No session in this thread.")

    async def kill_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /kill command."""
        thread_id, _, _ = thread_key(update.message)
        try:
            killed = await self.bridge.kill(thread_id)
        except Exception as e:
            logger.error("Failed to kill session", thread_id=thread_id, error=str(e))
            await update.message.reply_text(f"❌ Failed to kill session: {e}")
            return

        if killed:
            await update.message.reply_text("💀 Session killed")
        else:
            await update.message.reply_text("No session to kill.")

    async def interrupt_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /interrupt command."""
        thread_id, _, _ = thread_key(update.message)
        if self.bridge.interrupt(thread_id):
            await update.message.reply_text("⏹ Interrupted")
        else:
            await update.message.reply_text("No running session in this thread.")

    async def stats_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /stats command."""
        thread_id, _, _ = thread_key(update.message)
        text = self.bridge.stats_text(thread_id)
        await update.message.reply_text(text or "No session in this thread yet.")

    async def message_handler(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle non-command messages - forward to Claude Code."""
        if not update.message.text:
            return
        await self._route(update, update.message.text)

    async def attachment_handler(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle photos and image documents - forward them with the caption."""
        message = update.message
        try:
            images = await download_images(message)
        except TelegramError as e:
            logger.error("Failed to download attachment", chat_id=message.chat_id, error=str(e))
            await message.reply_text(f"❌ Failed to download attachment: {e}")
            return

        content = build_content(message.caption or "", images)
        if isinstance(content, str):
            await message.reply_text("❌ Unsupported attachment. Send a JPEG, PNG, GIF or WebP image under 5 MB.")
            return
        await self._route(update, content)

    async def _route(self, update: Update, content: MessageContent):
        message = update.message
        thread_id, channel_id, thread_root = thread_key(message)
        user = update.effective_user
        dispatched = self.bridge.handle_message(
            UserMessage(
                thread_id=thread_id,
                channel_id=channel_id,
                thread_root=thread_root,
                sender=user.username or str(user.id),
                content=content,
            )
        )

        if not dispatched:
            pending = self.bridge.queue.pending_count(thread_id)
            await message.reply_text(f"⏳ Queued ({pending} waiting)")
