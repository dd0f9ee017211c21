"""Main entry point for threadbridge."""
import asyncio
import signal
from typing import Optional
import structlog

from telegram.ext import Application, CommandHandler, MessageHandler, filters

from .utils import load_config, setup_logging
from .storage import SessionStore
from .bot import Bridge, SessionRegistry, TelegramChat
from .bot.handlers import BotHandlers

logger = structlog.get_logger()

# How often the idle reaper looks for sessions to pause
REAPER_INTERVAL = 300


class ThreadBridgeBot:
    """Main bot application."""

    def __init__(self):
        self.config = load_config()
        self.store: SessionStore = None
        self.registry: SessionRegistry = None
        self.bridge: Bridge = None
        self.handlers: BotHandlers = None
        self.app: Application = None
        self._reaper_task: Optional[asyncio.Task] = None
        self._shutdown_event = asyncio.Event()

    async def initialize(self):
        """Initialize all components."""
        setup_logging(self.config.log_level)
        logger.info("Initializing threadbridge")

        # Ensure workspace base exists
        self.config.workspace_base.mkdir(parents=True, exist_ok=True)

        logger.info("Loading session store", path=str(self.config.session_store_path))
        self.store = SessionStore(self.config.session_store_path)
        self.registry = SessionRegistry(self.store, self.config)

        # Build Telegram application
        logger.info("Building Telegram application")
        self.app = (
            Application.builder()
            .token(self.config.telegram_bot_token)
            .build()
        )

        self.bridge = Bridge(self.registry, TelegramChat(self.app.bot), self.config)
        self.handlers = BotHandlers(
            bridge=self.bridge,
            authorized_user_id=self.config.authorized_user_id,
        )
        self.register_handlers()

        logger.info("Initialization complete")

    def register_handlers(self):
        """Register all command and message handlers."""
        authorized = self.handlers.authorized_only

        commands = {
            "start": self.handlers.start_command,
            "help": self.handlers.help_command,
            "stop": self.handlers.stop_command,
            "kill": self.handlers.kill_command,
            "interrupt": self.handlers.interrupt_command,
            "stats": self.handlers.stats_command,
        }
        for name, handler in commands.items():
            self.app.add_handler(CommandHandler(name, authorized(handler)))

        self.app.add_handler(
            MessageHandler(
                filters.TEXT & ~filters.COMMAND,
                authorized(self.handlers.message_handler),
            )
        )
        self.app.add_handler(
            MessageHandler(
                filters.PHOTO | filters.Document.IMAGE,
                authorized(self.handlers.attachment_handler),
            )
        )

        logger.info("Handlers registered")

    async def _reap_idle_sessions(self):
        timeout = self.config.session_timeout_hours * 3600
        while True:
            await asyncio.sleep(REAPER_INTERVAL)
            try:
                paused = await self.registry.pause_idle(timeout)
                if paused:
                    logger.info("Paused idle sessions", count=len(paused))
            except Exception as e:
                logger.error("Idle reaper failed", error=str(e))

    async def run(self):
        """Run the bot."""
        logger.info("Starting threadbridge")

        await self.initialize()

        loop = asyncio.get_running_loop()

        def signal_handler(sig):
            logger.info("Received signal, shutting down", signal=sig)
            self._shutdown_event.set()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

        async with self.app:
            await self.app.start()
            await self.app.updater.start_polling()
            logger.info("Bot started successfully - now polling for updates")

            if self.config.resume_on_startup:
                resumed = await self.registry.resume_active()
                if resumed:
                    logger.info("Resumed sessions from previous run", count=len(resumed))

            self._reaper_task = asyncio.create_task(self._reap_idle_sessions())

            await self._shutdown_event.wait()

            logger.info("Shutting down bot")
            await self.shutdown()

    async def shutdown(self):
        """Gracefully shutdown the bot."""
        logger.info("Starting graceful shutdown")

        if self._reaper_task:
            self._reaper_task.cancel()

        # Sessions are paused, not forgotten, so the next start can resume them
        if self.registry:
            await self.registry.pause_all()
        if self.bridge:
            await self.bridge.queue.join()

        if self.app:
            await self.app.updater.stop()
            await self.app.stop()

        logger.info("Shutdown complete")


async def main():
    """Main entry point."""
    bot = ThreadBridgeBot()
    await bot.run()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
