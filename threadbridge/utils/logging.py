"""Logging setup using structlog."""
import logging
import sys
from typing import Optional
import structlog

# Library loggers that only add noise at INFO
QUIET_LOGGERS = ("telegram", "telegram.ext", "httpx", "httpcore", "asyncio")


def setup_logging(log_level: str = "INFO"):
    """Configure structured logging.

    Session tasks bind ``thread_id`` (and the CLI session id once known) as
    context variables, so every line they log carries them without
    repeating the keys at each call.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="%H:%M:%S"),
    ]
    if sys.stdout.isatty():
        processors.append(
            structlog.dev.ConsoleRenderer(
                colors=True,
                pad_event=25,
                exception_formatter=structlog.dev.plain_traceback,
            )
        )
    else:
        # One JSON object per line, tracebacks included as a string field
        processors += [
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger = structlog.get_logger()
    logger.info("Logging configured", log_level=log_level)

    return logger


def bind_session_context(thread_id: str, native_session_id: Optional[str] = None):
    """Tag the current task's log lines with the thread (and CLI session) they belong to.

    asyncio tasks run in a copy of their creator's context, so a binding made
    inside a task stays local to it.
    """
    context = {"thread_id": thread_id}
    if native_session_id:
        context["native_session_id"] = native_session_id
    structlog.contextvars.bind_contextvars(**context)
