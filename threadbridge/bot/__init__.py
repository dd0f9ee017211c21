from .process import ProcessSession, ResumeError, SessionBusyError, SessionStartError
from .session_manager import RegistryClosedError, SessionLimitError, SessionRegistry, SessionStoppedError
from .message_queue import MessageQueue
from .streaming import StreamingResponse
from .chat import ChatClient, TelegramChat
from .bridge import Bridge

__all__ = [
    "ProcessSession",
    "ResumeError",
    "SessionBusyError",
    "SessionStartError",
    "RegistryClosedError",
    "SessionLimitError",
    "SessionRegistry",
    "SessionStoppedError",
    "MessageQueue",
    "StreamingResponse",
    "ChatClient",
    "TelegramChat",
    "Bridge",
]
