from .session import SessionRecord, SessionState
from .stats import SessionStats
from .message import MessageContent, ToolUse, TurnResult, UserMessage

__all__ = [
    "SessionRecord",
    "SessionState",
    "SessionStats",
    "MessageContent",
    "ToolUse",
    "TurnResult",
    "UserMessage",
]
