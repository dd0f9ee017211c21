from datetime import datetime
from typing import Any, Dict, List, Optional, Union
from pydantic import BaseModel, Field

from .session import utc_now
from .stats import SessionStats

# Plain text or a list of Claude content blocks (text, image, ...)
MessageContent = Union[str, List[Dict[str, Any]]]


class UserMessage(BaseModel):
    """Inbound chat message routed to a thread's session."""

    thread_id: str = Field(description="Thread key the message belongs to")
    channel_id: str = Field(description="Chat the message was posted in")
    thread_root: Optional[int] = Field(default=None, description="Topic/thread to reply into")
    sender: Optional[str] = Field(default=None)
    content: MessageContent = Field(description="Text or content blocks")
    received_at: datetime = Field(default_factory=utc_now)

    def preview(self, length: int = 60) -> str:
        if isinstance(self.content, str):
            text = self.content
        else:
            text = " ".join(
                block.get("text", "") for block in self.content if block.get("type") == "text"
            )
        return text[:length] + "..." if len(text) > length else text


class ToolUse(BaseModel):
    """A tool invocation announced by the assistant."""

    id: Optional[str] = None
    name: str
    input: Dict[str, Any] = Field(default_factory=dict)


class TurnResult(BaseModel):
    """Outcome of one turn, real or synthesized when the process died."""

    native_session_id: str
    stats: SessionStats
    error: Optional[str] = Field(default=None, description="Set when the turn did not finish normally")

    @property
    def failed(self) -> bool:
        return self.error is not None
