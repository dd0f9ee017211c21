from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SessionState(str, Enum):
    """Lifecycle of one Claude Code subprocess."""
    UNSTARTED = "unstarted"
    STARTING = "starting"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"
    CRASHED = "crashed"


class SessionRecord(BaseModel):
    """Resumable session metadata persisted per chat thread."""

    thread_id: str = Field(description="Chat thread the session belongs to")
    native_session_id: str = Field(description="Claude CLI session ID used for --resume")
    channel_id: Optional[str] = Field(default=None)
    working_dir: Optional[str] = Field(default=None)
    started_at: datetime = Field(default_factory=utc_now)
    last_activity_at: datetime = Field(default_factory=utc_now)
    is_paused: bool = Field(default=False)
    message_count: int = Field(default=0)
    total_cost: float = Field(default=0.0)
    total_input_tokens: int = Field(default=0)
    total_output_tokens: int = Field(default=0)

    def to_store(self) -> Dict[str, Any]:
        """JSON value stored under the thread ID key."""
        return self.model_dump(mode="json", exclude={"thread_id"})

    @classmethod
    def from_store(cls, thread_id: str, data: Dict[str, Any]) -> "SessionRecord":
        return cls(thread_id=thread_id, **data)
