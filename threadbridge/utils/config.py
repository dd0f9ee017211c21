"""Configuration management."""
import os
import shlex
from pathlib import Path
from typing import Dict, List, Optional
from pydantic import BaseModel, Field


class Config(BaseModel):
    """Application configuration."""

    # Telegram settings
    telegram_bot_token: str = Field(description="Telegram bot token")
    authorized_user_id: Optional[int] = Field(
        default=None, description="Authorized Telegram user ID"
    )

    # Anthropic settings (optional - can use existing Pro account auth)
    anthropic_api_key: Optional[str] = Field(
        default=None, description="Anthropic API key (optional if using Pro account)"
    )

    # Application settings
    log_level: str = Field(default="INFO", description="Logging level")
    max_sessions: int = Field(default=10, description="Maximum concurrent sessions")
    session_timeout_hours: float = Field(
        default=24, description="Idle hours before a session is paused"
    )
    workspace_base: Path = Field(
        default=Path("/workspace"), description="Default working directory"
    )
    channel_dirs: Dict[str, Path] = Field(
        default_factory=dict, description="Per-chat working directories"
    )
    session_store_path: Path = Field(
        default=Path("data/sessions.json"),
        description="Resumable session records",
    )

    # Claude CLI settings
    claude_command: List[str] = Field(
        default_factory=lambda: ["claude"], description="Claude CLI invocation"
    )
    permission_mode: str = Field(
        default="bypassPermissions",
        description="Permission mode used when no permission server is configured",
    )
    permission_server_command: Optional[str] = Field(
        default=None, description="MCP permission prompt server command"
    )
    system_prompt_file: Optional[Path] = Field(
        default=None, description="Extra system instructions for every session"
    )

    # Streaming and lifecycle timing
    stream_debounce_ms: int = Field(default=300, description="Minimum ms between post edits")
    shutdown_grace_seconds: float = Field(
        default=2.0, description="Wait after SIGINT before SIGKILL"
    )
    resume_probe_seconds: float = Field(
        default=1.0, description="Window in which a resumed process exiting means resume failed"
    )
    resume_on_startup: bool = Field(
        default=True, description="Resume sessions left unpaused by an unclean exit"
    )

    def working_dir_for(self, channel_id: Optional[str]) -> Path:
        """Working directory for sessions started from a chat."""
        if channel_id is not None and str(channel_id) in self.channel_dirs:
            return self.channel_dirs[str(channel_id)]
        return self.workspace_base

    def permission_delegate(self, thread_id: str, channel_id: Optional[str]) -> Optional[Dict]:
        """MCP server description handed to the CLI for permission prompts."""
        if not self.permission_server_command:
            return None

        command = shlex.split(self.permission_server_command)
        return {
            "command": command[0],
            "args": command[1:],
            "env": {
                "PLATFORM_CHANNEL_ID": str(channel_id or ""),
                "PLATFORM_THREAD_ID": thread_id,
                "AUTHORIZED_USER_ID": str(self.authorized_user_id or ""),
            },
        }

    def system_prompt(self) -> Optional[str]:
        """Supplemental system context, if configured and non-empty."""
        if not self.system_prompt_file or not self.system_prompt_file.exists():
            return None
        text = self.system_prompt_file.read_text().strip()
        return text or None


def read_secret(secret_name: str) -> str:
    """Read Docker secret from /run/secrets/ or environment variable."""
    secret_path = Path("/run/secrets") / secret_name

    if secret_path.exists():
        content = secret_path.read_text().strip()
        # Handle case where file contains KEY=value format
        if "=" in content:
            return content.split("=", 1)[1].strip()
        return content
    else:
        # Fallback to environment variable for development
        value = os.getenv(secret_name.upper())
        if value is None:
            raise ValueError(f"Secret {secret_name} not found")
        return value


def parse_channel_dirs(value: str) -> Dict[str, Path]:
    """Parse ``chat_id:path,chat_id:path`` into a mapping."""
    dirs = {}
    for entry in value.split(","):
        entry = entry.strip()
        if not entry or ":" not in entry:
            continue
        chat_id, path = entry.split(":", 1)
        dirs[chat_id.strip()] = Path(path.strip())
    return dirs


def _optional_env(name: str) -> Optional[str]:
    value = os.getenv(name, "")
    if value and value.strip():
        return value.strip()
    return None


def load_config() -> Config:
    """Load configuration from environment and secrets."""
    telegram_bot_token = read_secret("telegram_bot_token")

    authorized_user_id = None
    authorized_user_id_str = _optional_env("AUTHORIZED_USER_ID")
    if authorized_user_id_str:
        try:
            authorized_user_id = int(authorized_user_id_str)
        except ValueError:
            pass

    system_prompt_file = _optional_env("SYSTEM_PROMPT_FILE")

    return Config(
        telegram_bot_token=telegram_bot_token,
        anthropic_api_key=_optional_env("ANTHROPIC_API_KEY"),
        authorized_user_id=authorized_user_id,
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        max_sessions=int(os.getenv("MAX_SESSIONS", "10")),
        session_timeout_hours=float(os.getenv("SESSION_TIMEOUT_HOURS", "24")),
        workspace_base=Path(os.getenv("WORKSPACE_BASE", "/workspace")),
        channel_dirs=parse_channel_dirs(os.getenv("CHANNEL_DIRS", "")),
        session_store_path=Path(os.getenv("SESSION_STORE_PATH", "data/sessions.json")),
        claude_command=shlex.split(os.getenv("CLAUDE_COMMAND", "claude")),
        permission_mode=os.getenv("PERMISSION_MODE", "bypassPermissions"),
        permission_server_command=_optional_env("PERMISSION_SERVER_COMMAND"),
        system_prompt_file=Path(system_prompt_file) if system_prompt_file else None,
        stream_debounce_ms=int(os.getenv("STREAM_DEBOUNCE_MS", "300")),
        shutdown_grace_seconds=float(os.getenv("SHUTDOWN_GRACE_SECONDS", "2.0")),
        resume_probe_seconds=float(os.getenv("RESUME_PROBE_SECONDS", "1.0")),
        resume_on_startup=os.getenv("RESUME_ON_STARTUP", "true").lower() == "true",
    )
