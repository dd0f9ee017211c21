"""Compact display of Claude Code tool usage."""
import json
from enum import Enum
from typing import Any, Dict, List, Optional

from ..models import ToolUse

MAX_DETAIL_LENGTH = 120


class ClaudeTool(Enum):
    """Claude Code tools."""
    BASH = "Bash"
    READ = "Read"
    WRITE = "Write"
    EDIT = "Edit"
    GLOB = "Glob"
    GREP = "Grep"
    TASK = "Task"
    WEB_FETCH = "WebFetch"
    WEB_SEARCH = "WebSearch"
    ASK_USER = "AskUserQuestion"
    TODO_WRITE = "TodoWrite"
    NOTEBOOK_EDIT = "NotebookEdit"
    KILL_SHELL = "KillShell"
    BASH_OUTPUT = "BashOutput"


# Emoji mapping for tool types
TOOL_EMOJI = {
    ClaudeTool.BASH: "🔧",
    ClaudeTool.READ: "📖",
    ClaudeTool.WRITE: "✏️",
    ClaudeTool.EDIT: "📝",
    ClaudeTool.GLOB: "🔍",
    ClaudeTool.GREP: "🔎",
    ClaudeTool.TASK: "🤖",
    ClaudeTool.WEB_FETCH: "🌐",
    ClaudeTool.WEB_SEARCH: "🔍",
    ClaudeTool.ASK_USER: "❓",
    ClaudeTool.TODO_WRITE: "📋",
    ClaudeTool.NOTEBOOK_EDIT: "📓",
    ClaudeTool.KILL_SHELL: "⚠️",
    ClaudeTool.BASH_OUTPUT: "📊",
}
DEFAULT_EMOJI = "⚙️"

# Input field that best describes each tool call
DETAIL_FIELDS = {
    ClaudeTool.BASH: "command",
    ClaudeTool.READ: "file_path",
    ClaudeTool.WRITE: "file_path",
    ClaudeTool.EDIT: "file_path",
    ClaudeTool.NOTEBOOK_EDIT: "notebook_path",
    ClaudeTool.GLOB: "pattern",
    ClaudeTool.GREP: "pattern",
    ClaudeTool.WEB_FETCH: "url",
    ClaudeTool.WEB_SEARCH: "query",
    ClaudeTool.TASK: "description",
}


def lookup_tool(name: str) -> Optional[ClaudeTool]:
    try:
        return ClaudeTool(name)
    except ValueError:
        return None


def tool_emoji(name: str) -> str:
    return TOOL_EMOJI.get(lookup_tool(name), DEFAULT_EMOJI)


def extract_tool_detail(name: str, tool_input: Optional[Dict[str, Any]]) -> Optional[str]:
    """
    Pick the one input value worth showing for a tool call.

    Known tools show a single field (command, path, pattern, ...); unknown
    tools show their non-empty input as JSON.
    """
    tool_input = tool_input or {}
    tool = lookup_tool(name)

    if tool in DETAIL_FIELDS:
        value = tool_input.get(DETAIL_FIELDS[tool])
        detail = str(value) if value else None
    else:
        compact = {k: v for k, v in tool_input.items() if v is not None}
        detail = json.dumps(compact, ensure_ascii=False) if compact else None

    if detail is None:
        return None

    # Keep it to one line
    detail = " ".join(detail.split())
    if len(detail) > MAX_DETAIL_LENGTH:
        detail = detail[:MAX_DETAIL_LENGTH - 1] + "…"
    return detail


def format_tool_use(tool_use: ToolUse) -> str:
    """
    Format tool usage with emoji and detail.

    Returns:
        Formatted string like "🔧 Bash: ls -la"
    """
    emoji = tool_emoji(tool_use.name)
    detail = extract_tool_detail(tool_use.name, tool_use.input)
    if detail:
        return f"{emoji} {tool_use.name}: {detail}"
    return f"{emoji} {tool_use.name}"


def get_tool_summary(tool_names: List[str]) -> str:
    """
    Create a summary of tools used.

    Returns:
        Formatted string like "🔧 Bash (2x), 📖 Read"
    """
    if not tool_names:
        return ""

    tool_counts: Dict[str, int] = {}
    for name in tool_names:
        tool_counts[name] = tool_counts.get(name, 0) + 1

    parts = []
    for name, count in tool_counts.items():
        emoji = tool_emoji(name)
        if count > 1:
            parts.append(f"{emoji} {name} ({count}x)")
        else:
            parts.append(f"{emoji} {name}")

    return ", ".join(parts)
