"""Tests for tool use formatting."""
from threadbridge.bot.tool_parser import (
    DEFAULT_EMOJI,
    MAX_DETAIL_LENGTH,
    extract_tool_detail,
    format_tool_use,
    get_tool_summary,
)
from threadbridge.models import ToolUse


class TestFormatToolUse:
    def test_bash_shows_command(self):
        assert format_tool_use(ToolUse(name="Bash", input={"command": "ls -la"})) == "🔧 Bash: ls -la"

    def test_read_shows_path(self):
        assert format_tool_use(ToolUse(name="Read", input={"file_path": "/src/app.py"})) == "📖 Read: /src/app.py"

    def test_web_fetch_shows_url(self):
        tool = ToolUse(name="WebFetch", input={"url": "https://example.com", "prompt": "summarize"})
        assert format_tool_use(tool) == "🌐 WebFetch: https://example.com"

    def test_missing_detail_shows_name_only(self):
        assert format_tool_use(ToolUse(name="Grep", input={})) == "🔎 Grep"

    def test_unknown_tool_shows_compact_json(self):
        tool = ToolUse(name="mcp__github__create_issue", input={"title": "Bug", "body": None})
        assert format_tool_use(tool) == f'{DEFAULT_EMOJI} mcp__github__create_issue: {{"title": "Bug"}}'


class TestExtractToolDetail:
    def test_long_detail_is_truncated_to_one_line(self):
        command = "echo start\n" + "x" * 300
        detail = extract_tool_detail("Bash", {"command": command})

        assert "\n" not in detail
        assert len(detail) == MAX_DETAIL_LENGTH
        assert detail.startswith("echo start x")
        assert detail.endswith("…")

    def test_none_input(self):
        assert extract_tool_detail("Bash", None) is None


class TestToolSummary:
    def test_counts_repeated_tools(self):
        assert get_tool_summary(["Bash", "Read", "Bash"]) == "🔧 Bash (2x), 📖 Read"

    def test_empty(self):
        assert get_tool_summary([]) == ""
