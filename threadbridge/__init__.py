"""threadbridge - Claude Code sessions per chat thread."""

__version__ = "0.1.0"
