import asyncio
import sys
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest

from threadbridge.utils.config import Config

FAKE_CLAUDE = Path(__file__).parent / "fake_claude.py"


class FakeChat:
    """In-memory ChatClient that records every call."""

    def __init__(self):
        self.posts: Dict[str, str] = {}
        self.created: List[Tuple[str, str, Optional[int]]] = []
        self.updates: List[Tuple[str, str]] = []
        self.typing = 0
        self._next_id = 0

    async def create_post(self, channel_id, text, thread_root=None):
        self._next_id += 1
        post_id = f"{channel_id}:{self._next_id}"
        self.posts[post_id] = text
        self.created.append((channel_id, text, thread_root))
        return post_id

    async def update_post(self, post_id, text):
        self.posts[post_id] = text
        self.updates.append((post_id, text))

    async def send_typing(self, channel_id, thread_root=None):
        self.typing += 1

    def final_posts(self) -> List[str]:
        """Post texts that carry a stats footer, in creation order."""
        return [text for _, text in sorted(self.posts.items(), key=_post_order) if "\n---\n" in text]


class SlowFirstPostChat(FakeChat):
    """FakeChat whose first post takes ``delay`` seconds to land."""

    def __init__(self, delay: float):
        super().__init__()
        self.delay = delay
        self.posting = asyncio.Event()

    async def create_post(self, channel_id, text, thread_root=None):
        if not self.posting.is_set():
            self.posting.set()
            await asyncio.sleep(self.delay)
        return await super().create_post(channel_id, text, thread_root)


def _post_order(item):
    return int(item[0].rsplit(":", 1)[1])


async def _wait_until(predicate, timeout: float = 10.0, interval: float = 0.02):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError(f"Condition not met within {timeout}s")
        await asyncio.sleep(interval)


@pytest.fixture
def wait_until():
    return _wait_until


@pytest.fixture
def fake_command():
    return [sys.executable, str(FAKE_CLAUDE)]


@pytest.fixture
def make_config(tmp_path, fake_command):
    def factory(**overrides) -> Config:
        values = dict(
            telegram_bot_token="test-token",
            workspace_base=tmp_path / "workspace",
            session_store_path=tmp_path / "sessions.json",
            claude_command=fake_command,
            resume_probe_seconds=0.5,
            shutdown_grace_seconds=1.0,
            stream_debounce_ms=50,
        )
        values.update(overrides)
        return Config(**values)

    return factory


@pytest.fixture
def chat():
    return FakeChat()


@pytest.fixture
def slow_chat():
    return SlowFirstPostChat(delay=1.0)
