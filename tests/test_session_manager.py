"""Tests for SessionRegistry: reuse, resume, limits and teardown."""
import asyncio
from datetime import timedelta

import pytest

from threadbridge.bot.session_manager import (
    RegistryClosedError,
    SessionLimitError,
    SessionRegistry,
    SessionStoppedError,
)
from threadbridge.models import SessionRecord, SessionState, SessionStats
from threadbridge.models.session import utc_now
from threadbridge.storage import SessionStore


@pytest.fixture
def make_registry(make_config):
    def factory(**overrides):
        config = make_config(**overrides)
        return SessionRegistry(SessionStore(config.session_store_path), config)

    return factory


class TestGetOrCreate:
    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_spawn(self, make_registry, monkeypatch):
        registry = make_registry()
        builds = []
        original_build = registry._build

        def counting_build(*args, **kwargs):
            builds.append(args)
            return original_build(*args, **kwargs)

        monkeypatch.setattr(registry, "_build", counting_build)

        try:
            sessions = await asyncio.gather(*(registry.get_or_create("t1", channel_id="c1") for _ in range(5)))

            assert len(builds) == 1
            assert all(s is sessions[0] for s in sessions)
            assert registry.live_count == 1

            record = registry.store.get("t1")
            assert record.native_session_id == sessions[0].native_session_id
            assert record.channel_id == "c1"
            assert record.is_paused is False
        finally:
            await registry.pause_all()

    @pytest.mark.asyncio
    async def test_reuses_live_session(self, make_registry):
        registry = make_registry()
        try:
            first = await registry.get_or_create("t1")
            second = await registry.get_or_create("t1")
            assert first is second
            assert registry.get("t1") is first
        finally:
            await registry.pause_all()

    @pytest.mark.asyncio
    async def test_new_session_uses_channel_working_dir(self, make_registry, tmp_path):
        channel_dir = tmp_path / "project-a"
        registry = make_registry(channel_dirs={"c1": channel_dir})
        try:
            session = await registry.get_or_create("t1", channel_id="c1")
            assert session.working_dir == channel_dir
            assert registry.store.get("t1").working_dir == str(channel_dir)
        finally:
            await registry.pause_all()

    @pytest.mark.asyncio
    async def test_session_limit(self, make_registry):
        registry = make_registry(max_sessions=1)
        try:
            await registry.get_or_create("t1")
            with pytest.raises(SessionLimitError):
                await registry.get_or_create("t2")
        finally:
            await registry.pause_all()

    @pytest.mark.asyncio
    async def test_exited_session_is_replaced_by_resume(self, make_registry, wait_until):
        registry = make_registry()
        try:
            first = await registry.get_or_create("t1")
            await first.kill()
            await wait_until(lambda: "t1" not in registry._sessions)
            assert registry.get("t1") is None

            second = await registry.get_or_create("t1")
            assert second is not first
            assert second.resume is True
            assert second.native_session_id == first.native_session_id
        finally:
            await registry.pause_all()


class TestResume:
    @pytest.mark.asyncio
    async def test_pause_all_then_new_registry_resumes(self, make_registry, make_config):
        registry = make_registry()
        session = await registry.get_or_create("t1", channel_id="c1")
        native_id = session.native_session_id

        await registry.pause_all()

        assert session.state is SessionState.PAUSED
        assert not session.is_alive()
        record = registry.store.get("t1")
        assert record.is_paused is True
        assert record.native_session_id == native_id
        with pytest.raises(RegistryClosedError):
            await registry.get_or_create("t1")

        config = make_config()
        restarted = SessionRegistry(SessionStore(config.session_store_path), config)
        try:
            resumed = await restarted.get_or_create("t1")
            assert resumed.resume is True
            assert resumed.native_session_id == native_id
            assert "--resume" in resumed.build_args()
            assert restarted.store.get("t1").is_paused is False
        finally:
            await restarted.pause_all()

    @pytest.mark.asyncio
    async def test_expired_resume_falls_back_to_new_session(self, make_registry, tmp_path):
        registry = make_registry(resume_probe_seconds=3.0)
        registry.store.save(
            SessionRecord(
                thread_id="t1",
                native_session_id="expired-abc",
                channel_id="c1",
                working_dir=str(tmp_path / "old"),
                message_count=7,
            )
        )

        try:
            session = await registry.get_or_create("t1")

            assert session.resume is False
            assert session.native_session_id != "expired-abc"
            record = registry.store.get("t1")
            assert record.native_session_id == session.native_session_id
            assert record.message_count == 0
        finally:
            await registry.pause_all()

    @pytest.mark.asyncio
    async def test_resume_active_skips_paused_records(self, make_registry, tmp_path):
        registry = make_registry()
        registry.store.save(SessionRecord(thread_id="a", native_session_id="known-a", working_dir=str(tmp_path / "a")))
        registry.store.save(
            SessionRecord(thread_id="b", native_session_id="known-b", working_dir=str(tmp_path / "b"), is_paused=True)
        )

        try:
            resumed = await registry.resume_active()
            assert resumed == ["a"]
            assert registry.get("a").native_session_id == "known-a"
            assert registry.get("b") is None
        finally:
            await registry.pause_all()


class TestTeardown:
    @pytest.mark.asyncio
    async def test_stop_session_is_idempotent(self, make_registry):
        registry = make_registry()
        session = await registry.get_or_create("t1")

        assert await registry.stop_session("t1") is True
        assert session.state is SessionState.STOPPED
        assert registry.get("t1") is None
        assert registry.store.get("t1") is None

        assert await registry.stop_session("t1") is False

    @pytest.mark.asyncio
    async def test_graceful_stop(self, make_registry):
        registry = make_registry()
        session = await registry.get_or_create("t1")

        assert await registry.stop_session("t1", graceful=True) is True
        assert not session.is_alive()

    @pytest.mark.asyncio
    async def test_stop_while_resume_in_flight_tears_down_new_session(self, make_registry, tmp_path, monkeypatch):
        # The resume check window keeps the spawn in flight long enough to stop it
        registry = make_registry(resume_probe_seconds=1.0)
        registry.store.save(SessionRecord(thread_id="t1", native_session_id="known-1", working_dir=str(tmp_path / "w")))
        built = []
        original_build = registry._build

        def recording_build(*args, **kwargs):
            session = original_build(*args, **kwargs)
            built.append(session)
            return session

        monkeypatch.setattr(registry, "_build", recording_build)

        starting = asyncio.create_task(registry.get_or_create("t1"))
        waiting = asyncio.create_task(registry.get_or_create("t1"))
        await asyncio.sleep(0.2)
        assert built and built[0].state is SessionState.STARTING

        assert await registry.stop_session("t1") is True

        with pytest.raises(SessionStoppedError):
            await starting
        with pytest.raises(SessionStoppedError):
            await waiting
        assert len(built) == 1
        assert not built[0].is_alive()
        assert registry.get("t1") is None
        assert registry.live_count == 0
        assert registry.store.get("t1") is None

        try:
            fresh = await registry.get_or_create("t1")
            assert fresh.resume is False
            assert fresh.native_session_id != "known-1"
        finally:
            await registry.pause_all()

    @pytest.mark.asyncio
    async def test_pause_idle_only_pauses_stale_sessions(self, make_registry):
        registry = make_registry()
        try:
            await registry.get_or_create("stale")
            await registry.get_or_create("fresh")
            record = registry.store.get("stale")
            record.last_activity_at = utc_now() - timedelta(hours=2)
            registry.store.save(record)

            paused = await registry.pause_idle(3600)

            assert paused == ["stale"]
            assert registry.get("stale") is None
            assert registry.store.get("stale").is_paused is True
            assert registry.get("fresh") is not None
        finally:
            await registry.pause_all()


class TestAccounting:
    @pytest.mark.asyncio
    async def test_record_turn_persists_totals(self, make_registry):
        registry = make_registry()
        try:
            await registry.get_or_create("t1")
            stats = SessionStats(total_cost=0.5, total_input_tokens=10, total_output_tokens=5)

            registry.record_turn("t1", stats)

            record = registry.store.get("t1")
            assert record.message_count == 1
            assert record.total_cost == 0.5
            assert record.total_input_tokens == 10
            assert record.total_output_tokens == 5
        finally:
            await registry.pause_all()

    def test_record_turn_without_record_is_noop(self, make_registry):
        registry = make_registry()
        registry.record_turn("missing", SessionStats())
        assert registry.store.get("missing") is None
