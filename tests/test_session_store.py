"""Tests for the JSON session store."""
import json
from datetime import timedelta

from threadbridge.models import SessionRecord
from threadbridge.models.session import utc_now
from threadbridge.storage import SessionStore


def _record(thread_id="t1", **kwargs):
    kwargs.setdefault("native_session_id", f"native-{thread_id}")
    return SessionRecord(thread_id=thread_id, **kwargs)


class TestSessionStore:
    def test_missing_file_loads_empty(self, tmp_path):
        store = SessionStore(tmp_path / "sessions.json")
        assert store.load() == {}
        assert store.get("t1") is None

    def test_records_survive_reload(self, tmp_path):
        path = tmp_path / "data" / "sessions.json"
        store = SessionStore(path)
        store.save(_record("t1", channel_id="c1", working_dir="/work", total_cost=0.25))
        store.save(_record("c1:42"))

        reloaded = SessionStore(path).load()

        assert set(reloaded) == {"t1", "c1:42"}
        assert reloaded["t1"].native_session_id == "native-t1"
        assert reloaded["t1"].channel_id == "c1"
        assert reloaded["t1"].total_cost == 0.25

    def test_thread_id_is_key_not_field(self, tmp_path):
        path = tmp_path / "sessions.json"
        SessionStore(path).save(_record("t1"))

        raw = json.loads(path.read_text())
        assert list(raw) == ["t1"]
        assert "thread_id" not in raw["t1"]
        assert raw["t1"]["native_session_id"] == "native-t1"

    def test_no_temp_files_left_behind(self, tmp_path):
        store = SessionStore(tmp_path / "sessions.json")
        store.save(_record("t1"))
        store.save(_record("t2"))
        assert [p.name for p in tmp_path.iterdir()] == ["sessions.json"]

    def test_returned_records_are_copies(self, tmp_path):
        store = SessionStore(tmp_path / "sessions.json")
        store.save(_record("t1"))

        record = store.get("t1")
        record.message_count = 99

        assert store.get("t1").message_count == 0

    def test_remove(self, tmp_path):
        store = SessionStore(tmp_path / "sessions.json")
        store.save(_record("t1"))

        assert store.remove("t1") is True
        assert store.remove("t1") is False
        assert SessionStore(tmp_path / "sessions.json").load() == {}

    def test_touch_updates_activity(self, tmp_path):
        store = SessionStore(tmp_path / "sessions.json")
        old = utc_now() - timedelta(hours=3)
        store.save(_record("t1", last_activity_at=old))

        assert store.touch("t1") is True
        assert store.touch("unknown") is False
        assert store.get("t1").last_activity_at > old

    def test_touch_writes_are_throttled(self, tmp_path):
        path = tmp_path / "sessions.json"
        store = SessionStore(path, touch_interval=3600)
        old = utc_now() - timedelta(hours=3)
        store.save(_record("t1", last_activity_at=old))
        on_disk = path.read_text()

        assert store.touch("t1") is True

        # Cached value moves, the file waits for the next real write
        assert store.get("t1").last_activity_at > old
        assert path.read_text() == on_disk

        store.save(store.get("t1"))
        assert SessionStore(path).get("t1").last_activity_at > old

    def test_touch_writes_once_interval_elapsed(self, tmp_path):
        path = tmp_path / "sessions.json"
        store = SessionStore(path, touch_interval=0)
        old = utc_now() - timedelta(hours=3)
        store.save(_record("t1", last_activity_at=old))

        store.touch("t1")

        assert SessionStore(path).get("t1").last_activity_at > old

    def test_corrupt_file_loads_empty(self, tmp_path):
        path = tmp_path / "sessions.json"
        path.write_text("{not json")

        store = SessionStore(path)
        assert store.load() == {}

        store.save(_record("t1"))
        assert set(SessionStore(path).load()) == {"t1"}

    def test_invalid_record_is_skipped(self, tmp_path):
        path = tmp_path / "sessions.json"
        path.write_text(json.dumps({
            "good": {"native_session_id": "abc"},
            "bad": {"message_count": "lots"},
            "worse": "not an object",
        }))

        assert set(SessionStore(path).load()) == {"good"}

    def test_write_failure_is_not_raised(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("a file where a directory should be")
        store = SessionStore(blocker / "sessions.json")

        store.save(_record("t1"))

        assert store.get("t1") is not None
