"""Durable store of resumable sessions, keyed by thread ID."""
import json
import os
import tempfile
import threading
import time
from pathlib import Path
from typing import Dict, Optional
import structlog
from pydantic import ValidationError

from ..models import SessionRecord
from ..models.session import utc_now

logger = structlog.get_logger()

# Activity bumps alone rewrite the file at most this often
TOUCH_WRITE_INTERVAL = 30.0


class SessionStore:
    """JSON file of session records with an in-memory cache.

    Saves and removals rewrite the whole file through a temp file and
    ``os.replace`` so readers never observe a partial write. Activity
    bumps are batched, see ``touch``.
    """

    def __init__(self, path: Path, touch_interval: float = TOUCH_WRITE_INTERVAL):
        self.path = Path(path)
        self.touch_interval = touch_interval
        self._lock = threading.Lock()
        self._cache: Optional[Dict[str, SessionRecord]] = None
        self._written_at: Optional[float] = None

    def load(self) -> Dict[str, SessionRecord]:
        """Return a copy of all records."""
        with self._lock:
            return {k: v.model_copy() for k, v in self._records().items()}

    def get(self, thread_id: str) -> Optional[SessionRecord]:
        with self._lock:
            record = self._records().get(thread_id)
            return record.model_copy() if record else None

    def save(self, record: SessionRecord):
        with self._lock:
            self._records()[record.thread_id] = record.model_copy()
            self._write()

    def remove(self, thread_id: str) -> bool:
        """Delete a record. Returns False if there was nothing to delete."""
        with self._lock:
            records = self._records()
            if thread_id not in records:
                return False
            del records[thread_id]
            self._write()
            return True

    def touch(self, thread_id: str) -> bool:
        """Bump ``last_activity_at`` for an existing record.

        The cache is updated at once. The file is only rewritten when nothing
        was written for ``touch_interval`` seconds; the next save carries the
        bump otherwise.
        """
        with self._lock:
            record = self._records().get(thread_id)
            if record is None:
                return False
            record.last_activity_at = utc_now()
            if self._written_at is None or time.monotonic() - self._written_at >= self.touch_interval:
                self._write()
            return True

    def _records(self) -> Dict[str, SessionRecord]:
        if self._cache is None:
            self._cache = self._read()
        return self._cache

    def _read(self) -> Dict[str, SessionRecord]:
        if not self.path.exists():
            return {}

        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Failed to read session store", path=str(self.path), error=str(e))
            return {}

        if not isinstance(raw, dict):
            logger.warning("Session store is not a JSON object", path=str(self.path))
            return {}

        records = {}
        for thread_id, data in raw.items():
            try:
                records[thread_id] = SessionRecord.from_store(thread_id, data)
            except (TypeError, ValidationError) as e:
                logger.warning("Skipping invalid session record", thread_id=thread_id, error=str(e))
        return records

    def _write(self):
        data = {thread_id: record.to_store() for thread_id, record in self._cache.items()}
        tmp = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=self.path.name + ".", dir=str(self.path.parent))
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.write("\n")
            os.replace(tmp, self.path)
            tmp = None
            self._written_at = time.monotonic()
        except OSError as e:
            logger.error("Failed to write session store", path=str(self.path), error=str(e))
        finally:
            if tmp is not None and os.path.exists(tmp):
                os.unlink(tmp)
