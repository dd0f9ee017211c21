"""Registry of live Claude Code sessions, one per chat thread."""
import asyncio
from pathlib import Path
from typing import Dict, List, Optional, Set, Union
import structlog

from ..models import SessionRecord, SessionState, SessionStats
from ..models.session import utc_now
from ..storage import SessionStore
from ..utils.config import Config
from .process import ProcessSession, ResumeError, SessionStartError

logger = structlog.get_logger()


class SessionLimitError(RuntimeError):
    """Too many live sessions."""


class RegistryClosedError(RuntimeError):
    """The registry is shutting down and refuses new sessions."""


class SessionStoppedError(RuntimeError):
    """The thread was stopped while its session was still starting."""


def _retrieve_exception(future: asyncio.Future):
    # Reservations nobody waited on must not warn about unretrieved errors
    if not future.cancelled():
        future.exception()


class SessionRegistry:
    """Maps thread IDs to live sessions and resumable records.

    ``get_or_create`` decides between reuse, resume and create under one lock,
    records a reservation, and spawns outside the lock. Concurrent callers for
    the same thread wait on that reservation, so a thread never gets two
    processes.
    """

    def __init__(self, store: SessionStore, config: Config):
        self.store = store
        self.config = config
        self._sessions: Dict[str, ProcessSession] = {}
        self._pending: Dict[str, asyncio.Future] = {}
        # Threads whose in-flight spawn must be torn down instead of registered
        self._cancelled: Set[str] = set()
        self._lock = asyncio.Lock()
        self._closing = False

    def get(self, thread_id: str) -> Optional[ProcessSession]:
        """Live session for a thread, if any."""
        session = self._sessions.get(thread_id)
        if session is not None and session.is_alive():
            return session
        return None

    @property
    def live_count(self) -> int:
        return sum(1 for s in self._sessions.values() if s.is_alive())

    async def get_or_create(
        self,
        thread_id: str,
        working_dir: Optional[Union[str, Path]] = None,
        channel_id: Optional[str] = None,
    ) -> ProcessSession:
        """Return the thread's live session, resuming or creating one if needed."""
        async with self._lock:
            if self._closing:
                raise RegistryClosedError("Session registry is shutting down")

            session = self._sessions.get(thread_id)
            if session is not None:
                if session.is_alive():
                    logger.debug("Reusing session", thread_id=thread_id)
                    return session
                del self._sessions[thread_id]

            reservation = self._pending.get(thread_id)
            owner = reservation is None
            if owner:
                if len(self._sessions) + len(self._pending) >= self.config.max_sessions:
                    raise SessionLimitError(
                        f"Maximum of {self.config.max_sessions} concurrent sessions reached"
                    )
                reservation = asyncio.get_running_loop().create_future()
                reservation.add_done_callback(_retrieve_exception)
                self._pending[thread_id] = reservation
                record = self.store.get(thread_id)

        if not owner:
            return await asyncio.shield(reservation)

        try:
            session = await self._spawn(thread_id, record, working_dir, channel_id)
        except asyncio.CancelledError:
            async with self._lock:
                self._release(thread_id)
            reservation.cancel()
            raise
        except Exception as e:
            async with self._lock:
                self._release(thread_id)
            reservation.set_exception(e)
            raise

        async with self._lock:
            cancelled = self._release(thread_id)
            closing = self._closing
            if not closing and not cancelled:
                self._sessions[thread_id] = session

        if cancelled:
            logger.info("Thread stopped while starting, killing new session", thread_id=thread_id)
            await session.kill()
            self.store.remove(thread_id)
            error = SessionStoppedError(f"Session for thread {thread_id} was stopped while starting")
            reservation.set_exception(error)
            raise error

        if closing:
            await self._pause(thread_id, session)
            error = RegistryClosedError("Session registry is shutting down")
            reservation.set_exception(error)
            raise error

        reservation.set_result(session)
        return session

    def _release(self, thread_id: str) -> bool:
        """Drop the thread's reservation under the lock. True if a stop was requested meanwhile."""
        self._pending.pop(thread_id, None)
        if thread_id in self._cancelled:
            self._cancelled.discard(thread_id)
            return True
        return False

    async def _spawn(
        self,
        thread_id: str,
        record: Optional[SessionRecord],
        working_dir: Optional[Union[str, Path]],
        channel_id: Optional[str],
    ) -> ProcessSession:
        if record is not None and record.native_session_id:
            channel_id = channel_id or record.channel_id
            working_dir = working_dir or record.working_dir or self.config.working_dir_for(channel_id)
            session = await self._resume(thread_id, record, working_dir, channel_id)
            if session is not None:
                self._persist(thread_id, session, channel_id, working_dir, previous=record)
                return session

        working_dir = working_dir or self.config.working_dir_for(channel_id)
        logger.info("Creating new session", thread_id=thread_id, channel_id=channel_id)
        session = self._build(thread_id, working_dir, channel_id)
        await session.start()
        self._persist(thread_id, session, channel_id, working_dir)
        return session

    async def _resume(
        self,
        thread_id: str,
        record: SessionRecord,
        working_dir: Union[str, Path],
        channel_id: Optional[str],
    ) -> Optional[ProcessSession]:
        """Resume a persisted session, or None when a new one is needed.

        A rejected resume falls back immediately. Any other start failure is
        retried once, since a new session would lose the conversation.
        """
        for attempt in range(2):
            logger.info(
                "Attempting to resume session",
                thread_id=thread_id,
                native_session_id=record.native_session_id,
                attempt=attempt + 1,
            )
            session = self._build(thread_id, working_dir, channel_id, record=record)
            try:
                await session.start()
                return session
            except ResumeError as e:
                logger.warning("Resume rejected, creating new session", thread_id=thread_id, error=str(e))
                return None
            except SessionStartError as e:
                logger.warning("Resume failed", thread_id=thread_id, attempt=attempt + 1, error=str(e))

        logger.warning("Resume failed twice, creating new session", thread_id=thread_id)
        return None

    def _build(
        self,
        thread_id: str,
        working_dir: Union[str, Path],
        channel_id: Optional[str],
        record: Optional[SessionRecord] = None,
    ) -> ProcessSession:
        config = self.config
        stats = None
        if record is not None:
            stats = SessionStats.seeded(
                total_cost=record.total_cost,
                total_input_tokens=record.total_input_tokens,
                total_output_tokens=record.total_output_tokens,
            )
        return ProcessSession(
            thread_id=thread_id,
            working_dir=working_dir,
            command=config.claude_command,
            native_session_id=record.native_session_id if record else None,
            resume=record is not None,
            permission_delegate=config.permission_delegate(thread_id, channel_id),
            permission_mode=config.permission_mode,
            system_prompt=config.system_prompt(),
            anthropic_key=config.anthropic_api_key,
            stats=stats,
            resume_probe=config.resume_probe_seconds,
            on_exit=self._on_session_exit,
        )

    def _persist(
        self,
        thread_id: str,
        session: ProcessSession,
        channel_id: Optional[str],
        working_dir: Union[str, Path],
        previous: Optional[SessionRecord] = None,
    ):
        now = utc_now()
        stats = session.stats
        resumed = previous is not None and previous.native_session_id == session.native_session_id
        self.store.save(
            SessionRecord(
                thread_id=thread_id,
                native_session_id=session.native_session_id,
                channel_id=str(channel_id) if channel_id is not None else None,
                working_dir=str(working_dir),
                started_at=previous.started_at if resumed else now,
                last_activity_at=now,
                is_paused=False,
                message_count=previous.message_count if resumed else 0,
                total_cost=stats.total_cost,
                total_input_tokens=stats.total_input_tokens,
                total_output_tokens=stats.total_output_tokens,
            )
        )

    def touch(self, thread_id: str):
        """Record activity on the thread."""
        self.store.touch(thread_id)

    def record_turn(self, thread_id: str, stats: SessionStats):
        """Persist usage after a completed turn."""
        record = self.store.get(thread_id)
        if record is None:
            return
        record.message_count += 1
        record.last_activity_at = utc_now()
        record.total_cost = stats.total_cost
        record.total_input_tokens = stats.total_input_tokens
        record.total_output_tokens = stats.total_output_tokens
        self.store.save(record)

    async def stop_session(self, thread_id: str, graceful: bool = False) -> bool:
        """Terminate a thread's session and forget it. Safe to repeat.

        A session still being spawned or resumed is torn down by its spawner
        once the start finishes; this waits for that.
        """
        async with self._lock:
            session = self._sessions.pop(thread_id, None)
            reservation = self._pending.get(thread_id)
            if reservation is not None:
                self._cancelled.add(thread_id)

        if reservation is not None:
            logger.info("Stopping thread with a session still starting", thread_id=thread_id)
            # Outcome is the spawner's to report; only completion matters here
            await asyncio.wait({reservation})

        if session is not None:
            if graceful:
                await session.stop(timeout=self.config.shutdown_grace_seconds)
            else:
                await session.kill()

        removed = self.store.remove(thread_id)
        if session is not None or reservation is not None or removed:
            logger.info("Session stopped", thread_id=thread_id, graceful=graceful)
            return True
        return False

    async def pause_session(self, thread_id: str) -> bool:
        """Stop the process but keep the record for a lazy resume."""
        async with self._lock:
            session = self._sessions.pop(thread_id, None)
        if session is None:
            return False
        await self._pause(thread_id, session)
        return True

    async def pause_all(self):
        """Pause every live session for shutdown. New sessions are refused afterwards."""
        async with self._lock:
            self._closing = True
            sessions = list(self._sessions.items())
            self._sessions.clear()

        if not sessions:
            return

        logger.info("Pausing sessions", count=len(sessions))
        results = await asyncio.gather(
            *(self._pause(thread_id, session) for thread_id, session in sessions),
            return_exceptions=True,
        )
        for (thread_id, _), result in zip(sessions, results):
            if isinstance(result, Exception):
                logger.error("Error pausing session", thread_id=thread_id, error=str(result))

    async def _pause(self, thread_id: str, session: ProcessSession):
        record = self.store.get(thread_id)
        if record is not None:
            stats = session.stats
            record.is_paused = True
            record.total_cost = stats.total_cost
            record.total_input_tokens = stats.total_input_tokens
            record.total_output_tokens = stats.total_output_tokens
            self.store.save(record)
        logger.info("Pausing session", thread_id=thread_id, native_session_id=session.native_session_id)
        await session.stop(timeout=self.config.shutdown_grace_seconds, state=SessionState.PAUSED)

    async def resume_active(self) -> List[str]:
        """Bring back sessions that were not paused, e.g. after a crash."""
        resumed = []
        for thread_id, record in self.store.load().items():
            if record.is_paused:
                continue
            try:
                await self.get_or_create(thread_id)
            except (SessionStartError, SessionLimitError, RegistryClosedError, SessionStoppedError) as e:
                logger.warning("Startup resume failed", thread_id=thread_id, error=str(e))
                continue
            resumed.append(thread_id)
        return resumed

    async def pause_idle(self, timeout_seconds: float) -> List[str]:
        """Pause sessions with no turn in flight and no recent activity."""
        now = utc_now()
        async with self._lock:
            candidates = list(self._sessions.items())

        paused = []
        for thread_id, session in candidates:
            if session.busy:
                continue
            record = self.store.get(thread_id)
            if record is None:
                continue
            idle_seconds = (now - record.last_activity_at).total_seconds()
            if idle_seconds <= timeout_seconds:
                continue
            logger.info("Pausing idle session", thread_id=thread_id, idle_minutes=round(idle_seconds / 60))
            if await self.pause_session(thread_id):
                paused.append(thread_id)
        return paused

    async def _on_session_exit(self, session: ProcessSession):
        async with self._lock:
            if self._sessions.get(session.thread_id) is session:
                del self._sessions[session.thread_id]
                logger.info(
                    "Removed exited session",
                    thread_id=session.thread_id,
                    state=session.state.value,
                )
