"""Claude Code subprocess speaking the stream-json protocol."""
import asyncio
import json
import os
import signal
import tempfile
import time
import uuid
from collections import deque
from pathlib import Path
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Union
import structlog

from ..models import MessageContent, SessionState, SessionStats, ToolUse, TurnResult
from ..utils.logging import bind_session_context

logger = structlog.get_logger()

# Assistant messages and tool results arrive as single, sometimes huge, lines
STREAM_LIMIT = 16 * 1024 * 1024
STDERR_TAIL_LINES = 5
JOIN_TIMEOUT = 3.0
PERMISSION_TOOL = "mcp__threadbridge__permission_prompt"

TextCallback = Callable[[str], Awaitable[None]]
ToolUseCallback = Callable[[ToolUse], Awaitable[None]]
CompleteCallback = Callable[[TurnResult], Awaitable[None]]
ExitHook = Callable[["ProcessSession"], Awaitable[None]]


class SessionStartError(RuntimeError):
    """The Claude Code process could not be started."""


class ResumeError(SessionStartError):
    """The CLI rejected ``--resume`` (expired or unknown session)."""


class SessionBusyError(RuntimeError):
    """A message was sent while the previous turn was still running."""


class ProcessSession:
    """Owns one Claude Code subprocess and its newline-JSON streams.

    Output is parsed by a reader task and handed to a dispatcher task through
    a queue, so callbacks run in event order without blocking the reader.
    """

    def __init__(
        self,
        thread_id: str,
        working_dir: Union[str, Path],
        command: Optional[List[str]] = None,
        native_session_id: Optional[str] = None,
        resume: bool = False,
        permission_delegate: Optional[Dict[str, Any]] = None,
        permission_mode: str = "bypassPermissions",
        system_prompt: Optional[str] = None,
        anthropic_key: Optional[str] = None,
        stats: Optional[SessionStats] = None,
        resume_probe: float = 1.0,
        on_exit: Optional[ExitHook] = None,
    ):
        if resume and not native_session_id:
            raise ValueError("resume requires an existing native session id")

        self.thread_id = thread_id
        self.native_session_id = native_session_id or str(uuid.uuid4())
        self.resume = resume
        self.working_dir = Path(working_dir)
        self.command = list(command or ["claude"])
        self.permission_delegate = permission_delegate
        self.permission_mode = permission_mode
        self.system_prompt = system_prompt
        self.anthropic_key = anthropic_key
        self.resume_probe = resume_probe
        self.stats = stats or SessionStats()
        self.state = SessionState.UNSTARTED
        self.process: Optional[asyncio.subprocess.Process] = None

        self._on_text: Optional[TextCallback] = None
        self._on_tool_use: Optional[ToolUseCallback] = None
        self._on_complete: Optional[CompleteCallback] = None
        self._on_exit = on_exit

        self._events: asyncio.Queue = asyncio.Queue()
        self._write_lock = asyncio.Lock()
        self._exited = asyncio.Event()
        self._reader_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._dispatch_task: Optional[asyncio.Task] = None
        self._stderr_tail: Deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._turn_active = False
        self._stopping = False
        self._mcp_config_path: Optional[Path] = None

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    @property
    def busy(self) -> bool:
        """True while a turn has been sent and not yet completed."""
        return self._turn_active

    def is_alive(self) -> bool:
        """Check if subprocess is running."""
        return (
            self.process is not None
            and self.process.returncode is None
            and not self._exited.is_set()
        )

    def set_callbacks(
        self,
        on_text: Optional[TextCallback] = None,
        on_tool_use: Optional[ToolUseCallback] = None,
        on_complete: Optional[CompleteCallback] = None,
    ):
        """Route the next turn's events. Replaces any previous wiring."""
        self._on_text = on_text
        self._on_tool_use = on_tool_use
        self._on_complete = on_complete

    def build_args(self) -> List[str]:
        """CLI invocation for this session."""
        args = [
            *self.command,
            "--input-format", "stream-json",
            "--output-format", "stream-json",
            "--verbose",
        ]

        if self.resume:
            args += ["--resume", self.native_session_id]
        else:
            args += ["--session-id", self.native_session_id]

        if self.permission_delegate:
            args += [
                "--permission-prompt-tool", PERMISSION_TOOL,
                "--mcp-config", str(self._write_mcp_config()),
            ]
        else:
            args += ["--permission-mode", self.permission_mode]

        if self.system_prompt:
            args += ["--append-system-prompt", self.system_prompt]

        return args

    async def start(self) -> int:
        """Start the subprocess and its reader tasks, return PID."""
        self.state = SessionState.STARTING

        env = os.environ.copy()
        env["CLAUDE_TELEMETRY_OPTOUT"] = "1"
        # A session started from inside tmux must not think it owns the pane
        env.pop("TMUX", None)
        env.pop("TMUX_PANE", None)
        if self.anthropic_key:
            env["ANTHROPIC_API_KEY"] = self.anthropic_key

        logger.info(
            "Starting Claude Code process",
            thread_id=self.thread_id,
            native_session_id=self.native_session_id,
            resume=self.resume,
            working_dir=str(self.working_dir),
        )

        try:
            self.working_dir.mkdir(parents=True, exist_ok=True)
            args = self.build_args()
            self.process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.working_dir),
                env=env,
                preexec_fn=os.setsid,  # Own process group for signal delivery
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            self.state = SessionState.CRASHED
            self._remove_mcp_config()
            raise SessionStartError(f"Failed to start {self.command[0]}: {e}") from e

        if self.resume and self.resume_probe > 0:
            await self._probe_resume()

        self._reader_task = asyncio.create_task(self._read_stdout())
        self._stderr_task = asyncio.create_task(self._read_stderr())
        self._dispatch_task = asyncio.create_task(self._dispatch_events())
        self.state = SessionState.RUNNING

        logger.info(
            "Claude Code process started",
            thread_id=self.thread_id,
            native_session_id=self.native_session_id,
            pid=self.process.pid,
        )
        return self.process.pid

    async def _probe_resume(self):
        """Fail fast when the CLI exits right away on ``--resume``."""
        try:
            returncode = await asyncio.wait_for(self.process.wait(), timeout=self.resume_probe)
        except asyncio.TimeoutError:
            return

        stderr = (await self.process.stderr.read()).decode("utf-8", errors="replace").strip()
        self.process.stdin.close()
        self.state = SessionState.CRASHED
        self._remove_mcp_config()
        raise ResumeError(
            f"Resume of {self.native_session_id} exited with code {returncode}: {stderr[-200:]}"
        )

    async def send_message(self, content: MessageContent) -> bool:
        """Write one user turn to the subprocess.

        Returns False when the process is gone or the pipe is broken.
        """
        payload = json.dumps({"type": "user", "message": {"role": "user", "content": content}}) + "\n"

        async with self._write_lock:
            if not self.is_alive():
                logger.warning(
                    "Cannot send message to dead session",
                    thread_id=self.thread_id,
                    native_session_id=self.native_session_id,
                )
                return False
            if self._turn_active:
                raise SessionBusyError(f"Session for thread {self.thread_id} is mid-turn")

            self._turn_active = True
            self.stats.begin_turn()
            try:
                self.process.stdin.write(payload.encode("utf-8"))
                await self.process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                self._turn_active = False
                logger.error("Failed to write to Claude Code", thread_id=self.thread_id, error=str(e))
                return False

        logger.debug("Sent message to Claude Code", thread_id=self.thread_id, bytes=len(payload))
        return True

    def interrupt(self) -> bool:
        """Ask the process group to abort the current turn (SIGINT)."""
        if not self.is_alive():
            return False
        logger.info("Interrupting Claude Code process", thread_id=self.thread_id, pid=self.pid)
        return self._signal(signal.SIGINT)

    async def kill(self, state: SessionState = SessionState.STOPPED):
        """SIGKILL the process group and reclaim everything."""
        if self.process is None:
            return

        self._stopping = True
        self.state = state
        logger.info("Killing Claude Code process", thread_id=self.thread_id, pid=self.pid)
        self._signal(signal.SIGKILL)
        await self._reap()

    async def stop(self, timeout: float = 2.0, state: SessionState = SessionState.STOPPED):
        """SIGINT, wait for graceful exit, fallback to SIGKILL."""
        if self.process is None:
            return

        self._stopping = True
        self.state = state
        if self._signal(signal.SIGINT):
            try:
                await asyncio.wait_for(self.process.wait(), timeout=timeout)
                logger.info("Claude Code process stopped gracefully", thread_id=self.thread_id)
            except asyncio.TimeoutError:
                logger.warning(
                    "Claude Code process ignored SIGINT, forcing kill",
                    thread_id=self.thread_id,
                    pid=self.pid,
                )
                self._signal(signal.SIGKILL)
        await self._reap()

    def _signal(self, sig: int) -> bool:
        if self.process is None or self.process.returncode is not None:
            return False
        try:
            os.killpg(self.process.pid, sig)
        except (ProcessLookupError, PermissionError):
            return False
        return True

    async def _reap(self):
        await self.process.wait()

        stdin = self.process.stdin
        if stdin is not None and not stdin.is_closing():
            stdin.close()

        current = asyncio.current_task()
        readers = [t for t in (self._reader_task, self._stderr_task) if t is not None and t is not current]
        if readers:
            _, pending = await asyncio.wait(readers, timeout=JOIN_TIMEOUT)
            for task in pending:
                task.cancel()
        # A reader cancelled before it saw EOF must not leave the turn open
        self._close_events(self.process.returncode)

        # Queued events end with a sentinel, so the dispatcher always finishes;
        # cancelling it could drop the turn's completion.
        dispatcher = self._dispatch_task
        if dispatcher is not None and dispatcher is not current:
            _, pending = await asyncio.wait({dispatcher}, timeout=JOIN_TIMEOUT)
            if pending:
                logger.warning(
                    "Callbacks still running after stop, letting them finish",
                    thread_id=self.thread_id,
                    queued=self._events.qsize(),
                )

        self._remove_mcp_config()

    async def _read_stdout(self):
        """Background task: parse each stdout line as one JSON event."""
        bind_session_context(self.thread_id, self.native_session_id)
        stdout = self.process.stdout
        while True:
            try:
                line = await stdout.readline()
            except ValueError as e:
                logger.warning("Skipping oversized Claude output line", error=str(e))
                continue
            if not line:
                break
            self._process_line(line.decode("utf-8", errors="replace").strip())

        await self._handle_exit()

    async def _read_stderr(self):
        bind_session_context(self.thread_id, self.native_session_id)
        stderr = self.process.stderr
        while True:
            try:
                raw = await stderr.readline()
            except ValueError:
                continue
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").strip()
            if line:
                self._stderr_tail.append(line)
                logger.debug("Claude stderr", line=line)

    def _process_line(self, line: str):
        if not line:
            return
        try:
            event = json.loads(line)
        except ValueError:
            logger.warning("Unparsable Claude output", line=line[:200])
            return
        if not isinstance(event, dict):
            return
        try:
            self._handle_event(event)
        except Exception:
            logger.exception("Failed to handle Claude event", type=event.get("type"))

    def _handle_event(self, event: Dict[str, Any]):
        kind = event.get("type")
        if kind == "system":
            self._handle_system_event(event)
        elif kind == "assistant":
            self._handle_assistant_event(event)
        elif kind == "result":
            self._handle_result_event(event)

    def _handle_system_event(self, event: Dict[str, Any]):
        reported = event.get("session_id")
        logger.debug("Claude system event", subtype=event.get("subtype"))
        if event.get("subtype") == "init" and reported and reported != self.native_session_id:
            logger.warning(
                "Claude reported a different session id",
                expected=self.native_session_id,
                reported=reported,
            )

    def _handle_assistant_event(self, event: Dict[str, Any]):
        message = event.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, list):
            return

        blocks = [block for block in content if isinstance(block, dict)]
        text = "".join(block.get("text", "") for block in blocks if block.get("type") == "text")
        if text:
            self.stats.mark_first_token()
            self._events.put_nowait(("text", text))

        for block in blocks:
            if block.get("type") == "tool_use":
                tool_use = ToolUse(
                    id=block.get("id"),
                    name=block.get("name") or "unknown",
                    input=block.get("input") or {},
                )
                self._events.put_nowait(("tool_use", tool_use))

    def _handle_result_event(self, event: Dict[str, Any]):
        self.stats.apply_result(event)
        if not self._turn_active:
            logger.debug("Result event outside of a turn")
            return

        self._turn_active = False
        error = None
        if event.get("is_error"):
            error = str(event.get("result") or event.get("subtype") or "error")

        logger.info(
            "Claude turn complete",
            turn_input_tokens=self.stats.turn_input_tokens,
            turn_output_tokens=self.stats.turn_output_tokens,
            total_cost=round(self.stats.total_cost, 4),
            model=self.stats.model_id,
            error=error,
        )
        self._events.put_nowait(("complete", self._turn_result(error)))

    async def _handle_exit(self):
        returncode = await self.process.wait()
        if self._stderr_task is not None:
            await asyncio.wait({self._stderr_task}, timeout=0.5)

        self._close_events(returncode)

        if self._on_exit is not None:
            try:
                await self._on_exit(self)
            except Exception:
                logger.exception("Session exit hook failed")

    def _close_events(self, returncode: Optional[int]):
        """Finish the event stream once: synthesize the open turn's completion, then the sentinel."""
        if self._exited.is_set():
            return

        # No await between the busy check and _exited.set(): send_message
        # relies on one of the two being visible.
        if self._turn_active:
            self._turn_active = False
            self.stats.complete_at = time.monotonic()
            error = self._exit_error(returncode)
            logger.warning("Claude Code process exited mid-turn", thread_id=self.thread_id, error=error)
            self._events.put_nowait(("complete", self._turn_result(error)))

        if not self._stopping:
            self.state = SessionState.CRASHED
            logger.warning(
                "Claude Code process exited",
                thread_id=self.thread_id,
                returncode=returncode,
                stderr=list(self._stderr_tail),
            )
        self._events.put_nowait(None)
        self._exited.set()

    def _exit_error(self, returncode: Optional[int]) -> str:
        if self._stopping:
            return "Session stopped"
        message = f"Claude Code exited unexpectedly (code {returncode})"
        if self._stderr_tail:
            message += f": {self._stderr_tail[-1][:200]}"
        return message

    def _turn_result(self, error: Optional[str]) -> TurnResult:
        return TurnResult(
            native_session_id=self.native_session_id,
            stats=self.stats.model_copy(),
            error=error,
        )

    async def _dispatch_events(self):
        """Background task: deliver queued events to the current callbacks."""
        bind_session_context(self.thread_id, self.native_session_id)
        while True:
            item = await self._events.get()
            if item is None:
                break

            kind, payload = item
            if kind == "text":
                callback = self._on_text
            elif kind == "tool_use":
                callback = self._on_tool_use
            else:
                callback = self._on_complete
            if callback is None:
                continue

            try:
                await callback(payload)
            except Exception:
                logger.exception("Session callback failed", kind=kind)

    def _write_mcp_config(self) -> Path:
        if self._mcp_config_path is None:
            path = Path(tempfile.gettempdir()) / f"threadbridge-mcp-{self.native_session_id}.json"
            config = {"mcpServers": {"threadbridge": self.permission_delegate}}
            fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w") as f:
                json.dump(config, f)
            os.chmod(path, 0o600)
            self._mcp_config_path = path
        return self._mcp_config_path

    def _remove_mcp_config(self):
        if self._mcp_config_path is None:
            return
        try:
            self._mcp_config_path.unlink()
        except FileNotFoundError:
            pass
        self._mcp_config_path = None
