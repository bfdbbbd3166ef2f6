"""Execution sessions.

An :class:`ExecutionSession` binds one workspace, one compiled program and
at most one streaming channel into a lifecycle::

    pending -> compiling -> ready -> running <-> waiting_input -> exited -> closed
                        \\-> failed

Everything that can end a run (program exit, either timer, a ``kill``
message, the client going away, a launch failure, an internal error)
converges on :meth:`ExecutionSession._finish`, which sends exactly one
``exit`` message, closes the channel, deletes the workspace and drops the
token from the :class:`SessionRegistry`.

A session is driven from a single asyncio event loop: output pumps, the
client receive loop and the timers all run there, and no state change spans
an ``await``, so events for one session never mutate it concurrently.
"""

from __future__ import annotations

import abc
import asyncio
import base64
import enum
import json
import logging
import mimetypes
import secrets
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from .compiler.base import RunCommand
from .config import RunLimits
from .errors import (
    LAUNCH_FAILED_CODE,
    ChannelError,
    InvalidTransition,
    LaunchError,
    RuntimeFault,
    SessionBusy,
    UnknownSession,
    WorkspaceError,
)
from .launcher import Launcher, ProcessHandle
from .models import ClientMessage, ExitMetrics
from .protocol import (
    ScanEvent,
    data_message,
    exit_message,
    image_message,
    pong_message,
    stderr_scanner,
    stdin_request_message,
    stdout_scanner,
)
from .workspace import Workspace, WorkspaceStore

logger = logging.getLogger(__name__)

# How long to keep draining output after the program exited; a grandchild
# holding the pipes open must not stall the exit message.
DRAIN_TIMEOUT_SECS = 1.0
READ_CHUNK = 4096
# Characters of client input held for a program that is not reading stdin.
STDIN_BACKLOG_LIMIT = 4 * 1024 * 1024


class Phase(str, enum.Enum):
    PENDING = "pending"
    COMPILING = "compiling"
    READY = "ready"
    FAILED = "failed"
    RUNNING = "running"
    WAITING_INPUT = "waiting_input"
    EXITED = "exited"
    CLOSED = "closed"


TRANSITIONS = {
    Phase.PENDING: {Phase.COMPILING, Phase.FAILED},
    Phase.COMPILING: {Phase.READY, Phase.FAILED},
    Phase.READY: {Phase.RUNNING, Phase.EXITED, Phase.CLOSED},
    Phase.RUNNING: {Phase.WAITING_INPUT, Phase.EXITED},
    Phase.WAITING_INPUT: {Phase.RUNNING, Phase.EXITED},
    Phase.EXITED: {Phase.CLOSED},
    Phase.FAILED: set(),
    Phase.CLOSED: set(),
}


class BudgetTimer:
    """A one-shot timer that can be paused and resumed.

    The remaining budget is recomputed on every pause, so resuming continues
    where the timer left off instead of starting over.
    """

    def __init__(self, budget_secs: float, on_expire: Callable[[], None]) -> None:
        self.remaining = max(budget_secs, 0.0)
        self.expired = False
        self._on_expire = on_expire
        self._handle: Optional[asyncio.TimerHandle] = None
        self._started_at = 0.0

    @property
    def armed(self) -> bool:
        return self._handle is not None

    def start(self) -> None:
        if self.armed or self.expired:
            return
        loop = asyncio.get_running_loop()
        self._started_at = loop.time()
        self._handle = loop.call_later(self.remaining, self._fire)

    resume = start

    def pause(self) -> None:
        if self._handle is None:
            return
        elapsed = asyncio.get_running_loop().time() - self._started_at
        self.remaining = max(self.remaining - elapsed, 0.0)
        self._handle.cancel()
        self._handle = None

    def cancel(self) -> None:
        self.pause()

    def _fire(self) -> None:
        self._handle = None
        self.remaining = 0.0
        self.expired = True
        self._on_expire()


class Channel(abc.ABC):
    """The client side of a session, as seen by the session."""

    @abc.abstractmethod
    async def send(self, message: Dict[str, Any]) -> bool:
        """Send one message.  Returns False once the channel is gone."""

    @abc.abstractmethod
    async def receive(self) -> Optional[str]:
        """Next raw client message, or None when the peer closed the channel."""

    @abc.abstractmethod
    async def close(self, code: int = 1000, reason: str = "") -> None:
        """Close the channel.  Must tolerate a channel closed by the peer."""


def parse_client_message(raw: str) -> ClientMessage:
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise ChannelError(f"not JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ChannelError("message is not an object")
    try:
        return ClientMessage.model_validate(payload)
    except ValidationError as exc:
        raise ChannelError(f"invalid message: {exc.error_count()} error(s)") from exc


class ExecutionSession:
    """Lifecycle of one submission, from compile to cleanup."""

    def __init__(
        self,
        workspace: Workspace,
        language: str,
        limits: RunLimits,
        store: WorkspaceStore,
        launcher: Launcher,
    ) -> None:
        self.workspace = workspace
        self.language = language
        self.limits = limits
        self.token: Optional[str] = None
        self.phase = Phase.PENDING
        self.created_at = time.monotonic()
        self.attached = False
        self.run_command: Optional[RunCommand] = None
        self.compile_ms = 0
        self.exit_code: Optional[int] = None
        self.exit_reason: Optional[str] = None
        self.fault: Optional[RuntimeFault] = None

        self._store = store
        self._launcher = launcher
        self._channel: Optional[Channel] = None
        self._handle: Optional[ProcessHandle] = None
        self._hard_timer: Optional[BudgetTimer] = None
        self._input_timer: Optional[BudgetTimer] = None
        self._kill_reason: Optional[str] = None
        self._stdin_queue: Optional[asyncio.Queue] = None
        self._stdin_backlog = 0
        self._notice: Optional[str] = None
        self._exit_sent = False
        self._attached_at = 0.0
        self._spawned_at = 0.0
        self._on_closed: List[Callable[["ExecutionSession"], None]] = []

    def __repr__(self) -> str:
        return f"<ExecutionSession {self.workspace.id} {self.language} {self.phase.value}>"

    # -- state -------------------------------------------------------------

    def transition(self, target: Phase) -> None:
        if target not in TRANSITIONS[self.phase]:
            raise InvalidTransition(self.phase.value, target.value)
        logger.debug("Session %s: %s -> %s", self.workspace.id, self.phase.value, target.value)
        self.phase = target

    def on_closed(self, callback: Callable[["ExecutionSession"], None]) -> None:
        self._on_closed.append(callback)

    @property
    def live(self) -> bool:
        return self.phase in (Phase.RUNNING, Phase.WAITING_INPUT)

    # -- prepare side --------------------------------------------------------

    def begin_compile(self) -> None:
        self.transition(Phase.COMPILING)

    def compiled(self, run_command: RunCommand, compile_ms: int) -> None:
        self.run_command = run_command
        self.compile_ms = compile_ms
        self.transition(Phase.READY)

    def fail(self) -> None:
        """Compilation failed: terminal, the workspace goes immediately."""
        self.transition(Phase.FAILED)
        self._store.destroy(self.workspace)

    def discard(self) -> None:
        """Drop a prepared session that was never attached."""
        if self.phase is not Phase.READY:
            return
        self.transition(Phase.CLOSED)
        self._store.destroy(self.workspace)
        self._notify_closed()

    # -- run side ------------------------------------------------------------

    async def run(self, channel: Channel) -> None:
        """Start the program and relay I/O until it ends.  Never raises."""
        if self.phase is not Phase.READY or self.run_command is None:
            raise InvalidTransition(self.phase.value, Phase.RUNNING.value)
        self._channel = channel
        self._attached_at = time.perf_counter()
        pumps: List[asyncio.Task] = []
        receiver: Optional[asyncio.Task] = None
        writer: Optional[asyncio.Task] = None
        try:
            try:
                self._handle = await self._launcher.spawn(
                    self.run_command.argv,
                    self.run_command.cwd,
                    self.limits,
                    self.run_command.env,
                )
            except LaunchError as exc:
                logger.warning("Session %s failed to launch: %s", self.workspace.id, exc)
                self._notice = f"{exc}\n"
                self._kill_reason = "launch_error"
                self.exit_code = LAUNCH_FAILED_CODE
                return

            self._spawned_at = time.perf_counter()
            self.transition(Phase.RUNNING)
            logger.info("Session %s running as pid %s", self.workspace.id, self._handle.pid)
            self._hard_timer = BudgetTimer(self.limits.wall_clock_ms / 1000, self._on_hard_timeout)
            self._hard_timer.start()

            pumps = [
                asyncio.create_task(self._pump(self._handle.stdout, "stdout")),
                asyncio.create_task(self._pump(self._handle.stderr, "stderr")),
            ]
            self._stdin_queue = asyncio.Queue()
            writer = asyncio.create_task(self._stdin_writer())
            receiver = asyncio.create_task(self._receive_loop())

            self.exit_code = await self._handle.wait()
            # Take down anything the program left behind in its group.
            self._handle.kill()
            done, pending = await asyncio.wait(pumps, timeout=DRAIN_TIMEOUT_SECS)
            for task in pending:
                task.cancel()
        except asyncio.CancelledError:
            self._kill_reason = self._kill_reason or "disconnected"
            raise
        except Exception:
            logger.exception("Session %s crashed", self.workspace.id)
            self._kill_reason = self._kill_reason or "internal_error"
        finally:
            for task in pumps:
                task.cancel()
            for task in (receiver, writer):
                if task is not None:
                    task.cancel()
            if self._handle is not None:
                self._handle.kill()
            await self._finish()

    def kill(self, reason: str = "killed") -> None:
        """Terminate the program.  Safe to call any number of times."""
        if self._kill_reason is None:
            self._kill_reason = reason
        if self._handle is not None:
            self._handle.kill()

    async def handle_message(self, raw: str) -> None:
        try:
            message = parse_client_message(raw)
        except ChannelError as exc:
            logger.debug("Session %s ignored client message: %s", self.workspace.id, exc)
            return

        if message.type == "ping":
            await self._send(pong_message())
        elif message.type == "kill":
            logger.info("Session %s: kill requested", self.workspace.id)
            self.kill("killed")
        elif message.type == "stdin":
            await self._write_stdin(message.data or "")
        else:
            logger.debug("Session %s already started; ignoring %s", self.workspace.id, message.type)

    # -- internals -----------------------------------------------------------

    async def _receive_loop(self) -> None:
        assert self._channel is not None
        while True:
            raw = await self._channel.receive()
            if raw is None:
                logger.info("Session %s: client disconnected", self.workspace.id)
                self.kill("disconnected")
                return
            await self.handle_message(raw)

    async def _write_stdin(self, data: str) -> None:
        if not self.live or self._handle is None:
            return
        if self.phase is Phase.WAITING_INPUT:
            self.transition(Phase.RUNNING)
            if self._input_timer is not None:
                self._input_timer.cancel()
                self._input_timer = None
            if self._hard_timer is not None:
                self._hard_timer.resume()
        if self._stdin_queue is None or not data:
            return
        if self._stdin_backlog + len(data) > STDIN_BACKLOG_LIMIT:
            logger.warning("Session %s: stdin backlog full, dropping %d chars", self.workspace.id, len(data))
            await self._send(data_message("stderr", "Input dropped: the program is not reading stdin.\n"))
            return
        self._stdin_backlog += len(data)
        self._stdin_queue.put_nowait(data)

    async def _stdin_writer(self) -> None:
        """Feed queued input to the program.

        Runs apart from the receive loop so that a program that stops
        reading blocks only this task; ``kill`` and disconnects still get
        through.
        """
        assert self._stdin_queue is not None and self._handle is not None
        while True:
            data = await self._stdin_queue.get()
            written = await self._handle.write_stdin(data)
            self._stdin_backlog -= len(data)
            if not written:
                return

    def _on_stdin_request(self) -> bool:
        if self.phase is not Phase.RUNNING:
            return False
        self.transition(Phase.WAITING_INPUT)
        if self._hard_timer is not None:
            self._hard_timer.pause()
        self._input_timer = BudgetTimer(self.limits.input_wait_ms / 1000, self._on_input_timeout)
        self._input_timer.start()
        return True

    def _on_hard_timeout(self) -> None:
        if not self.live:
            return
        logger.info("Session %s exceeded %dms", self.workspace.id, self.limits.wall_clock_ms)
        self._notice = f"Execution timed out after {self.limits.wall_clock_ms} ms.\n"
        self.kill("timeout")

    def _on_input_timeout(self) -> None:
        if not self.live:
            return
        logger.info("Session %s input wait expired", self.workspace.id)
        self._notice = "Input wait timed out.\n"
        self.kill("input_timeout")

    async def _pump(self, reader: asyncio.StreamReader, stream: str) -> None:
        scanner = stdout_scanner() if stream == "stdout" else stderr_scanner()
        while True:
            chunk = await reader.read(READ_CHUNK)
            if not chunk:
                break
            await self._dispatch(scanner.feed(chunk), stream)
        await self._dispatch(scanner.flush(), stream)

    async def _dispatch(self, events: List[ScanEvent], stream: str) -> None:
        for event in events:
            if event.kind == "text":
                await self._send(data_message(stream, event.value))
            elif event.kind == "stdin_req":
                if self._on_stdin_request():
                    await self._send(stdin_request_message())
            elif event.kind == "image":
                await self._send_image(event.value)

    async def _send_image(self, relative_path: str) -> None:
        try:
            path = self._store.resolve(self.workspace, relative_path)
            payload = path.read_bytes()
        except (WorkspaceError, OSError) as exc:
            logger.warning("Session %s: unreadable image %r: %s", self.workspace.id, relative_path, exc)
            await self._send(data_message("stderr", f"image not available: {relative_path}\n"))
            return
        mime = mimetypes.guess_type(path.name)[0] or "image/png"
        encoded = base64.b64encode(payload).decode("ascii")
        await self._send(image_message(path.name, f"data:{mime};base64,{encoded}"))

    async def _send(self, message: Dict[str, Any]) -> bool:
        if self._channel is None:
            return False
        return await self._channel.send(message)

    def _metrics(self) -> Dict[str, int]:
        ended = time.perf_counter()
        spawned = self._spawned_at or ended
        attached = self._attached_at or ended
        metrics = ExitMetrics(
            compile_ms=self.compile_ms,
            start_ms=int((spawned - attached) * 1000),
            exec_ms=int((ended - spawned) * 1000),
            total_ms=self.compile_ms + int((ended - attached) * 1000),
        )
        return metrics.model_dump(by_alias=True)

    async def _finish(self) -> None:
        for timer in (self._hard_timer, self._input_timer):
            if timer is not None:
                timer.cancel()
        try:
            if self.phase in (Phase.READY, Phase.RUNNING, Phase.WAITING_INPUT):
                self.transition(Phase.EXITED)
            if self.exit_code is None:
                self.exit_code = LAUNCH_FAILED_CODE
            self.exit_reason = self._kill_reason or "exited"
            if self.exit_reason != "launch_error" and (self._kill_reason or self.exit_code < 0):
                # Crashed on a signal or killed by us.
                self.fault = RuntimeFault(self.exit_code, self.exit_reason)
                logger.info("Session %s: %s", self.workspace.id, self.fault)
            else:
                logger.info("Session %s exited with code %s", self.workspace.id, self.exit_code)
            if self._notice:
                await self._send(data_message("stderr", self._notice))
            if not self._exit_sent:
                self._exit_sent = True
                await self._send(exit_message(self.exit_code, self.exit_reason, self._metrics()))
            if self._channel is not None:
                await self._channel.close()
        finally:
            self._store.destroy(self.workspace)
            if self.phase is Phase.EXITED:
                self.transition(Phase.CLOSED)
            self._notify_closed()

    def _notify_closed(self) -> None:
        callbacks, self._on_closed = self._on_closed, []
        for callback in callbacks:
            callback(self)


class SessionRegistry:
    """Token -> session map.

    Tokens are added when compilation succeeds and removed when the session
    closes, whichever way that happens.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, ExecutionSession] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, token: object) -> bool:
        with self._lock:
            return token in self._sessions

    def register(self, session: ExecutionSession) -> str:
        token = secrets.token_urlsafe(18)
        with self._lock:
            self._sessions[token] = session
        session.token = token
        session.on_closed(lambda s: self.remove(token))
        return token

    def claim(self, token: Optional[str]) -> ExecutionSession:
        """Mark the session behind ``token`` as attached and return it.

        Raises :class:`UnknownSession` for an unknown token and
        :class:`SessionBusy` if a channel is already attached.
        """
        with self._lock:
            session = self._sessions.get(token) if token else None
            if session is None:
                raise UnknownSession(token or "")
            if session.attached:
                raise SessionBusy(token or "")
            if session.phase is not Phase.READY:
                raise UnknownSession(token or "")
            session.attached = True
            return session

    def remove(self, token: str) -> Optional[ExecutionSession]:
        with self._lock:
            return self._sessions.pop(token, None)

    def expire(self, ttl_secs: float, now: Optional[float] = None) -> List[ExecutionSession]:
        """Discard sessions that were prepared but never attached within ``ttl_secs``."""
        now = time.monotonic() if now is None else now
        with self._lock:
            stale = [
                session
                for session in self._sessions.values()
                if not session.attached and now - session.created_at > ttl_secs
            ]
        for session in stale:
            logger.info("Discarding unattached session %s", session.workspace.id)
            session.discard()
        return stale

    def drain(self) -> None:
        """Discard every unattached session and kill the live ones (shutdown)."""
        with self._lock:
            sessions = list(self._sessions.values())
        for session in sessions:
            if session.attached:
                session.kill("shutdown")
            else:
                session.discard()
