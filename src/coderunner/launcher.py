"""Resource-limited process launcher.

Programs are started with OS-level ceilings applied in the child between
``fork`` and ``exec``: CPU time, address space, largest writable file and no
core dumps.  Every child leads its own process group so that killing it
also takes down anything it spawned.

The wall-clock limit is enforced by the owning session (see
:class:`coderunner.session.BudgetTimer`), because the clock must pause
while the program waits for input; the CPU limit alone would miss programs
that sleep or block.
"""

from __future__ import annotations

import asyncio
import logging
import os
import resource
import signal
import subprocess
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .config import RunLimits
from .errors import LaunchError

logger = logging.getLogger(__name__)


def _set_limit(which: int, value: int) -> None:
    try:
        resource.setrlimit(which, (value, value))
    except (ValueError, OSError):
        # Lowering below the current hard limit is always allowed; raising
        # is not, in which case the inherited (stricter) limit stays.
        pass


def make_preexec(limits: RunLimits) -> Callable[[], None]:
    """Return a ``preexec_fn`` applying ``limits`` in the child process."""

    def _preexec() -> None:
        if limits.cpu_seconds > 0:
            _set_limit(resource.RLIMIT_CPU, limits.cpu_seconds)
        if limits.memory_bytes > 0:
            _set_limit(resource.RLIMIT_AS, limits.memory_bytes)
        if limits.file_size_bytes > 0:
            _set_limit(resource.RLIMIT_FSIZE, limits.file_size_bytes)
        _set_limit(resource.RLIMIT_CORE, 0)

    return _preexec


def base_environment(cwd: Path) -> Dict[str, str]:
    """Minimal environment for user programs; the server's own is not inherited."""
    return {
        "PATH": os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin"),
        "HOME": str(cwd),
        "LANG": "C.UTF-8",
        "LC_ALL": "C.UTF-8",
        "PYTHONIOENCODING": "utf-8",
    }


class ProcessHandle:
    """A running program: its pipes, its exit status and a kill switch."""

    def __init__(self, proc: asyncio.subprocess.Process) -> None:
        self._proc = proc
        self.killed = False

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def stdout(self) -> asyncio.StreamReader:
        assert self._proc.stdout is not None
        return self._proc.stdout

    @property
    def stderr(self) -> asyncio.StreamReader:
        assert self._proc.stderr is not None
        return self._proc.stderr

    async def write_stdin(self, data: str) -> bool:
        """Forward ``data`` to the program.  Returns False if stdin is gone."""
        stdin = self._proc.stdin
        if stdin is None or stdin.is_closing() or self._proc.returncode is not None:
            return False
        try:
            stdin.write(data.encode("utf-8"))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            return False
        return True

    async def wait(self) -> int:
        return await self._proc.wait()

    def kill(self) -> None:
        """SIGKILL the whole process group.

        Safe to call repeatedly and after the program exited.
        """
        if self.killed:
            return
        self.killed = True
        try:
            os.killpg(self._proc.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass
        else:
            logger.info("Killed process group %s", self._proc.pid)


class Launcher:
    """Spawn programs under :class:`~coderunner.config.RunLimits`."""

    async def spawn(
        self,
        argv: List[str],
        cwd: Path,
        limits: RunLimits,
        env: Optional[Dict[str, str]] = None,
    ) -> ProcessHandle:
        environment = base_environment(cwd)
        environment.update(env or {})
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd),
                env=environment,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
                preexec_fn=make_preexec(limits),
            )
        except (OSError, subprocess.SubprocessError) as exc:
            # Missing binary, non-executable artifact or a failing preexec.
            raise LaunchError(f"{argv[0]}: {exc}") from exc
        logger.info("Spawned pid %s: %s", proc.pid, " ".join(argv))
        return ProcessHandle(proc)
