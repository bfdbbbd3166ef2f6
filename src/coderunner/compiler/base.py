"""
Base interfaces and helpers for compiler adapters.

A compiler adapter turns a materialized :class:`~coderunner.workspace.Workspace`
into either a runnable :class:`RunCommand` or a list of diagnostics.  All
concrete adapters share the same pipeline, implemented once in
:meth:`CompilerAdapter.compile`:

1. discover source files by extension (recursively);
2. select an entry point;
3. invoke the toolchain with a bounded argument list, capturing combined
   stdout/stderr;
4. parse the log into :class:`~coderunner.models.Diagnostic` objects;
5. decide success with :func:`compile_succeeded`;
6. on success, build the :class:`RunCommand` and append the program
   arguments.

Subclasses only provide the language-specific pieces (command lines, entry
selection and the run command).
"""

from __future__ import annotations

import abc
import asyncio
import logging
import os
import re
import signal
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from ..errors import WorkspaceError
from ..models import Diagnostic
from ..workspace import Workspace, normalize_path

logger = logging.getLogger(__name__)

# path:line[:col]: severity: message
DIAGNOSTIC_RE = re.compile(
    r"^(?P<file>[^:\n]+?):(?P<line>\d+):(?:(?P<column>\d+):)?\s*"
    r"(?P<severity>fatal error|error|warning|note):\s*(?P<message>.*)$",
    re.IGNORECASE | re.MULTILINE,
)

FATAL_RE = re.compile(r"fatal error|compilation terminated", re.IGNORECASE)

# Support files generated by the adapters live here; never treated as sources.
SHIM_DIR = ".coderunner"


@dataclass
class RunCommand:
    """How to start the compiled program (or the interpreter) for a session."""

    argv: List[str]
    cwd: Path
    env: Dict[str, str] = field(default_factory=dict)


@dataclass
class CompileResult:
    """Outcome of a compile step.

    ``run_command`` is only set when ``ok`` is true.
    """

    ok: bool
    diagnostics: List[Diagnostic] = field(default_factory=list)
    log: str = ""
    run_command: Optional[RunCommand] = None
    duration_ms: int = 0


def parse_diagnostics(log: str) -> List[Diagnostic]:
    """Extract diagnostics from compiler output, in order of appearance."""
    diagnostics: List[Diagnostic] = []
    for match in DIAGNOSTIC_RE.finditer(log or ""):
        severity = match.group("severity").lower()
        if severity == "fatal error":
            severity = "error"
        diagnostics.append(
            Diagnostic(
                file=match.group("file").strip(),
                line=max(int(match.group("line")), 1),
                column=max(int(match.group("column") or 1), 1),
                severity=severity,
                message=match.group("message").strip(),
            )
        )
    return diagnostics


def is_blocking(diagnostics: Sequence[Diagnostic], log: str = "") -> bool:
    """True if the diagnostic set contains an error or the log a fatal marker."""
    if any(d.severity == "error" for d in diagnostics):
        return True
    return bool(FATAL_RE.search(log or ""))


def compile_succeeded(exit_code: Optional[int], diagnostics: Sequence[Diagnostic], log: str) -> bool:
    """The one rule deciding whether a compile step succeeded.

    A non-zero (or missing) exit code fails the build even when only
    warnings were printed: toolchains configured with warnings-as-errors
    exit non-zero without an ``error`` line.  A zero exit code still fails
    when the diagnostics are blocking.
    """
    if exit_code is None or exit_code != 0:
        return False
    return not is_blocking(diagnostics, log)


def _kill_group(proc: asyncio.subprocess.Process) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass


class CompilerAdapter(abc.ABC):
    """
    Abstract base class for per-language compile steps.

    Parameters
    ----------
    timeout_secs: int, optional
        Wall-clock cap on a single toolchain invocation.  A compiler that
        exceeds it is killed and the compile step fails.
    """

    language: str = ""
    extensions: Tuple[str, ...] = ()
    default_standard: Optional[str] = None

    def __init__(self, timeout_secs: int = 30) -> None:
        self.timeout_secs = timeout_secs

    # -- language-specific hooks -------------------------------------------

    @property
    @abc.abstractmethod
    def toolchain(self) -> str:
        """Name of the binary invoked by :meth:`build_command`."""

    @abc.abstractmethod
    def build_command(
        self,
        workspace: Workspace,
        sources: List[str],
        entry: str,
        standard: Optional[str],
    ) -> List[str]:
        """Return the toolchain argv for ``sources`` (paths relative to the root)."""

    @abc.abstractmethod
    async def run_command(self, workspace: Workspace, sources: List[str], entry: str) -> RunCommand:
        """Return the command that starts the program after a successful compile."""

    def select_entry(self, workspace: Workspace, sources: List[str], requested: Optional[str]) -> str:
        """Pick the entry file.

        An explicitly requested entry wins; otherwise a file literally named
        ``main.<ext>`` (case-insensitive), otherwise the first source in
        submission order.
        """
        if requested:
            try:
                wanted = normalize_path(requested)
            except WorkspaceError:
                wanted = ""
            for rel in sources:
                if rel == wanted or rel.rsplit("/", 1)[-1] == wanted:
                    return rel
        for rel in sources:
            name = rel.rsplit("/", 1)[-1]
            stem, _, ext = name.rpartition(".")
            if stem.lower() == "main" and "." + ext.lower() in self.extensions:
                return rel
        return sources[0]

    # -- shared pipeline ---------------------------------------------------

    def discover(self, workspace: Workspace) -> List[str]:
        """Return source files under the workspace root, in submission order.

        Files found on disk that were not part of the submission (none
        should exist before compiling) are appended in sorted order.
        """
        found = []
        for path in workspace.root.rglob("*"):
            rel = path.relative_to(workspace.root)
            if rel.parts[0] == SHIM_DIR:
                continue
            if path.is_file() and path.suffix.lower() in self.extensions:
                found.append(rel.as_posix())
        order = {rel: idx for idx, rel in enumerate(workspace.paths)}
        return sorted(found, key=lambda rel: (order.get(rel, len(order)), rel))

    async def compile(
        self,
        workspace: Workspace,
        entry: Optional[str] = None,
        standard: Optional[str] = None,
        args: Sequence[str] = (),
    ) -> CompileResult:
        """Compile the workspace; ``args`` are appended to the run command."""
        started = time.perf_counter()
        sources = self.discover(workspace)
        if not sources:
            exts = "/".join(self.extensions)
            return CompileResult(ok=False, log=f"No {exts} source files found")

        entry_path = self.select_entry(workspace, sources, entry)
        argv = self.build_command(workspace, sources, entry_path, standard or self.default_standard)
        logger.info("Compiling %s workspace %s: %s", self.language, workspace.id, " ".join(argv))

        exit_code, log = await self._run_toolchain(argv, workspace.root)
        diagnostics = parse_diagnostics(log)
        ok = compile_succeeded(exit_code, diagnostics, log)

        run_command = None
        if ok:
            run_command = await self.run_command(workspace, sources, entry_path)
            run_command.argv.extend(args)
        duration_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "Compiled %s workspace %s: ok=%s exit=%s diagnostics=%d in %dms",
            self.language,
            workspace.id,
            ok,
            exit_code,
            len(diagnostics),
            duration_ms,
        )
        return CompileResult(
            ok=ok,
            diagnostics=diagnostics,
            log=log,
            run_command=run_command,
            duration_ms=duration_ms,
        )

    async def _run_toolchain(self, argv: List[str], cwd: Path) -> Tuple[Optional[int], str]:
        """Run ``argv`` and return ``(exit_code, combined output)``.

        The exit code is ``None`` when the toolchain is missing or was killed
        for exceeding the compile timeout.
        """
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )
        except FileNotFoundError:
            return None, f"compiler not available: {argv[0]}"
        except OSError as exc:
            return None, f"unable to start {argv[0]}: {exc}"

        try:
            output, _ = await asyncio.wait_for(proc.communicate(), timeout=self.timeout_secs)
        except asyncio.TimeoutError:
            _kill_group(proc)
            output = await proc.stdout.read() if proc.stdout else b""
            await proc.wait()
            log = output.decode("utf-8", errors="replace")
            return None, (log + "\n" if log else "") + "Compilation timed out"
        except asyncio.CancelledError:
            _kill_group(proc)
            raise
        return proc.returncode, output.decode("utf-8", errors="replace")
