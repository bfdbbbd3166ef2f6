"""
Adapter for Python programs.

There is no separate compiler: the "compile" step runs the interpreter on a
checker script that byte-compiles every source and reports problems in the
common ``path:line:col: severity: message`` format.  The program is then
started through a boot script that replaces ``sys.stdin`` with an
unbuffered reader announcing blocking reads (``input()`` goes through it
too) and, when the sources use matplotlib, turns ``pyplot.show()`` into
image control lines.
"""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional

from ..protocol import IMAGE_PREFIX, STDIN_REQUEST
from ..workspace import Workspace
from .base import SHIM_DIR, CompilerAdapter, RunCommand

CHECKER_SOURCE = '''\
import sys
import warnings

status = 0
for path in sys.argv[1:]:
    with open(path, encoding="utf-8", errors="replace") as fh:
        source = fh.read()
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        try:
            compile(source, path, "exec", dont_inherit=True)
        except (SyntaxError, ValueError) as exc:
            status = 1
            line = getattr(exc, "lineno", None) or 1
            column = getattr(exc, "offset", None) or 1
            message = getattr(exc, "msg", None) or str(exc)
            print("%s:%d:%d: error: %s" % (path, line, column, message))
            continue
    for warning in caught:
        print("%s:%d:1: warning: %s" % (path, warning.lineno or 1, warning.message))
sys.exit(status)
'''

BOOT_SOURCE = '''\
import codecs
import io
import os
import runpy
import select
import sys

ENTRY = @ENTRY@
PLOTS = @PLOTS@


class _ConsoleInput(io.TextIOBase):
    """Unbuffered reader over fd 0; announces every read that would block."""

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")("replace")

    def readable(self):
        return True

    def fileno(self):
        return 0

    def _announce(self):
        try:
            ready = select.select([0], [], [], 0)[0]
        except (OSError, ValueError):
            ready = True
        if not ready:
            sys.stdout.flush()
            sys.stderr.write("@SENTINEL@\\n")
            sys.stderr.flush()

    def _getc(self):
        while True:
            self._announce()
            data = os.read(0, 1)
            if not data:
                return self._decoder.decode(b"", True)
            char = self._decoder.decode(data)
            if char:
                return char

    def read(self, size=-1):
        chars = []
        while size is None or size < 0 or len(chars) < size:
            char = self._getc()
            if not char:
                break
            chars.append(char)
        return "".join(chars)

    def readline(self, size=-1):
        chars = []
        while size is None or size < 0 or len(chars) < size:
            char = self._getc()
            if not char:
                break
            chars.append(char)
            if char == "\\n":
                break
        return "".join(chars)


sys.stdin = _ConsoleInput()

_show = None
if PLOTS:
    try:
        import matplotlib

        matplotlib.use("Agg")
        import matplotlib.pyplot as plt
    except ImportError:
        plt = None

    if plt is not None:
        _figures = []

        def _show(*args, **kwargs):
            for number in plt.get_fignums():
                name = "@SHIM_DIR@/figure-%d.png" % (len(_figures) + 1)
                plt.figure(number).savefig(name, format="png", bbox_inches="tight", dpi=150)
                _figures.append(name)
                sys.stdout.write("@IMAGE_PREFIX@%s\\n" % name)
                sys.stdout.flush()
            plt.close("all")

        plt.show = _show

sys.argv = [ENTRY] + sys.argv[1:]
sys.path[0] = os.path.dirname(os.path.abspath(ENTRY))
runpy.run_path(ENTRY, run_name="__main__")
if _show is not None:
    _show()
'''


class InterpretedCompilerAdapter(CompilerAdapter):
    """Syntax-check Python sources and run the entry script through the boot script."""

    language = "python"
    extensions = (".py",)

    def __init__(self, python_bin: str = "python3", timeout_secs: int = 30) -> None:
        super().__init__(timeout_secs)
        self.python_bin = python_bin

    @property
    def toolchain(self) -> str:
        return self.python_bin

    def build_command(
        self,
        workspace: Workspace,
        sources: List[str],
        entry: str,
        standard: Optional[str],
    ) -> List[str]:
        checker = workspace.root / SHIM_DIR / "check.py"
        checker.parent.mkdir(parents=True, exist_ok=True)
        checker.write_text(CHECKER_SOURCE, encoding="utf-8")
        return [self.python_bin, "-I", f"{SHIM_DIR}/check.py", *sources]

    def uses_plots(self, workspace: Workspace, sources: List[str]) -> bool:
        for rel in sources:
            try:
                text = (workspace.root / rel).read_text(encoding="utf-8", errors="replace")
            except OSError:
                continue
            if "matplotlib" in text:
                return True
        return False

    def boot_source(self, entry: str, plots: bool) -> str:
        return (
            BOOT_SOURCE.replace("@ENTRY@", repr(entry))
            .replace("@PLOTS@", repr(plots))
            .replace("@SENTINEL@", STDIN_REQUEST)
            .replace("@IMAGE_PREFIX@", IMAGE_PREFIX)
            .replace("@SHIM_DIR@", SHIM_DIR)
        )

    async def run_command(self, workspace: Workspace, sources: List[str], entry: str) -> RunCommand:
        boot = workspace.root / SHIM_DIR / "boot.py"
        boot.parent.mkdir(parents=True, exist_ok=True)
        boot.write_text(self.boot_source(entry, self.uses_plots(workspace, sources)), encoding="utf-8")
        return RunCommand(
            argv=[self.python_bin, "-u", f"{SHIM_DIR}/boot.py"],
            cwd=Path(workspace.root),
            env={"PYTHONUNBUFFERED": "1", "MPLBACKEND": "Agg"},
        )
