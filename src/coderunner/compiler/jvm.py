"""
Adapter for Java programs.

User sources are compiled together with a small launcher class,
``coderunner.Launch``, that wraps ``System.in`` before invoking the user's
``main``.  The wrapper prints the stdin control line on stderr whenever a
read is about to block.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import List, Optional

from ..protocol import STDIN_REQUEST
from ..workspace import Workspace
from .base import SHIM_DIR, CompilerAdapter, RunCommand

LAUNCHER_CLASS = "coderunner.Launch"

LAUNCHER_SOURCE = """// Generated by coderunner: announce blocking reads on System.in.
package coderunner;

import java.io.FilterInputStream;
import java.io.IOException;
import java.io.InputStream;
import java.io.PrintStream;
import java.lang.reflect.InvocationTargetException;
import java.lang.reflect.Method;
import java.util.Arrays;

public final class Launch {
  private static final class NotifyingInputStream extends FilterInputStream {
    private final PrintStream control;

    NotifyingInputStream(InputStream in, PrintStream control) {
      super(in);
      this.control = control;
    }

    private void announce() throws IOException {
      if (in.available() == 0) {
        System.out.flush();
        control.print("@SENTINEL@\\n");
        control.flush();
      }
    }

    @Override
    public int read() throws IOException {
      announce();
      return super.read();
    }

    @Override
    public int read(byte[] b, int off, int len) throws IOException {
      announce();
      return super.read(b, off, len);
    }
  }

  public static void main(String[] args) throws Throwable {
    System.setIn(new NotifyingInputStream(System.in, System.err));
    Method main = Class.forName(args[0]).getDeclaredMethod("main", String[].class);
    main.setAccessible(true);
    try {
      main.invoke(null, (Object) Arrays.copyOfRange(args, 1, args.length));
    } catch (InvocationTargetException e) {
      throw e.getCause();
    }
  }
}
""".replace("@SENTINEL@", STDIN_REQUEST)

PACKAGE_RE = re.compile(r"^\s*package\s+([\w.]+)\s*;", re.MULTILINE)
MAIN_METHOD_RE = re.compile(r"\bstatic\s+(?:final\s+)?void\s+main\s*\(")


class JvmCompilerAdapter(CompilerAdapter):
    """Compile ``.java`` sources to ``classes/`` and run them on the JVM."""

    language = "java"
    extensions = (".java",)

    def __init__(
        self,
        javac: str = "javac",
        java: str = "java",
        heap_mb: int = 128,
        timeout_secs: int = 30,
    ) -> None:
        super().__init__(timeout_secs)
        self.javac = javac
        self.java = java
        self.heap_mb = heap_mb

    @property
    def toolchain(self) -> str:
        return self.javac

    def _read(self, workspace: Workspace, rel: str) -> str:
        try:
            return (workspace.root / rel).read_text(encoding="utf-8", errors="replace")
        except OSError:
            return ""

    def select_entry(self, workspace: Workspace, sources: List[str], requested: Optional[str]) -> str:
        """``Main.java`` first, then the first file declaring ``main``."""
        entry = super().select_entry(workspace, sources, requested)
        if requested or entry.rsplit("/", 1)[-1].lower() == "main.java":
            return entry
        for rel in sources:
            if MAIN_METHOD_RE.search(self._read(workspace, rel)):
                return rel
        return entry

    def main_class(self, workspace: Workspace, entry: str) -> str:
        stem = entry.rsplit("/", 1)[-1][: -len(".java")]
        match = PACKAGE_RE.search(self._read(workspace, entry))
        return f"{match.group(1)}.{stem}" if match else stem

    def build_command(
        self,
        workspace: Workspace,
        sources: List[str],
        entry: str,
        standard: Optional[str],
    ) -> List[str]:
        launcher = workspace.root / SHIM_DIR / "coderunner" / "Launch.java"
        launcher.parent.mkdir(parents=True, exist_ok=True)
        launcher.write_text(LAUNCHER_SOURCE, encoding="utf-8")

        argv = [
            self.javac,
            "-J-Xms16m",
            f"-J-Xmx{max(self.heap_mb, 64)}m",
            "-proc:none",
            "-encoding",
            "UTF-8",
            "-Xlint:unchecked",
            "-d",
            "classes",
        ]
        if standard and standard.isdigit():
            argv += ["--release", standard]
        return argv + [*sources, f"{SHIM_DIR}/coderunner/Launch.java"]

    async def run_command(self, workspace: Workspace, sources: List[str], entry: str) -> RunCommand:
        return RunCommand(
            argv=[
                self.java,
                "-Xss16m",
                f"-Xmx{self.heap_mb}m",
                "-XX:+UseSerialGC",
                "-XX:TieredStopAtLevel=1",
                "-Xshare:auto",
                "-cp",
                "classes",
                LAUNCHER_CLASS,
                self.main_class(workspace, entry),
            ],
            cwd=Path(workspace.root),
        )
