"""
Adapter for C and C++ programs compiled with gcc / g++.

Every build links one extra translation unit, written into the workspace's
``.coderunner/`` directory, that announces blocking reads on standard input
with the stdin control line.  It covers stdio (``stdin`` is swapped for a
cookie stream at start-up), raw ``read(0, ...)`` calls and, for C++,
``std::cin``.  The program itself runs unbuffered through ``stdbuf`` when
available so prompts reach the client immediately.
"""

from __future__ import annotations

import re
import shutil
from pathlib import Path
from typing import List, Optional

from ..protocol import STDIN_REQUEST
from ..workspace import Workspace
from .base import SHIM_DIR, CompilerAdapter, RunCommand

STDIN_SHIM = r"""/* Generated by coderunner: announce blocking reads on stdin. */
#undef _FORTIFY_SOURCE
#ifndef _GNU_SOURCE
#define _GNU_SOURCE
#endif
#include <poll.h>
#include <stdio.h>
#include <sys/syscall.h>
#include <sys/types.h>
#include <unistd.h>
#ifdef __cplusplus
#include <iostream>
#include <ext/stdio_sync_filebuf.h>
extern "C" {
#endif

static const char coderunner_sentinel[] = "@SENTINEL@\n";

static void coderunner_notify(void) {
    struct pollfd pfd;
    pfd.fd = 0;
    pfd.events = POLLIN;
    pfd.revents = 0;
    if (poll(&pfd, 1, 0) == 0) {
        fflush(stdout);
        syscall(SYS_write, 2, coderunner_sentinel, sizeof(coderunner_sentinel) - 1);
    }
}

ssize_t read(int fd, void *buf, size_t count) {
    if (fd == 0) {
        coderunner_notify();
    }
    return (ssize_t)syscall(SYS_read, fd, buf, count);
}

static ssize_t coderunner_cookie_read(void *cookie, char *buf, size_t size) {
    (void)cookie;
    return read(0, buf, size);
}

static void coderunner_wrap_stdin(void) {
    cookie_io_functions_t io = {coderunner_cookie_read, NULL, NULL, NULL};
    FILE *wrapped = fopencookie(NULL, "r", io);
    if (wrapped != NULL) {
        stdin = wrapped;
    }
}

#ifdef __cplusplus
}

namespace {
struct CoderunnerStdin {
    CoderunnerStdin() {
        coderunner_wrap_stdin();
        static __gnu_cxx::stdio_sync_filebuf<char> buf(stdin);
        std::cin.rdbuf(&buf);
    }
};
CoderunnerStdin coderunner_stdin;
}
#else
__attribute__((constructor)) static void coderunner_init(void) {
    coderunner_wrap_stdin();
}
#endif
""".replace("@SENTINEL@", STDIN_REQUEST)

# Only definitions at the start of a line count; calls to main() do not.
MAIN_RE = re.compile(r"^[ \t]*(?:(?:int|void|signed|auto)\s+)+main\s*\(", re.MULTILINE)

STANDARD_RE = re.compile(r"^(?:c|gnu)(?:\+\+)?\d[0-9a-z]$")


class NativeCompilerAdapter(CompilerAdapter):
    """Compile C or C++ sources into ``./main``."""

    def __init__(
        self,
        language: str,
        compiler: str,
        extensions: tuple,
        default_standard: str,
        timeout_secs: int = 30,
    ) -> None:
        super().__init__(timeout_secs)
        self.language = language
        self.compiler = compiler
        self.extensions = extensions
        self.default_standard = default_standard

    @classmethod
    def c(cls, compiler: str = "gcc", timeout_secs: int = 30) -> "NativeCompilerAdapter":
        return cls("c", compiler, (".c",), "c17", timeout_secs)

    @classmethod
    def cpp(cls, compiler: str = "g++", timeout_secs: int = 30) -> "NativeCompilerAdapter":
        return cls("cpp", compiler, (".cpp", ".cc", ".cxx", ".c++"), "c++17", timeout_secs)

    @property
    def toolchain(self) -> str:
        return self.compiler

    @property
    def shim_name(self) -> str:
        return "stdin_notify.cpp" if self.language == "cpp" else "stdin_notify.c"

    def _defines_main(self, workspace: Workspace, rel: str) -> bool:
        try:
            text = (workspace.root / rel).read_text(encoding="utf-8", errors="replace")
        except OSError:
            return False
        return bool(MAIN_RE.search(text))

    def select_sources(self, workspace: Workspace, sources: List[str], entry: str) -> List[str]:
        """Drop competing ``main`` definitions so the chosen entry links alone."""
        with_main = [rel for rel in sources if self._defines_main(workspace, rel)]
        if len(with_main) <= 1:
            return sources
        return [rel for rel in sources if rel == entry or rel not in with_main]

    def build_command(
        self,
        workspace: Workspace,
        sources: List[str],
        entry: str,
        standard: Optional[str],
    ) -> List[str]:
        shim = workspace.root / SHIM_DIR / self.shim_name
        shim.parent.mkdir(parents=True, exist_ok=True)
        shim.write_text(STDIN_SHIM, encoding="utf-8")

        if (
            not standard
            or not STANDARD_RE.match(standard)
            or ("++" in standard) != (self.language == "cpp")
        ):
            standard = self.default_standard
        return [
            self.compiler,
            f"-std={standard}",
            "-O2",
            "-pipe",
            "-Wall",
            "-Wextra",
            "-fdiagnostics-color=never",
            "-o",
            "main",
            *self.select_sources(workspace, sources, entry),
            f"{SHIM_DIR}/{self.shim_name}",
            "-lm",
        ]

    async def run_command(self, workspace: Workspace, sources: List[str], entry: str) -> RunCommand:
        argv = ["./main"]
        stdbuf = shutil.which("stdbuf")
        if stdbuf:
            argv = [stdbuf, "-o0", "-e0", *argv]
        return RunCommand(argv=argv, cwd=Path(workspace.root))
