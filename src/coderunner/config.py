"""Configuration loader.

The runner reads its configuration from environment variables so that the
same container image can serve every language runner.  Reasonable defaults
are provided so that local development works out of the box.

Environment variables:

``CODERUNNER_API_KEY``
    Shared secret checked on HTTP requests (``x-api-key`` header).  When
    empty the check is skipped.  WebSocket channels are authenticated by
    their session token instead.

``CODERUNNER_WORKSPACE_ROOT``
    Directory under which one workspace directory per session is created.
    Defaults to ``/dev/shm/coderunner`` when ``/dev/shm`` exists, otherwise
    ``<tmpdir>/coderunner``.

``CODERUNNER_ALLOWED_LANGS``
    Comma-separated list of languages accepted by the prepare endpoint.
    Defaults to ``c,cpp,java,python``.

``CODERUNNER_MAX_CPU_SECS``
    CPU time ceiling (``RLIMIT_CPU``) for a run.  Default is 10.

``CODERUNNER_MAX_MEMORY_MB``
    Address space ceiling (``RLIMIT_AS``) for a run.  Default is 256.

``CODERUNNER_JAVA_MAX_MEMORY_MB``
    Address space ceiling for JVM runs.  The JVM reserves far more virtual
    memory than it uses, so the default of 0 disables the limit and the heap
    is bounded with ``-Xmx`` instead.

``CODERUNNER_MAX_FILE_SIZE_MB``
    Largest file a run may write (``RLIMIT_FSIZE``).  Default is 64.

``CODERUNNER_WALL_CLOCK_MS``
    Hard wall-clock budget of a run, not counting time spent waiting for
    input.  Default is 15000; requests may lower it.

``CODERUNNER_INPUT_WAIT_MS``
    How long a program may block waiting for input.  Default is 300000.

``CODERUNNER_COMPILE_TIMEOUT_SECS``
    Wall-clock cap on a compiler invocation.  Default is 30.

``CODERUNNER_TOKEN_TTL_SECS``
    Prepared sessions that are never attached are discarded after this many
    seconds.  Default is 300.

``CODERUNNER_PYTHON_BIN``, ``CODERUNNER_CC``, ``CODERUNNER_CXX``,
``CODERUNNER_JAVAC``, ``CODERUNNER_JAVA``
    Toolchain binaries.  Defaults are ``python3``, ``gcc``, ``g++``,
    ``javac`` and ``java``.

``CODERUNNER_LOG_LEVEL``
    Level of the ``coderunner`` logger.  Default is ``INFO``.

``PORT``
    The port on which the API server listens.  Defaults to 8080.
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field, replace
from typing import List, Optional

MAX_WALL_CLOCK_MS = 600_000
MAX_INPUT_WAIT_MS = 3_600_000

SUPPORTED_LANGS = ("c", "cpp", "java", "python")


def _default_workspace_root() -> str:
    base = "/dev/shm" if os.path.isdir("/dev/shm") else tempfile.gettempdir()
    return os.path.join(base, "coderunner")


@dataclass(frozen=True)
class RunLimits:
    """Resource ceilings applied to a single run.

    ``memory_bytes`` of 0 means no address-space limit.
    """

    cpu_seconds: int
    memory_bytes: int
    file_size_bytes: int
    wall_clock_ms: int
    input_wait_ms: int

    def narrowed(
        self,
        wall_clock_ms: Optional[int] = None,
        input_wait_ms: Optional[int] = None,
    ) -> "RunLimits":
        """Return a copy with per-request timer overrides applied.

        Overrides may not exceed the configured values.
        """
        limits = self
        if wall_clock_ms is not None and wall_clock_ms > 0:
            limits = replace(limits, wall_clock_ms=min(wall_clock_ms, self.wall_clock_ms))
        if input_wait_ms is not None and input_wait_ms > 0:
            limits = replace(limits, input_wait_ms=min(input_wait_ms, self.input_wait_ms))
        return limits


@dataclass
class Config:
    """Centralised configuration object."""

    api_key: str = ""
    workspace_root: str = field(default_factory=_default_workspace_root)
    allowed_langs: List[str] = field(default_factory=lambda: list(SUPPORTED_LANGS))
    max_cpu_secs: int = 10
    max_memory_mb: int = 256
    java_max_memory_mb: int = 0
    max_file_size_mb: int = 64
    wall_clock_ms: int = 15_000
    input_wait_ms: int = 300_000
    compile_timeout_secs: int = 30
    token_ttl_secs: int = 300
    python_bin: str = "python3"
    cc: str = "gcc"
    cxx: str = "g++"
    javac: str = "javac"
    java: str = "java"
    log_level: str = "INFO"
    port: int = 8080

    def limits_for(self, language: str) -> RunLimits:
        """Build the :class:`RunLimits` attached to sessions of ``language``."""
        memory_mb = self.java_max_memory_mb if language == "java" else self.max_memory_mb
        return RunLimits(
            cpu_seconds=self.max_cpu_secs,
            memory_bytes=memory_mb * 1024 * 1024,
            file_size_bytes=self.max_file_size_mb * 1024 * 1024,
            wall_clock_ms=min(self.wall_clock_ms, MAX_WALL_CLOCK_MS),
            input_wait_ms=min(self.input_wait_ms, MAX_INPUT_WAIT_MS),
        )

    @classmethod
    def load(cls) -> "Config":
        api_key = os.getenv("CODERUNNER_API_KEY", "")
        workspace_root = os.getenv("CODERUNNER_WORKSPACE_ROOT") or _default_workspace_root()

        allowed_langs_env = os.getenv("CODERUNNER_ALLOWED_LANGS", ",".join(SUPPORTED_LANGS))
        allowed_langs = [lang.strip().lower() for lang in allowed_langs_env.split(",") if lang.strip()]
        unknown = [lang for lang in allowed_langs if lang not in SUPPORTED_LANGS]
        if unknown:
            raise ValueError(
                f"Invalid CODERUNNER_ALLOWED_LANGS: {', '.join(unknown)}. "
                f"Supported: {', '.join(SUPPORTED_LANGS)}."
            )

        def _int_var(name: str, default: int) -> int:
            val = os.getenv(name)
            if val is None:
                return default
            try:
                return int(val)
            except ValueError:
                raise ValueError(f"Invalid integer for {name}: {val}")

        return cls(
            api_key=api_key,
            workspace_root=workspace_root,
            allowed_langs=allowed_langs,
            max_cpu_secs=_int_var("CODERUNNER_MAX_CPU_SECS", 10),
            max_memory_mb=_int_var("CODERUNNER_MAX_MEMORY_MB", 256),
            java_max_memory_mb=_int_var("CODERUNNER_JAVA_MAX_MEMORY_MB", 0),
            max_file_size_mb=_int_var("CODERUNNER_MAX_FILE_SIZE_MB", 64),
            wall_clock_ms=_int_var("CODERUNNER_WALL_CLOCK_MS", 15_000),
            input_wait_ms=_int_var("CODERUNNER_INPUT_WAIT_MS", 300_000),
            compile_timeout_secs=_int_var("CODERUNNER_COMPILE_TIMEOUT_SECS", 30),
            token_ttl_secs=_int_var("CODERUNNER_TOKEN_TTL_SECS", 300),
            python_bin=os.getenv("CODERUNNER_PYTHON_BIN", "python3"),
            cc=os.getenv("CODERUNNER_CC", "gcc"),
            cxx=os.getenv("CODERUNNER_CXX", "g++"),
            javac=os.getenv("CODERUNNER_JAVAC", "javac"),
            java=os.getenv("CODERUNNER_JAVA", "java"),
            log_level=os.getenv("CODERUNNER_LOG_LEVEL", "INFO").upper(),
            port=_int_var("PORT", 8080),
        )

    @classmethod
    def from_env(cls) -> "Config":
        """Build the runner configuration from ``CODERUNNER_*`` variables.

        Called once when :mod:`coderunner.api.main` is imported.  Invalid
        values raise ``ValueError``.
        """
        return cls.load()
