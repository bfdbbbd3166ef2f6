"""Error taxonomy shared by the workspace, compiler, launcher and session layers."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .compiler.base import CompileResult

# Exit code reported when the program could not be started at all.
LAUNCH_FAILED_CODE = -1


class CoderunnerError(Exception):
    """Base error for all runner failures."""


class InputError(CoderunnerError):
    """The submitted request is malformed (empty file list, bad language...)."""


class WorkspaceError(InputError, OSError):
    """A workspace could not be materialized, or a path escapes its root."""


class CompileError(CoderunnerError):
    """Compilation produced blocking diagnostics.

    Only raised on flows that compile on the streaming channel; the HTTP
    prepare flow reports the same information as ``ok: false``.
    """

    def __init__(self, result: "CompileResult") -> None:
        self.result = result
        super().__init__("Compilation failed")


class LaunchError(CoderunnerError):
    """The toolchain or the program failed to start."""

    def __init__(self, detail: str = "") -> None:
        self.detail = detail
        super().__init__("Launch failed" + (f": {detail}" if detail else ""))


class RuntimeFault(CoderunnerError):
    """The program crashed or was killed."""

    def __init__(self, code: int, reason: str) -> None:
        self.code = code
        self.reason = reason
        super().__init__(f"Process ended with code {code} ({reason})")


class ChannelError(CoderunnerError):
    """A client message could not be understood.  Never fatal to a session."""


class UnknownSession(CoderunnerError):
    """No prepared session matches the presented token."""

    close_reason = "invalid token"


class SessionBusy(CoderunnerError):
    """The session behind a token already has a streaming channel attached."""

    close_reason = "session already attached"


class InvalidTransition(CoderunnerError):
    """A session was asked to move between two phases that are not connected."""

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Illegal session transition {current} -> {target}")
