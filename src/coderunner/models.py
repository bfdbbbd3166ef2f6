"""Pydantic models for request, response and channel message bodies.

HTTP bodies and channel messages use the camelCase field names the browser
client sends (``compileLog``, ``timeLimitMs``); the Python side uses
snake_case attributes and the aliases take care of the mapping.
"""

from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_PROGRAM_ARGS = 64
MAX_PROGRAM_ARG_CHARS = 4096


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class SourceFile(_WireModel):
    """One virtual file of a submission."""

    path: str = Field(..., description="Path relative to the workspace root.")
    content: str = Field(default="", description="File contents (UTF-8 text).")


class Diagnostic(_WireModel):
    """A single compiler message pinned to a source location."""

    model_config = ConfigDict(frozen=True)

    file: str
    line: int = Field(..., ge=1)
    column: int = Field(default=1, ge=1)
    severity: Literal["error", "warning", "note"]
    message: str


class PrepareRequest(_WireModel):
    """Request body for compiling a submission and issuing a session token."""

    files: List[SourceFile] = Field(default_factory=list)
    language: Optional[str] = Field(
        default=None,
        description="One of 'c', 'cpp', 'java', 'python'.  May come from the URL instead.",
    )
    entry: Optional[str] = Field(default=None, description="Entry file, if not the default one.")
    standard: Optional[str] = Field(
        default=None, description="Language standard hint such as 'c11' or 'c++20'."
    )
    time_limit_ms: Optional[int] = Field(default=None, alias="timeLimitMs")
    input_wait_ms: Optional[int] = Field(default=None, alias="inputWaitMs")
    args: List[str] = Field(
        default_factory=list,
        max_length=MAX_PROGRAM_ARGS,
        description="Command-line arguments passed to the program.",
    )

    @field_validator("args")
    @classmethod
    def _check_args(cls, args: List[str]) -> List[str]:
        for arg in args:
            if len(arg) > MAX_PROGRAM_ARG_CHARS:
                raise ValueError(f"argument longer than {MAX_PROGRAM_ARG_CHARS} characters")
            if "\x00" in arg:
                raise ValueError("argument contains a NUL character")
        return args


class PrepareResponse(_WireModel):
    """Response body of the prepare endpoint.  ``token`` is null when ``ok`` is false."""

    token: Optional[str] = None
    ok: bool
    diagnostics: List[Diagnostic] = Field(default_factory=list)
    compile_log: str = Field(default="", alias="compileLog")


class ClientMessage(_WireModel):
    """A message sent by the client over the streaming channel.

    ``start`` carries a full :class:`PrepareRequest` for flows that compile on
    the channel itself; the other types only use ``data``.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: Literal["stdin", "kill", "ping", "start", "run"]
    data: Optional[str] = None


class ExitMetrics(_WireModel):
    compile_ms: int = Field(default=0, alias="compileMs")
    start_ms: int = Field(default=0, alias="startMs")
    exec_ms: int = Field(default=0, alias="execMs")
    total_ms: int = Field(default=0, alias="totalMs")
