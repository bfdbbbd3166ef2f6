"""Prepare and attach orchestration.

:class:`RunnerService` owns the long-lived pieces of the runner (workspace
store, compiler adapters, launcher and session registry) and implements the
two client flows:

* **prepare, then attach**: ``prepare()`` compiles a submission and issues a
  token; a streaming channel later presents the token to ``attach()`` and
  runs the session.
* **compile on the channel**: ``run_on_channel()`` receives the submission
  as the channel's first message, reports diagnostics on the channel and
  runs the program right away.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError

from .compiler import CompileResult, CompilerAdapter, build_adapters
from .config import Config
from .errors import CompileError, InputError
from .launcher import Launcher
from .models import ClientMessage, ExitMetrics, PrepareRequest, PrepareResponse
from .protocol import data_message, diagnostics_message, exit_message
from .session import Channel, ExecutionSession, SessionRegistry
from .workspace import WorkspaceStore

logger = logging.getLogger(__name__)

# Exit code reported on the channel when the submission never compiled.
COMPILE_FAILED_CODE = 1


def compile_metrics(compile_ms: int) -> Dict[str, int]:
    return ExitMetrics(compile_ms=compile_ms, total_ms=compile_ms).model_dump(by_alias=True)


class RunnerService:
    """Entry point used by the HTTP and WebSocket handlers."""

    def __init__(self, config: Config, launcher: Optional[Launcher] = None) -> None:
        self.config = config
        self.store = WorkspaceStore(config.workspace_root)
        self.adapters: Dict[str, CompilerAdapter] = build_adapters(config)
        self.launcher = launcher or Launcher()
        self.registry = SessionRegistry()

    def _adapter_for(self, request: PrepareRequest, language: Optional[str]) -> Tuple[str, CompilerAdapter]:
        if not request.files:
            raise InputError("No files submitted")
        lang = (language or request.language or "").strip().lower() or self._infer_language(request)
        if not lang:
            raise InputError("No language given")
        adapter = self.adapters.get(lang)
        if adapter is None:
            raise InputError(f"Unsupported language: {lang}")
        return lang, adapter

    def _infer_language(self, request: PrepareRequest) -> str:
        """Language of the entry file, or of the first submitted file, by extension."""
        name = request.entry or request.files[0].path
        suffix = os.path.splitext(name)[1].lower()
        for lang, adapter in self.adapters.items():
            if suffix in adapter.extensions:
                return lang
        return ""

    async def compile(
        self, request: PrepareRequest, language: Optional[str] = None
    ) -> Tuple[ExecutionSession, CompileResult]:
        """Materialize and compile ``request``.

        The returned session is ``ready`` when the result is ok and
        ``failed`` (workspace already removed) otherwise.  Raises
        :class:`InputError` for requests that cannot be compiled at all.
        """
        lang, adapter = self._adapter_for(request, language)
        workspace = self.store.create(request.files)
        limits = self.config.limits_for(lang).narrowed(request.time_limit_ms, request.input_wait_ms)
        session = ExecutionSession(workspace, lang, limits, self.store, self.launcher)
        session.begin_compile()
        try:
            result = await adapter.compile(
                workspace, entry=request.entry, standard=request.standard, args=request.args
            )
        except BaseException:
            session.fail()
            raise
        if result.ok and result.run_command is not None:
            session.compiled(result.run_command, result.duration_ms)
        else:
            session.fail()
        return session, result

    async def prepare(self, request: PrepareRequest, language: Optional[str] = None) -> PrepareResponse:
        """Compile a submission and, on success, register it under a new token."""
        session, result = await self.compile(request, language)
        token = None
        if result.ok:
            token = self.registry.register(session)
            logger.info("Prepared %s session %s", session.language, session.workspace.id)
        else:
            logger.info(
                "Rejected %s submission: %d diagnostic(s)",
                session.language,
                len(result.diagnostics),
            )
        return PrepareResponse(
            token=token,
            ok=result.ok,
            diagnostics=result.diagnostics,
            compile_log=result.log,
        )

    def attach(self, token: Optional[str]) -> ExecutionSession:
        """Claim the prepared session behind ``token`` for one channel."""
        return self.registry.claim(token)

    async def start(self, request: PrepareRequest) -> Tuple[ExecutionSession, CompileResult]:
        """Compile for the channel flow; raises :class:`CompileError` on failure."""
        session, result = await self.compile(request)
        if not result.ok:
            raise CompileError(result)
        self.registry.claim(self.registry.register(session))
        return session, result

    async def run_on_channel(self, channel: Channel, message: ClientMessage) -> None:
        """Handle a ``start`` message: compile, report diagnostics, then run."""
        payload: Dict[str, Any] = message.model_dump(exclude={"type", "data"})
        try:
            request = PrepareRequest.model_validate(payload)
            session, result = await self.start(request)
        except ValidationError as exc:
            await self._reject(channel, f"Invalid start message: {exc.error_count()} error(s)")
            return
        except InputError as exc:
            await self._reject(channel, str(exc))
            return
        except CompileError as exc:
            failed = exc.result
            await channel.send(diagnostics_message(_dump(failed.diagnostics)))
            if failed.log and not failed.diagnostics:
                await channel.send(data_message("stderr", failed.log.rstrip("\n") + "\n"))
            await channel.send(
                exit_message(COMPILE_FAILED_CODE, "compile_error", compile_metrics(failed.duration_ms))
            )
            await channel.close()
            return
        except Exception as exc:
            logger.exception("Unhandled error while starting a session: %s", exc)
            await self._reject(channel, "internal error", reason="internal_error")
            return

        await channel.send(diagnostics_message(_dump(result.diagnostics)))
        await session.run(channel)

    async def _reject(self, channel: Channel, detail: str, reason: str = "compile_error") -> None:
        logger.info("Rejected start message: %s", detail)
        await channel.send(data_message("stderr", detail + "\n"))
        await channel.send(exit_message(COMPILE_FAILED_CODE, reason, compile_metrics(0)))
        await channel.close()

    def sweep(self) -> List[ExecutionSession]:
        """Discard prepared sessions whose token was never used."""
        return self.registry.expire(self.config.token_ttl_secs)

    def shutdown(self) -> None:
        self.registry.drain()


def _dump(diagnostics) -> List[Dict[str, Any]]:
    return [d.model_dump() for d in diagnostics]
