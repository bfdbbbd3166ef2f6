"""
FastAPI application for the code runner service.

This module configures the FastAPI application, registers the prepare
endpoints and the streaming WebSocket route, and enforces authentication
via an API key on HTTP requests.  WebSocket channels are authenticated by
the session token returned from the prepare endpoint instead.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Dict, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse

from ..config import Config
from ..errors import InputError
from ..models import PrepareRequest, PrepareResponse
from ..service import RunnerService
from .gateway import router as gateway_router


logger = logging.getLogger("coderunner")

if not logger.handlers:
    handler = logging.StreamHandler()
    formatter = logging.Formatter("[coderunner] %(levelname)s - %(message)s")
    handler.setFormatter(formatter)
    logger.addHandler(handler)

logger.setLevel(logging.INFO)


async def _sweep_forever(service: RunnerService, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        expired = service.sweep()
        if expired:
            logger.info("Swept %d unattached session(s)", len(expired))


def create_app(config: Optional[Config] = None) -> FastAPI:
    """Build the application around a fresh :class:`RunnerService`."""
    config = config or Config.from_env()
    logger.setLevel(config.log_level)
    logger.info(
        "Loaded config: workspace_root=%s, allowed_langs=%s, wall_clock_ms=%s, input_wait_ms=%s",
        config.workspace_root,
        config.allowed_langs,
        config.wall_clock_ms,
        config.input_wait_ms,
    )
    service = RunnerService(config)

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        interval = max(1.0, min(config.token_ttl_secs / 2, 30.0))
        sweeper = asyncio.create_task(_sweep_forever(service, interval))
        try:
            yield
        finally:
            sweeper.cancel()
            service.shutdown()

    app = FastAPI(title="Code Runner Service", version="0.1.0", lifespan=lifespan)
    app.state.config = config
    app.state.service = service

    @app.middleware("http")
    async def authenticate(request, call_next):
        """Middleware to enforce API key authentication on HTTP requests."""
        path = request.url.path
        method = request.method
        client = getattr(request.client, "host", "unknown")

        logger.info("Incoming request: %s %s from %s", method, path, client)

        if config.api_key and path != "/health":
            provided_key = request.headers.get("x-api-key")
            if provided_key != config.api_key:
                logger.warning("Invalid API key for %s %s from %s", method, path, client)
                return JSONResponse(status_code=401, content={"detail": "Invalid API key"})

        response = await call_next(request)
        logger.info("Response: %s %s -> %s", method, path, response.status_code)
        return response

    @app.get("/health")
    async def health() -> Dict[str, str]:
        """Return a simple health check response."""
        return {"status": "ok"}

    async def _prepare(req: PrepareRequest, language: Optional[str]) -> PrepareResponse:
        try:
            return await service.prepare(req, language)
        except InputError as exc:
            logger.warning("[/prepare] Rejected request: %s", exc)
            raise HTTPException(status_code=400, detail=str(exc))
        except Exception as exc:
            logger.exception("[/prepare] Unhandled error while preparing: %s", exc)
            raise HTTPException(status_code=500, detail="Prepare error")

    @app.post("/api/prepare", response_model=PrepareResponse, response_model_by_alias=True)
    async def prepare(req: PrepareRequest) -> PrepareResponse:
        """Compile a submission and return a session token on success."""
        return await _prepare(req, None)

    @app.post("/api/{language}/prepare", response_model=PrepareResponse, response_model_by_alias=True)
    async def prepare_language(language: str, req: PrepareRequest) -> PrepareResponse:
        """Same as ``/api/prepare`` with the language taken from the URL."""
        return await _prepare(req, language)

    app.include_router(gateway_router)
    return app


config = Config.from_env()
app = create_app(config)
