"""WebSocket streaming channel.

``/ws/run?token=<t>`` attaches to a session prepared over HTTP.  Without a
token the first message must be ``{"type": "start", ...}`` carrying the
submission, which is then compiled on the channel itself.

Messages are JSON objects.  Client to server: ``stdin``, ``kill``, ``ping``
(and ``start`` as described above).  Server to client: ``stdout``,
``stderr``, ``stdin_req``, ``image``, ``diagnostics``, ``pong`` and a single
final ``exit``.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ..errors import ChannelError, SessionBusy, UnknownSession
from ..service import RunnerService
from ..session import Channel, parse_client_message

logger = logging.getLogger(__name__)

POLICY_VIOLATION = 1008

router = APIRouter()


class WebSocketChannel(Channel):
    """:class:`~coderunner.session.Channel` over a Starlette WebSocket."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket
        self.closed = False

    async def send(self, message: Dict[str, Any]) -> bool:
        if self.closed:
            return False
        try:
            await self.websocket.send_json(message)
        except (WebSocketDisconnect, RuntimeError, OSError):
            self.closed = True
            return False
        return True

    async def receive(self) -> Optional[str]:
        if self.closed:
            return None
        try:
            message = await self.websocket.receive()
        except (WebSocketDisconnect, RuntimeError):
            self.closed = True
            return None
        if message["type"] == "websocket.disconnect":
            self.closed = True
            return None
        text = message.get("text")
        if text is None and message.get("bytes") is not None:
            text = message["bytes"].decode("utf-8", errors="replace")
        return text or ""

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.closed:
            return
        self.closed = True
        try:
            await self.websocket.close(code=code, reason=reason)
        except (RuntimeError, OSError) as exc:
            logger.debug("Channel already closed: %s", exc)


@router.websocket("/ws/run")
async def run_socket(websocket: WebSocket, token: Optional[str] = None) -> None:
    service: RunnerService = websocket.app.state.service
    await websocket.accept()
    channel = WebSocketChannel(websocket)

    if token:
        try:
            session = service.attach(token)
        except (UnknownSession, SessionBusy) as exc:
            logger.info("Rejected attach: %s", exc.close_reason)
            await channel.close(POLICY_VIOLATION, exc.close_reason)
            return
        logger.info("Attached channel to session %s", session.workspace.id)
        await session.run(channel)
        return

    raw = await channel.receive()
    if raw is None:
        return
    try:
        message = parse_client_message(raw)
    except ChannelError as exc:
        logger.debug("Bad first message: %s", exc)
        await channel.close(POLICY_VIOLATION, "expected start message")
        return
    if message.type != "start":
        await channel.close(POLICY_VIOLATION, "expected start message")
        return
    await service.run_on_channel(channel, message)
