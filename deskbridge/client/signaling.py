from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import websockets
from pydantic import BaseModel, ValidationError

from deskbridge.api.models import Role
from deskbridge.protocol import JoinSession, LeaveSession, dump, parse_server_message


logger = logging.getLogger(__name__)

MessageHandler = Callable[[Any], Awaitable[None]]
DisconnectHandler = Callable[[], Awaitable[None]]


class SignalingClient:
    """Participant end of the relay WebSocket.

    Inbound messages are decoded and awaited one at a time, in arrival order, so a
    handler never observes an answer before the offer it responds to.
    """

    def __init__(self, url: str, *, open_timeout: float = 10.0) -> None:
        self.url = url
        self.open_timeout = open_timeout
        self._ws = None
        self._reader: asyncio.Task[None] | None = None
        self._handler: MessageHandler | None = None
        self._on_disconnect: DisconnectHandler | None = None

    @property
    def connected(self) -> bool:
        return self._ws is not None and self._reader is not None and not self._reader.done()

    async def connect(self, handler: MessageHandler, *, on_disconnect: DisconnectHandler | None = None) -> None:
        if self.connected:
            return
        self._handler = handler
        self._on_disconnect = on_disconnect
        self._ws = await websockets.connect(self.url, open_timeout=self.open_timeout)
        self._reader = asyncio.create_task(self._read_loop())
        logger.info("Signaling connected to %s", self.url)

    async def _read_loop(self) -> None:
        assert self._ws is not None
        try:
            async for raw in self._ws:
                try:
                    message = parse_server_message(json.loads(raw))
                except (ValueError, ValidationError):
                    logger.warning("Dropping malformed relay message: %r", raw)
                    continue
                if self._handler is not None:
                    await self._handler(message)
        except websockets.ConnectionClosed as e:
            logger.info("Signaling connection closed: %s", e)
        finally:
            if self._on_disconnect is not None:
                await self._on_disconnect()

    async def send(self, message: BaseModel) -> None:
        if self._ws is None:
            raise ConnectionError("Signaling is not connected")
        await self._ws.send(json.dumps(dump(message)))

    async def join(self, code: str, role: Role) -> None:
        await self.send(JoinSession(session_code=code, role=role))

    async def leave(self) -> None:
        await self.send(LeaveSession())

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        reader, self._reader = self._reader, None
        self._on_disconnect = None
        if ws is not None:
            await ws.close()
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader
