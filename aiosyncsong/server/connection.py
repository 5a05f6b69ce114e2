"""One WebSocket connection to the SyncSong server."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import TYPE_CHECKING

from aiohttp import WSMsgType, web

from aiosyncsong.models.core import ErrorMessage, HelloMessage, HelloPayload
from aiosyncsong.models.types import ClientMessage, ErrorCode, ServerMessage
from aiosyncsong.util import generate_id

MAX_PENDING_MSG = 4096
"""Outbound messages buffered per connection before the member is dropped."""
HEARTBEAT_INTERVAL = 30.0
PREPARE_TIMEOUT = 10.0

logger = logging.getLogger(__name__)

# pyright: reportImportCycles=none
if TYPE_CHECKING:
    from .registry import SessionRegistry


async def _cancel(task: asyncio.Task[None] | None) -> None:
    """Cancel a task and wait for it, unless it is the task calling this."""
    if task is None or task.done() or task is asyncio.current_task():
        return
    task.cancel()
    with suppress(asyncio.CancelledError):
        await task


class SyncSongConnection:
    """
    A WebSocket accepted by the SyncSongServer.

    A random member id is assigned on accept and sent to the peer in a hello message.
    Inbound text frames are decoded and passed to the registry in arrival order.
    Outbound messages are buffered in a bounded queue that a writer task drains, so
    a broadcast never waits on a slow peer; a peer that lets the buffer fill up is
    disconnected.
    """

    _registry: SessionRegistry
    _wsock: web.WebSocketResponse
    _outbox: asyncio.Queue[ServerMessage]
    _reader_task: asyncio.Task[None] | None = None
    _writer_task: asyncio.Task[None] | None = None
    _closed: bool = False
    _overflowed: bool = False
    """Set once the outbox overflowed, so only one disconnect is scheduled."""
    _logger: logging.Logger

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        registry: SessionRegistry,
        request: web.Request,
        *,
        heartbeat: float = HEARTBEAT_INTERVAL,
    ) -> None:
        """
        Wrap an incoming upgrade request.

        Created by SyncSongServer.on_client_connect, not meant to be built by hand.
        """
        self._loop = loop
        self._registry = registry
        self._request = request
        self._wsock = web.WebSocketResponse(heartbeat=heartbeat)
        self._member_id = generate_id()
        self._logger = logger.getChild(self._member_id)
        self._outbox = asyncio.Queue(maxsize=MAX_PENDING_MSG)

    @property
    def member_id(self) -> str:
        """Random id of this connection, the member id inside sessions."""
        return self._member_id

    @property
    def websocket_connection(self) -> web.WebSocketResponse:
        """The underlying aiohttp WebSocket."""
        return self._wsock

    @property
    def closing(self) -> bool:
        """Whether the connection is closed or being closed."""
        return self._closed

    async def handle_connection(self) -> None:
        """
        Serve the connection until either side closes it.

        Only SyncSongServer calls this, once per connection.
        """
        try:
            async with asyncio.timeout(PREPARE_TIMEOUT):
                await self._wsock.prepare(self._request)
        except TimeoutError:
            self._logger.warning("WebSocket handshake timed out")
            raise
        self._logger.info("Connected from %s", self._request.remote)

        self._writer_task = self._loop.create_task(self._write_loop())
        self.send_message(HelloMessage(HelloPayload(user_id=self._member_id)))
        self._reader_task = self._loop.create_task(self._read_loop())
        try:
            await asyncio.wait(
                (self._reader_task, self._writer_task), return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            await self.disconnect()

    async def disconnect(self) -> None:
        """Leave the current session and close the socket. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        # Leave before closing, the other members must hear about it even if closing stalls
        self._registry.handle_disconnect(self)

        await _cancel(self._writer_task)
        await _cancel(self._reader_task)
        if not self._wsock.closed:
            try:
                await self._wsock.close()
            except Exception:
                self._logger.exception("Error closing the WebSocket")
        self._logger.info("Disconnected")

    def send_message(self, message: ServerMessage) -> None:
        """Queue a message for the peer without waiting for it to be written."""
        if self._closed:
            return
        try:
            self._outbox.put_nowait(message)
        except asyncio.QueueFull:
            if self._overflowed:
                return
            self._overflowed = True
            self._logger.error("%d messages pending, dropping slow client", MAX_PENDING_MSG)
            task = self._loop.create_task(self.disconnect())
            task.add_done_callback(lambda t: t.exception() if not t.cancelled() else None)
            return

        if isinstance(message, ErrorMessage):
            self._logger.debug("Queued error: %s", message.payload.message)
        else:
            self._logger.debug("Queued %s", type(message).__name__)

    async def _read_loop(self) -> None:
        try:
            async for frame in self._wsock:
                match frame.type:
                    case WSMsgType.TEXT:
                        self._handle_text(frame.data)
                    case WSMsgType.BINARY:
                        self._registry.send_error(
                            self, "Binary messages are not supported", ErrorCode.INVALID_INPUT
                        )
                    case WSMsgType.CLOSE | WSMsgType.CLOSING | WSMsgType.CLOSED:
                        break
        except Exception:
            self._logger.exception("Unexpected error reading from the WebSocket")
        self._logger.debug("Reader finished")

    async def _write_loop(self) -> None:
        try:
            while not self._wsock.closed:
                message = await self._outbox.get()
                await self._wsock.send_str(message.to_json())
        except ConnectionError as err:
            self._logger.warning("Write failed, closing: %s", err)
        except Exception:
            self._logger.exception("Unexpected error writing to the WebSocket")
        self._logger.debug("Writer finished")

    def _handle_text(self, data: str) -> None:
        try:
            message = ClientMessage.from_json(data)
        except (LookupError, ValueError, TypeError, AttributeError) as err:
            # mashumaro raises MissingField (a LookupError) or ValueError subclasses
            self._logger.debug("Malformed message: %s", err)
            self._registry.send_error(self, f"Invalid message: {err}", ErrorCode.INVALID_INPUT)
            return
        try:
            self._registry.handle_message(self, message)
        except Exception:
            self._logger.exception("Error handling %s", type(message).__name__)
