"""HTTP front of the SyncSong server: WebSocket upgrades, health checks and announcement."""

from __future__ import annotations

import asyncio
import logging

from aiohttp import web

from aiosyncsong.discovery import ServiceAdvertiser
from aiosyncsong.util import get_local_ip

from .connection import HEARTBEAT_INTERVAL, SyncSongConnection
from .registry import SessionRegistry

logger = logging.getLogger(__name__)

DEFAULT_PORT = 3000
DEFAULT_HOST = "0.0.0.0"


class SyncSongServer:
    """
    Accepts SyncSong clients and hands their messages to a single SessionRegistry.

    Every session lives in that registry for the lifetime of the process. The same path
    serves WebSocket upgrades and plain health checks, so a load balancer can check it.
    """

    API_PATH = "/"
    HEALTH_PATH = "/health"

    _connections: set[SyncSongConnection]
    """Open WebSocket connections."""
    _runner: web.AppRunner | None = None
    _site: web.TCPSite | None = None
    _advertiser: ServiceAdvertiser | None = None

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        server_id: str,
        server_name: str,
        registry: SessionRegistry | None = None,
        *,
        heartbeat: float = HEARTBEAT_INTERVAL,
    ) -> None:
        """
        Create a server; it does not listen before ``start_server``.

        Args:
            loop: Event loop the connections run on.
            server_id: Unique id, also the mDNS instance name.
            server_name: Human readable name announced over mDNS.
            registry: Registry to use, a fresh one if None.
            heartbeat: Seconds between WebSocket pings; dead peers are dropped after one
                missed pong.
        """
        self._loop = loop
        self._id = server_id
        self._name = server_name
        self._registry = registry if registry is not None else SessionRegistry()
        self._heartbeat = heartbeat
        self._connections = set()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        """Event loop the server runs on."""
        return self._loop

    @property
    def registry(self) -> SessionRegistry:
        """The registry holding every live session."""
        return self._registry

    @property
    def connections(self) -> set[SyncSongConnection]:
        """Open WebSocket connections."""
        return self._connections

    @property
    def id(self) -> str:
        """Unique id of this server."""
        return self._id

    @property
    def name(self) -> str:
        """Human readable name of this server."""
        return self._name

    @property
    def running(self) -> bool:
        """Whether the server is listening."""
        return self._site is not None

    def _build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get(self.API_PATH, self._handle_root)
        app.router.add_get(self.HEALTH_PATH, self._handle_health)
        return app

    async def _handle_health(self, request: web.Request) -> web.Response:  # noqa: ARG002
        return web.Response(text="ok\n")

    async def _handle_root(self, request: web.Request) -> web.StreamResponse:
        if request.headers.get("Upgrade", "").lower() != "websocket":
            return await self._handle_health(request)
        return await self.on_client_connect(request)

    async def on_client_connect(self, request: web.Request) -> web.StreamResponse:
        """Serve one WebSocket connection until it closes."""
        logger.debug("WebSocket upgrade from %s", request.remote)
        connection = SyncSongConnection(
            self._loop, self._registry, request, heartbeat=self._heartbeat
        )
        self._connections.add(connection)
        try:
            await connection.handle_connection()
        finally:
            self._connections.discard(connection)
        return connection.websocket_connection

    async def start_server(
        self,
        port: int = DEFAULT_PORT,
        host: str = DEFAULT_HOST,
        advertise_addresses: list[str] | None = None,
        *,
        advertise: bool = True,
    ) -> None:
        """
        Start listening.

        Args:
            port: TCP port to bind.
            host: Address to bind, ``0.0.0.0`` for every interface.
            advertise_addresses: Addresses announced over mDNS, the detected local
                address if None.
            advertise: Announce the server over mDNS.
        """
        if self._runner is not None:
            logger.warning("Server is already running")
            return

        runner = web.AppRunner(self._build_app())
        await runner.setup()
        bind_host = None if host == DEFAULT_HOST else host
        site = web.TCPSite(runner, host=bind_host, port=port)
        try:
            await site.start()
        except OSError as err:
            logger.error("Cannot listen on %s:%d: %s", host, port, err)
            await runner.cleanup()
            raise
        self._runner = runner
        self._site = site
        logger.info("SyncSong server listening on %s:%d", host, port)

        if advertise:
            await self._advertise(port, bind_host, advertise_addresses)

    async def _advertise(
        self, port: int, interface: str | None, addresses: list[str] | None
    ) -> None:
        if addresses is None:
            local_ip = get_local_ip()
            addresses = [local_ip] if local_ip else []
        if not addresses:
            logger.warning(
                "Not announcing over mDNS, no local address found; pass advertise_addresses"
            )
            return
        self._advertiser = ServiceAdvertiser(self._id, self._name, interface=interface)
        try:
            await self._advertiser.start(addresses, port, self.API_PATH)
        except OSError as err:
            logger.error("mDNS announcement failed: %s", err)
            await self._advertiser.stop()
            self._advertiser = None

    async def stop_server(self) -> None:
        """Stop announcing and listening; open connections are left alone."""
        advertiser, self._advertiser = self._advertiser, None
        if advertiser is not None:
            await advertiser.stop()

        site, self._site = self._site, None
        if site is not None:
            await site.stop()
        runner, self._runner = self._runner, None
        if runner is not None:
            await runner.cleanup()
            logger.debug("HTTP server stopped")

    async def close(self) -> None:
        """Close every connection, which ends all sessions, and stop the server."""
        connections = list(self._connections)
        results = await asyncio.gather(
            *(connection.disconnect() for connection in connections), return_exceptions=True
        )
        for connection, result in zip(connections, results, strict=True):
            if isinstance(result, Exception):
                logger.warning("Error closing connection %s: %s", connection.member_id, result)
        await self.stop_server()
