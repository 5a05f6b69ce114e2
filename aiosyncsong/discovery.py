"""Find SyncSong servers on the local network, and announce one, over mDNS."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from ipaddress import ip_address

from zeroconf import (
    InterfaceChoice,
    IPVersion,
    NonUniqueNameException,
    ServiceStateChange,
    Zeroconf,
)
from zeroconf.asyncio import AsyncServiceBrowser, AsyncServiceInfo, AsyncZeroconf

logger = logging.getLogger(__name__)

MDNS_SERVICE_TYPE = "_syncsong._tcp.local."
RESOLVE_TIMEOUT_MS = 3000


def _usable_address(addresses: list[str]) -> str | None:
    """Pick the first address that is neither link-local nor unspecified."""
    for candidate in addresses:
        try:
            parsed = ip_address(candidate)
        except ValueError:
            continue
        if parsed.is_link_local or parsed.is_unspecified:
            continue
        return candidate
    return None


def _text_property(info: AsyncServiceInfo, key: str) -> str | None:
    for raw_key, raw_value in (info.properties or {}).items():
        name = raw_key.decode() if isinstance(raw_key, bytes) else raw_key
        if name != key or raw_value is None:
            continue
        return raw_value.decode() if isinstance(raw_value, bytes) else str(raw_value)
    return None


@dataclass(frozen=True, slots=True)
class DiscoveredServer:
    """A server announced on the local network."""

    name: str
    """Human readable server name, the mDNS instance name if none was announced."""
    url: str
    """WebSocket URL to pass to SyncSongClient.connect."""


class ServiceAdvertiser:
    """Announces a single server instance under ``_syncsong._tcp.local.``."""

    _zc: AsyncZeroconf | None = None
    _service: AsyncServiceInfo | None = None

    def __init__(self, server_id: str, server_name: str, *, interface: str | None = None) -> None:
        """
        Prepare the announcement; nothing is sent before ``start``.

        Args:
            server_id: Unique id, used as the mDNS instance name.
            server_name: Human readable name, sent as the ``name`` TXT property.
            interface: Only announce on this interface address, all interfaces if None.
        """
        self._server_id = server_id
        self._server_name = server_name
        self._interface = interface

    @property
    def active(self) -> bool:
        """Whether the service is currently registered."""
        return self._service is not None

    async def start(self, addresses: list[str], port: int, path: str) -> None:
        """Register the service, replacing a previous registration."""
        if self._zc is None:
            self._zc = AsyncZeroconf(
                ip_version=IPVersion.V4Only,
                interfaces=[self._interface] if self._interface else InterfaceChoice.Default,
            )
        elif self._service is not None:
            await self._zc.async_unregister_service(self._service)
            self._service = None

        service = AsyncServiceInfo(
            type_=MDNS_SERVICE_TYPE,
            name=f"{self._server_id}.{MDNS_SERVICE_TYPE}",
            server=f"{self._server_id}.local.",
            parsed_addresses=addresses,
            port=port,
            properties={"path": path, "name": self._server_name},
        )
        try:
            await self._zc.async_register_service(service)
        except NonUniqueNameException:
            logger.error("Another server announces the id %s on this network", self._server_id)
            return
        self._service = service
        logger.debug("Announcing %s on %s port %d", path, ", ".join(addresses), port)

    async def stop(self) -> None:
        """Withdraw the announcement and release the mDNS sockets."""
        zc, self._zc = self._zc, None
        service, self._service = self._service, None
        if zc is None:
            return
        try:
            if service is not None:
                await zc.async_unregister_service(service)
        finally:
            await zc.async_close()


async def _resolve(zeroconf: Zeroconf, name: str) -> DiscoveredServer | None:
    info = AsyncServiceInfo(MDNS_SERVICE_TYPE, name)
    if not info.load_from_cache(zeroconf):
        await info.async_request(zeroconf, RESOLVE_TIMEOUT_MS)

    address = _usable_address(info.parsed_addresses())
    if address is None or info.port is None:
        logger.debug("Ignoring %s, no usable address or port", name)
        return None
    path = _text_property(info, "path") or "/"
    if not path.startswith("/"):
        logger.debug("Ignoring %s, invalid path %r", name, path)
        return None
    label = _text_property(info, "name") or name.removesuffix(f".{MDNS_SERVICE_TYPE}")
    return DiscoveredServer(name=label, url=f"ws://{address}:{info.port}{path}")


async def discover_servers(timeout: float = 3.0) -> list[DiscoveredServer]:
    """
    Browse the local network for SyncSong servers.

    Listens for ``timeout`` seconds, then resolves every instance that was announced in
    that window. Instances that cannot be resolved are left out.
    """
    loop = asyncio.get_running_loop()
    names: set[str] = set()

    def _on_change(
        zeroconf: Zeroconf,  # noqa: ARG001
        service_type: str,  # noqa: ARG001
        name: str,
        state_change: ServiceStateChange,
    ) -> None:
        # Called from the zeroconf thread
        if state_change is ServiceStateChange.Removed:
            loop.call_soon_threadsafe(names.discard, name)
        else:
            loop.call_soon_threadsafe(names.add, name)

    azc = AsyncZeroconf(ip_version=IPVersion.V4Only)
    browser = AsyncServiceBrowser(azc.zeroconf, MDNS_SERVICE_TYPE, handlers=[_on_change])
    try:
        await asyncio.sleep(timeout)
        results = await asyncio.gather(*(_resolve(azc.zeroconf, name) for name in sorted(names)))
    finally:
        await browser.async_cancel()
        await azc.async_close()

    servers = [server for server in results if server is not None]
    logger.debug("Discovered %d server(s)", len(servers))
    return servers
