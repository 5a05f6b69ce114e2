"""Run a standalone SyncSong server: ``python -m aiosyncsong.server``."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import socket
from contextlib import suppress

from aiosyncsong.util import generate_id

from .server import DEFAULT_HOST, DEFAULT_PORT, SyncSongServer

logger = logging.getLogger(__name__)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="SyncSong listening session server")
    parser.add_argument("--host", default=DEFAULT_HOST, help="Address to listen on")
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.environ.get("PORT", DEFAULT_PORT)),
        help="TCP port, defaults to $PORT or %(default)s",
    )
    parser.add_argument(
        "--advertise",
        action="store_true",
        help="Advertise the server on the local network via mDNS",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        type=str.upper,
    )
    return parser.parse_args(argv)


async def _run(args: argparse.Namespace) -> None:
    loop = asyncio.get_running_loop()
    server = SyncSongServer(loop, server_id=generate_id(), server_name=socket.gethostname())
    await server.start_server(port=args.port, host=args.host, advertise=args.advertise)

    stop = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Not available on Windows, KeyboardInterrupt still ends the process there
        with suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)
    try:
        await stop.wait()
    finally:
        logger.info("Shutting down")
        await server.close()


def main(argv: list[str] | None = None) -> None:
    """Parse the command line and serve until interrupted."""
    args = _parse_args(argv)
    logging.basicConfig(
        level=args.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    with suppress(KeyboardInterrupt):
        asyncio.run(_run(args))


if __name__ == "__main__":
    main()
