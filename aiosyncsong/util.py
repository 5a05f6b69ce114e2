"""Utility functions for aiosyncsong."""

from __future__ import annotations

import secrets
import socket
import time

SESSION_CODE_BYTES = 3
"""Session codes are 6 uppercase hex characters."""
ID_BYTES = 8


def get_local_ip() -> str | None:
    """Return the address of the interface used for outbound traffic, None when offline."""
    # Connecting a UDP socket only selects a route, no packet is sent
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        try:
            sock.connect(("192.0.2.1", 9))
        except OSError:
            return None
        address: str = sock.getsockname()[0]
    return None if address.startswith("0.") else address


def generate_id() -> str:
    """Return a random opaque id for members and queue entries."""
    return secrets.token_hex(ID_BYTES)


def generate_session_code() -> str:
    """Return a short, human-typeable session code."""
    return secrets.token_hex(SESSION_CODE_BYTES).upper()


def normalize_session_code(code: str) -> str:
    """Normalize a user supplied session code for lookups."""
    return code.strip().upper()


def now_ms() -> int:
    """Wall clock in milliseconds, used for server side timestamps."""
    return int(time.time() * 1000)
