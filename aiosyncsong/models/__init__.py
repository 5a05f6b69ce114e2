"""Models for the SyncSong session protocol."""

from __future__ import annotations

__all__ = [
    "STREAMING_SOURCES",
    "AddedBy",
    "ClientMessage",
    "ControlType",
    "ErrorCode",
    "MemberInfo",
    "NowPlaying",
    "QueueItem",
    "ServerMessage",
    "Track",
    "TrackSource",
    "core",
    "session",
    "types",
]

from . import core, session, types
from .session import AddedBy, MemberInfo, NowPlaying, QueueItem, Track
from .types import (
    STREAMING_SOURCES,
    ClientMessage,
    ControlType,
    ErrorCode,
    ServerMessage,
    TrackSource,
)
