"""Public interface for the SyncSong server package."""

from .connection import SyncSongConnection
from .registry import (
    MemberJoinedEvent,
    MemberLeftEvent,
    RegistryEvent,
    SessionCreatedEvent,
    SessionEndedEvent,
    SessionRegistry,
)
from .server import SyncSongServer
from .session import (
    ForbiddenError,
    HostUnavailableError,
    InvalidInputError,
    Member,
    MemberConnection,
    Session,
    SessionError,
    SessionNotFoundError,
)

__all__ = [
    "ForbiddenError",
    "HostUnavailableError",
    "InvalidInputError",
    "Member",
    "MemberConnection",
    "MemberJoinedEvent",
    "MemberLeftEvent",
    "RegistryEvent",
    "Session",
    "SessionCreatedEvent",
    "SessionEndedEvent",
    "SessionError",
    "SessionNotFoundError",
    "SessionRegistry",
    "SyncSongConnection",
    "SyncSongServer",
]
