"""Models for enum types used by SyncSong."""

from dataclasses import dataclass
from enum import Enum

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin
from mashumaro.types import Discriminator


# Base message classes
@dataclass
class ClientMessage(DataClassORJSONMixin):
    """Base class for client messages."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        discriminator = Discriminator(field="type", include_subtypes=True)


@dataclass
class ServerMessage(DataClassORJSONMixin):
    """Base class for server messages."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        discriminator = Discriminator(field="type", include_subtypes=True)


# Enums


class TrackSource(Enum):
    """Provider the track metadata originates from."""

    SPOTIFY = "spotify"
    APPLE = "apple"
    ITUNES = "itunes"
    """Local iTunes library driven through a media-control scripting bridge."""
    LOCAL = "local"
    UNKNOWN = "unknown"

    @property
    def is_streaming(self) -> bool:
        """Streaming providers need a provider-native id to be playable."""
        return self in STREAMING_SOURCES


STREAMING_SOURCES = frozenset({TrackSource.SPOTIFY, TrackSource.APPLE})


class ControlType(Enum):
    """Playback controls a member can request from the host."""

    NEXT = "next"
    PREV = "prev"
    TOGGLE = "toggle"
    SEEK = "seek"


class ErrorCode(Enum):
    """Machine readable reason carried by error messages."""

    NOT_FOUND = "not_found"
    """Unknown session code, or the connection is not part of the addressed session."""
    FORBIDDEN = "forbidden"
    """Host-only operation, or guest control while it is disabled."""
    INVALID_INPUT = "invalid_input"
    """Malformed message, track or reorder payload."""
    HOST_UNAVAILABLE = "host_unavailable"
    """A control request could not be forwarded because the host is gone."""
    SESSION_ENDED = "session_ended"
    """The host left; the session no longer exists."""
