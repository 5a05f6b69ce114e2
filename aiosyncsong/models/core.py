"""
Core messages for the SyncSong protocol.

Every message is a JSON object ``{"type": ..., "payload": {...}}``. Clients create and join
sessions, edit the shared queue, publish the host's playback state and request playback
controls. The server answers with full session snapshots, queue and now-playing deltas,
forwarded control requests (host only) and errors (requester only).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Annotated, Literal

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin
from mashumaro.types import Alias

from .session import MemberInfo, NowPlaying, QueueItem, Track
from .types import ClientMessage, ControlType, ErrorCode, ServerMessage


# Client -> Server: session:create
@dataclass
class SessionCreatePayload(DataClassORJSONMixin):
    """Request to open a new session with the sender as host."""

    display_name: Annotated[str, Alias("displayName")] = ""
    """Name shown to other members, defaults to 'Host' when blank."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        serialize_by_alias = True


@dataclass
class SessionCreateMessage(ClientMessage):
    """Message sent by a client to create a session."""

    payload: SessionCreatePayload = field(default_factory=SessionCreatePayload)
    type: Literal["session:create"] = "session:create"


# Client -> Server: session:join
@dataclass
class SessionJoinPayload(DataClassORJSONMixin):
    """Request to join an existing session."""

    session_id: Annotated[str, Alias("sessionId")]
    """Session code, matched case-insensitively."""
    display_name: Annotated[str, Alias("displayName")] = ""
    """Name shown to other members, defaults to 'Guest' when blank."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        serialize_by_alias = True


@dataclass
class SessionJoinMessage(ClientMessage):
    """Message sent by a client to join a session."""

    payload: SessionJoinPayload
    type: Literal["session:join"] = "session:join"


# Client -> Server: session:leave
@dataclass
class SessionLeavePayload(DataClassORJSONMixin):
    """Leave the current session without closing the connection."""


@dataclass
class SessionLeaveMessage(ClientMessage):
    """Message sent by a client to leave its session."""

    payload: SessionLeavePayload = field(default_factory=SessionLeavePayload)
    type: Literal["session:leave"] = "session:leave"


# Client -> Server: session:setGuestControl
@dataclass
class SetGuestControlPayload(DataClassORJSONMixin):
    """Host toggle allowing guests to request playback controls and edit the queue."""

    allow_guest_control: Annotated[bool, Alias("allowGuestControl")]
    session_id: Annotated[str | None, Alias("sessionId")] = None

    class Config(BaseConfig):
        """Config for parsing json messages."""

        serialize_by_alias = True
        omit_none = True


@dataclass
class SetGuestControlMessage(ClientMessage):
    """Message sent by the host to change guest permissions."""

    payload: SetGuestControlPayload
    type: Literal["session:setGuestControl"] = "session:setGuestControl"


# Client -> Server: session:setPartyMode
@dataclass
class SetPartyModePayload(DataClassORJSONMixin):
    """Host toggle for party mode, stored and broadcast with the session state."""

    party_mode: Annotated[bool, Alias("partyMode")]
    session_id: Annotated[str | None, Alias("sessionId")] = None

    class Config(BaseConfig):
        """Config for parsing json messages."""

        serialize_by_alias = True
        omit_none = True


@dataclass
class SetPartyModeMessage(ClientMessage):
    """Message sent by the host to change party mode."""

    payload: SetPartyModePayload
    type: Literal["session:setPartyMode"] = "session:setPartyMode"


# Client -> Server: queue:add
@dataclass
class QueueAddPayload(DataClassORJSONMixin):
    """Track to append to the shared queue."""

    track: Track
    session_id: Annotated[str | None, Alias("sessionId")] = None

    class Config(BaseConfig):
        """Config for parsing json messages."""

        serialize_by_alias = True
        omit_none = True


@dataclass
class QueueAddMessage(ClientMessage):
    """Message sent by any member to queue a track."""

    payload: QueueAddPayload
    type: Literal["queue:add"] = "queue:add"


# Client -> Server: queue:remove
@dataclass
class QueueRemovePayload(DataClassORJSONMixin):
    """Queue entry to remove."""

    queue_id: Annotated[str, Alias("queueId")]
    session_id: Annotated[str | None, Alias("sessionId")] = None

    class Config(BaseConfig):
        """Config for parsing json messages."""

        serialize_by_alias = True
        omit_none = True


@dataclass
class QueueRemoveMessage(ClientMessage):
    """Message sent to remove a queue entry."""

    payload: QueueRemovePayload
    type: Literal["queue:remove"] = "queue:remove"


# Client -> Server: queue:reorder
@dataclass
class QueueReorderPayload(DataClassORJSONMixin):
    """New queue order as a list of queue ids."""

    order: list[str] = field(default_factory=list)
    """
    Unknown ids are ignored, existing ids missing from the list are appended in their
    previous order.
    """
    session_id: Annotated[str | None, Alias("sessionId")] = None

    class Config(BaseConfig):
        """Config for parsing json messages."""

        serialize_by_alias = True
        omit_none = True


@dataclass
class QueueReorderMessage(ClientMessage):
    """Message sent to reorder the queue."""

    payload: QueueReorderPayload
    type: Literal["queue:reorder"] = "queue:reorder"


# Client -> Server: host:state
@dataclass
class HostStatePayload(DataClassORJSONMixin):
    """Playback state published by the member holding control authority."""

    now_playing: Annotated[NowPlaying | None, Alias("nowPlaying")] = None
    session_id: Annotated[str | None, Alias("sessionId")] = None

    def __post_serialize__(self, d: dict[str, object]) -> dict[str, object]:
        """Drop the optional session id but keep an explicit null nowPlaying."""
        if d.get("sessionId") is None:
            d.pop("sessionId", None)
        return d

    class Config(BaseConfig):
        """Config for parsing json messages."""

        serialize_by_alias = True


@dataclass
class HostStateMessage(ClientMessage):
    """Message sent by the host to publish the now-playing state."""

    payload: HostStatePayload
    type: Literal["host:state"] = "host:state"


# Client -> Server: control:next, control:prev, control:toggle
@dataclass
class ControlPayload(DataClassORJSONMixin):
    """Playback control request without arguments."""

    session_id: Annotated[str | None, Alias("sessionId")] = None

    class Config(BaseConfig):
        """Config for parsing json messages."""

        serialize_by_alias = True
        omit_none = True


@dataclass
class ControlNextMessage(ClientMessage):
    """Request to advance to the next queue entry."""

    payload: ControlPayload = field(default_factory=ControlPayload)
    type: Literal["control:next"] = "control:next"


@dataclass
class ControlPrevMessage(ClientMessage):
    """Request to go back to the previous queue entry."""

    payload: ControlPayload = field(default_factory=ControlPayload)
    type: Literal["control:prev"] = "control:prev"


@dataclass
class ControlToggleMessage(ClientMessage):
    """Request to toggle between playing and paused."""

    payload: ControlPayload = field(default_factory=ControlPayload)
    type: Literal["control:toggle"] = "control:toggle"


# Client -> Server: control:seek
@dataclass
class ControlSeekPayload(DataClassORJSONMixin):
    """Seek request, target position in seconds."""

    secs: float
    session_id: Annotated[str | None, Alias("sessionId")] = None

    def __post_init__(self) -> None:
        """Validate field values."""
        if self.secs < 0:
            raise ValueError(f"secs must not be negative, got {self.secs}")

    class Config(BaseConfig):
        """Config for parsing json messages."""

        serialize_by_alias = True
        omit_none = True


@dataclass
class ControlSeekMessage(ClientMessage):
    """Request to seek the host's playback."""

    payload: ControlSeekPayload
    type: Literal["control:seek"] = "control:seek"


CLIENT_CONTROL_MESSAGES: dict[type[ClientMessage], ControlType] = {
    ControlNextMessage: ControlType.NEXT,
    ControlPrevMessage: ControlType.PREV,
    ControlToggleMessage: ControlType.TOGGLE,
    ControlSeekMessage: ControlType.SEEK,
}


# Server -> Client: hello
@dataclass
class HelloPayload(DataClassORJSONMixin):
    """Identity assigned to the connection."""

    user_id: Annotated[str, Alias("userId")]

    class Config(BaseConfig):
        """Config for parsing json messages."""

        serialize_by_alias = True


@dataclass
class HelloMessage(ServerMessage):
    """Message sent by the server right after the connection is established."""

    payload: HelloPayload
    type: Literal["hello"] = "hello"


# Server -> Client: session:created
@dataclass
class SessionCreatedPayload(DataClassORJSONMixin):
    """Code of the session that was just created."""

    session_id: Annotated[str, Alias("sessionId")]

    class Config(BaseConfig):
        """Config for parsing json messages."""

        serialize_by_alias = True


@dataclass
class SessionCreatedMessage(ServerMessage):
    """Message sent to the creator of a session."""

    payload: SessionCreatedPayload
    type: Literal["session:created"] = "session:created"


# Server -> Client: session:state
@dataclass
class SessionStatePayload(DataClassORJSONMixin):
    """Full snapshot of a session."""

    session_id: Annotated[str, Alias("sessionId")]
    host_user_id: Annotated[str, Alias("hostUserId")]
    allow_guest_control: Annotated[bool, Alias("allowGuestControl")]
    members: list[MemberInfo]
    queue: list[QueueItem]
    now_playing: Annotated[NowPlaying | None, Alias("nowPlaying")] = None
    party_mode: Annotated[bool, Alias("partyMode")] = False

    class Config(BaseConfig):
        """Config for parsing json messages."""

        serialize_by_alias = True


@dataclass
class SessionStateMessage(ServerMessage):
    """Message sent to every member on create, join, leave and permission changes."""

    payload: SessionStatePayload
    type: Literal["session:state"] = "session:state"


# Server -> Client: queue:updated
@dataclass
class QueueUpdatedPayload(DataClassORJSONMixin):
    """The complete queue after a mutation."""

    queue: list[QueueItem]


@dataclass
class QueueUpdatedMessage(ServerMessage):
    """Message sent to every member after the queue changed."""

    payload: QueueUpdatedPayload
    type: Literal["queue:updated"] = "queue:updated"


# Server -> Client: nowPlaying:updated
@dataclass
class NowPlayingUpdatedPayload(DataClassORJSONMixin):
    """The now-playing state after a publish or a removal, null when nothing is loaded."""

    now_playing: Annotated[NowPlaying | None, Alias("nowPlaying")] = None

    class Config(BaseConfig):
        """Config for parsing json messages."""

        serialize_by_alias = True


@dataclass
class NowPlayingUpdatedMessage(ServerMessage):
    """Message sent to every member after the now-playing state changed."""

    payload: NowPlayingUpdatedPayload
    type: Literal["nowPlaying:updated"] = "nowPlaying:updated"


# Server -> Client: control:next, control:prev, control:toggle, control:seek
@dataclass
class ForwardedControlPayload(DataClassORJSONMixin):
    """A control request forwarded to the host, tagged with its origin."""

    from_user_id: Annotated[str, Alias("fromUserId")]
    from_name: Annotated[str, Alias("fromName")]
    session_id: Annotated[str, Alias("sessionId")]
    secs: float | None = None
    """Target position in seconds, only set for seek requests."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        serialize_by_alias = True
        omit_none = True


@dataclass
class ForwardedNextMessage(ServerMessage):
    """Next request forwarded to the host."""

    payload: ForwardedControlPayload
    type: Literal["control:next"] = "control:next"


@dataclass
class ForwardedPrevMessage(ServerMessage):
    """Previous request forwarded to the host."""

    payload: ForwardedControlPayload
    type: Literal["control:prev"] = "control:prev"


@dataclass
class ForwardedToggleMessage(ServerMessage):
    """Play/pause toggle request forwarded to the host."""

    payload: ForwardedControlPayload
    type: Literal["control:toggle"] = "control:toggle"


@dataclass
class ForwardedSeekMessage(ServerMessage):
    """Seek request forwarded to the host."""

    payload: ForwardedControlPayload
    type: Literal["control:seek"] = "control:seek"


FORWARDED_CONTROL_MESSAGES: dict[ControlType, type[ServerMessage]] = {
    ControlType.NEXT: ForwardedNextMessage,
    ControlType.PREV: ForwardedPrevMessage,
    ControlType.TOGGLE: ForwardedToggleMessage,
    ControlType.SEEK: ForwardedSeekMessage,
}


# Server -> Client: error
@dataclass
class ErrorPayload(DataClassORJSONMixin):
    """Human readable reason for a rejected operation."""

    message: str
    code: ErrorCode | None = None

    class Config(BaseConfig):
        """Config for parsing json messages."""

        omit_none = True


@dataclass
class ErrorMessage(ServerMessage):
    """Message sent to the originating connection only, never fatal to it."""

    payload: ErrorPayload
    type: Literal["error"] = "error"
