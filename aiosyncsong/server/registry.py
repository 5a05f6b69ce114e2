"""Authoritative in-memory store of all live sessions and the handlers that mutate them."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from contextlib import suppress
from dataclasses import dataclass, replace
from types import MappingProxyType

from aiosyncsong.models.core import (
    CLIENT_CONTROL_MESSAGES,
    FORWARDED_CONTROL_MESSAGES,
    ControlSeekMessage,
    ErrorMessage,
    ErrorPayload,
    ForwardedControlPayload,
    HostStateMessage,
    NowPlayingUpdatedMessage,
    NowPlayingUpdatedPayload,
    QueueAddMessage,
    QueueRemoveMessage,
    QueueReorderMessage,
    QueueUpdatedMessage,
    QueueUpdatedPayload,
    SessionCreatedMessage,
    SessionCreatedPayload,
    SessionCreateMessage,
    SessionJoinMessage,
    SessionLeaveMessage,
    SessionStateMessage,
    SetGuestControlMessage,
    SetPartyModeMessage,
)
from aiosyncsong.models.session import AddedBy, NowPlaying, QueueItem, Track
from aiosyncsong.models.types import ClientMessage, ControlType, ErrorCode
from aiosyncsong.util import generate_id, generate_session_code, normalize_session_code, now_ms

from .session import (
    HostUnavailableError,
    InvalidInputError,
    Member,
    MemberConnection,
    Session,
    SessionError,
    SessionNotFoundError,
)

logger = logging.getLogger(__name__)

MAX_DISPLAY_NAME_LENGTH = 32
MAX_ALBUM_LENGTH = 120
MAX_URL_LENGTH = 500
DEFAULT_HOST_NAME = "Host"
DEFAULT_GUEST_NAME = "Guest"
SESSION_ENDED_MESSAGE = "Host disconnected. Session ended."


class RegistryEvent:
    """Base event type used by SessionRegistry.add_event_listener()."""


@dataclass
class SessionCreatedEvent(RegistryEvent):
    """A new session was created."""

    session_id: str
    host_user_id: str


@dataclass
class SessionEndedEvent(RegistryEvent):
    """A session was deleted, either because its host left or it became empty."""

    session_id: str


@dataclass
class MemberJoinedEvent(RegistryEvent):
    """A connection joined a session."""

    session_id: str
    user_id: str


@dataclass
class MemberLeftEvent(RegistryEvent):
    """A member left a session or disconnected."""

    session_id: str
    user_id: str


def _display_name(name: str, default: str) -> str:
    name = name.strip()[:MAX_DISPLAY_NAME_LENGTH]
    return name or default


def _normalize_track(track: Track) -> Track:
    """Validate the minimal fields of a track and bound its free text fields."""
    title = track.title.strip()
    artist = track.artist.strip()
    if not title or not artist:
        raise InvalidInputError("Invalid track (missing title/artist)")
    source_id = track.source_id.strip()
    if track.source.is_streaming and not source_id:
        raise InvalidInputError("Invalid track (missing sourceId)")
    return Track(
        source=track.source,
        source_id=source_id,
        title=title,
        artist=artist,
        album=track.album.strip()[:MAX_ALBUM_LENGTH],
        duration_ms=max(0, track.duration_ms),
        artwork_url=track.artwork_url.strip()[:MAX_URL_LENGTH],
        url=track.url.strip()[:MAX_URL_LENGTH],
    )


class SessionRegistry:
    """
    Sole writer of all sessions.

    Every handler runs to completion synchronously, so one inbound message is the unit of
    atomicity and no handler ever observes a session mid-mutation. Outbound messages are
    only enqueued on the member connections, a failing member never blocks the others.
    """

    _sessions: dict[str, Session]
    """Live sessions keyed by session code."""
    _memberships: dict[str, str]
    """Member id -> code of the session that member currently belongs to."""
    _event_cbs: list[Callable[[SessionRegistry, RegistryEvent], None]]

    def __init__(
        self,
        *,
        code_factory: Callable[[], str] = generate_session_code,
        id_factory: Callable[[], str] = generate_id,
    ) -> None:
        """
        Initialize an empty registry.

        Args:
            code_factory: Generates session codes, retried on collision.
            id_factory: Generates queue entry ids.
        """
        self._sessions = {}
        self._memberships = {}
        self._event_cbs = []
        self._code_factory = code_factory
        self._id_factory = id_factory

    @property
    def sessions(self) -> Mapping[str, Session]:
        """Read-only view of the live sessions."""
        return MappingProxyType(self._sessions)

    def get_session(self, session_id: str) -> Session | None:
        """Get the session with the given code."""
        return self._sessions.get(normalize_session_code(session_id))

    def session_of(self, member_id: str) -> Session | None:
        """Get the session the member currently belongs to."""
        session_id = self._memberships.get(member_id)
        if session_id is None:
            return None
        return self._sessions.get(session_id)

    def add_event_listener(
        self, callback: Callable[[SessionRegistry, RegistryEvent], None]
    ) -> Callable[[], None]:
        """
        Register a callback to listen for session lifecycle changes.

        Returns a function to remove the listener.
        """
        self._event_cbs.append(callback)

        def _remove() -> None:
            with suppress(ValueError):
                self._event_cbs.remove(callback)

        return _remove

    def _signal_event(self, event: RegistryEvent) -> None:
        for cb in self._event_cbs:
            try:
                cb(self, event)
            except Exception:
                logger.exception("Error in event listener")

    # Transport entry points

    def handle_message(self, connection: MemberConnection, message: ClientMessage) -> None:
        """Handle one decoded message, reporting rejections to the sender only."""
        try:
            self._dispatch(connection, message)
        except SessionError as err:
            logger.debug(
                "Rejected %s from %s: %s", type(message).__name__, connection.member_id, err
            )
            self.send_error(connection, err.message, err.code)

    def handle_disconnect(self, connection: MemberConnection) -> None:
        """Remove a closed connection from its session."""
        self.leave_session(connection)

    def send_error(
        self, connection: MemberConnection, message: str, code: ErrorCode | None = None
    ) -> None:
        """Send an error envelope to a single connection."""
        connection.send_message(ErrorMessage(ErrorPayload(message=message, code=code)))

    def _dispatch(self, connection: MemberConnection, message: ClientMessage) -> None:
        match message:
            case SessionCreateMessage(payload):
                self.create_session(connection, payload.display_name)
            case SessionJoinMessage(payload):
                self.join_session(connection, payload.session_id, payload.display_name)
            case SessionLeaveMessage():
                self.leave_session(connection)
            case SetGuestControlMessage(payload):
                self.set_guest_control(
                    connection, payload.allow_guest_control, session_id=payload.session_id
                )
            case SetPartyModeMessage(payload):
                self.set_party_mode(connection, payload.party_mode, session_id=payload.session_id)
            case QueueAddMessage(payload):
                self.queue_add(connection, payload.track, session_id=payload.session_id)
            case QueueRemoveMessage(payload):
                self.queue_remove(connection, payload.queue_id, session_id=payload.session_id)
            case QueueReorderMessage(payload):
                self.queue_reorder(connection, payload.order, session_id=payload.session_id)
            case HostStateMessage(payload):
                self.host_state(connection, payload.now_playing, session_id=payload.session_id)
            case ControlSeekMessage(payload):
                self.forward_control(
                    connection, ControlType.SEEK, secs=payload.secs, session_id=payload.session_id
                )
            case _ if type(message) in CLIENT_CONTROL_MESSAGES:
                self.forward_control(
                    connection,
                    CLIENT_CONTROL_MESSAGES[type(message)],
                    session_id=message.payload.session_id,  # type: ignore[attr-defined]
                )
            case _:
                raise InvalidInputError(f"Unsupported message type: {type(message).__name__}")

    def _require_session(
        self, connection: MemberConnection, session_id: str | None = None
    ) -> tuple[Session, Member]:
        """Return the session and member of the connection, or raise SessionNotFoundError."""
        session = self.session_of(connection.member_id)
        if session is None or (
            session_id is not None and normalize_session_code(session_id) != session.session_id
        ):
            raise SessionNotFoundError("Not in a valid session")
        member = session.get_member(connection.member_id)
        assert member is not None
        return session, member

    # Session lifecycle

    def create_session(self, connection: MemberConnection, display_name: str = "") -> Session:
        """
        Create a session with the connection as its host.

        Replies session:created to the creator, then broadcasts the full state.
        """
        self.leave_session(connection)
        session_id = self._code_factory()
        while session_id in self._sessions:
            logger.debug("Session code %s already in use, generating a new one", session_id)
            session_id = self._code_factory()

        host = Member(
            user_id=connection.member_id,
            display_name=_display_name(display_name, DEFAULT_HOST_NAME),
            connection=connection,
        )
        session = Session(session_id, host)
        self._sessions[session_id] = session
        self._memberships[host.user_id] = session_id
        logger.info("Session %s created by %s (%s)", session_id, host.user_id, host.display_name)

        connection.send_message(SessionCreatedMessage(SessionCreatedPayload(session_id)))
        session.broadcast(SessionStateMessage(session.snapshot()))
        self._signal_event(SessionCreatedEvent(session_id, host.user_id))
        return session

    def join_session(
        self, connection: MemberConnection, session_id: str, display_name: str = ""
    ) -> Session:
        """Add the connection to an existing session and broadcast the full state."""
        code = normalize_session_code(session_id)
        session = self._sessions.get(code)
        if session is None:
            raise SessionNotFoundError("Session not found")

        if self._memberships.get(connection.member_id) != code:
            self.leave_session(connection)
        member = Member(
            user_id=connection.member_id,
            display_name=_display_name(display_name, DEFAULT_GUEST_NAME),
            connection=connection,
        )
        session.add_member(member)
        self._memberships[member.user_id] = code
        logger.info("Member %s (%s) joined session %s", member.user_id, member.display_name, code)

        session.broadcast(SessionStateMessage(session.snapshot()))
        self._signal_event(MemberJoinedEvent(code, member.user_id))
        return session

    def leave_session(self, connection: MemberConnection) -> None:
        """
        Remove the connection from its session, if any.

        A leaving host ends the session for everybody; there is no re-election.
        """
        session_id = self._memberships.pop(connection.member_id, None)
        if session_id is None:
            return
        session = self._sessions.get(session_id)
        if session is None:
            return

        session.remove_member(connection.member_id)
        logger.info("Member %s left session %s", connection.member_id, session_id)
        self._signal_event(MemberLeftEvent(session_id, connection.member_id))

        if session.is_host(connection.member_id):
            self._end_session(session)
        elif len(session) == 0:
            self._delete_session(session)
        else:
            session.broadcast(SessionStateMessage(session.snapshot()))

    def _end_session(self, session: Session) -> None:
        """Notify the remaining members that the session is over and delete it."""
        logger.info("Host of session %s left, ending session", session.session_id)
        session.broadcast(
            ErrorMessage(ErrorPayload(message=SESSION_ENDED_MESSAGE, code=ErrorCode.SESSION_ENDED))
        )
        for member in session.members:
            self._memberships.pop(member.user_id, None)
        self._delete_session(session)

    def _delete_session(self, session: Session) -> None:
        if self._sessions.pop(session.session_id, None) is not None:
            logger.debug("Session %s deleted", session.session_id)
            self._signal_event(SessionEndedEvent(session.session_id))

    # Permissions

    def set_guest_control(
        self,
        connection: MemberConnection,
        allow: bool,  # noqa: FBT001
        *,
        session_id: str | None = None,
    ) -> None:
        """Host only: allow or forbid guests to control playback and edit the queue."""
        session, member = self._require_session(connection, session_id)
        session.require_host(member.user_id, "Only host can change permissions")
        session.allow_guest_control = allow
        logger.debug("Session %s guest control set to %s", session.session_id, allow)
        session.broadcast(SessionStateMessage(session.snapshot()))

    def set_party_mode(
        self,
        connection: MemberConnection,
        party_mode: bool,  # noqa: FBT001
        *,
        session_id: str | None = None,
    ) -> None:
        """Host only: toggle party mode."""
        session, member = self._require_session(connection, session_id)
        session.require_host(member.user_id, "Only host can change party mode")
        session.party_mode = party_mode
        session.broadcast(SessionStateMessage(session.snapshot()))

    # Queue

    def queue_add(
        self, connection: MemberConnection, track: Track, *, session_id: str | None = None
    ) -> QueueItem:
        """Append a track to the queue; any member may add."""
        session, member = self._require_session(connection, session_id)
        item = QueueItem(
            queue_id=self._id_factory(),
            track=_normalize_track(track),
            added_by=AddedBy(user_id=member.user_id, display_name=member.display_name),
            added_at=now_ms(),
        )
        session.append(item)
        logger.debug(
            "Queued %s - %s as %s in session %s",
            item.track.artist,
            item.track.title,
            item.queue_id,
            session.session_id,
        )
        session.broadcast(QueueUpdatedMessage(QueueUpdatedPayload(session.queue)))
        return item

    def queue_remove(
        self, connection: MemberConnection, queue_id: str, *, session_id: str | None = None
    ) -> None:
        """Remove a queue entry, clearing the now-playing state if it was the current one."""
        session, member = self._require_session(connection, session_id)
        session.require_control(
            member.user_id, "Only host can remove (or host must enable guest controls)"
        )
        session.remove(queue_id)
        session.broadcast(QueueUpdatedMessage(QueueUpdatedPayload(session.queue)))
        session.broadcast(NowPlayingUpdatedMessage(NowPlayingUpdatedPayload(session.now_playing)))

    def queue_reorder(
        self, connection: MemberConnection, order: list[str], *, session_id: str | None = None
    ) -> None:
        """Reorder the queue; never drops entries."""
        session, member = self._require_session(connection, session_id)
        session.require_control(
            member.user_id, "Only host can reorder (or host must enable guest controls)"
        )
        if not order:
            raise InvalidInputError("Invalid reorder payload")
        session.reorder(order)
        session.broadcast(QueueUpdatedMessage(QueueUpdatedPayload(session.queue)))

    # Playback

    def host_state(
        self,
        connection: MemberConnection,
        now_playing: NowPlaying | None,
        *,
        session_id: str | None = None,
    ) -> None:
        """Replace the now-playing state and broadcast it, publisher included."""
        session, member = self._require_session(connection, session_id)
        session.require_control(
            member.user_id,
            "Only host can publish playback state (or host must enable guest controls)",
        )
        if now_playing is not None:
            now_playing = replace(now_playing, updated_at=now_ms())
        session.set_now_playing(now_playing)
        session.broadcast(NowPlayingUpdatedMessage(NowPlayingUpdatedPayload(now_playing)))

    def forward_control(
        self,
        connection: MemberConnection,
        control: ControlType,
        *,
        secs: float | None = None,
        session_id: str | None = None,
    ) -> None:
        """
        Forward a playback control request to the host connection.

        The registry never simulates playback; the host executes the request and publishes
        the resulting state through host:state.
        """
        session, member = self._require_session(connection, session_id)
        session.require_control(member.user_id, "Host has not enabled guest controls")
        host = session.host
        if host is None:
            raise HostUnavailableError("Host not connected")

        message_cls = FORWARDED_CONTROL_MESSAGES[control]
        payload = ForwardedControlPayload(
            from_user_id=member.user_id,
            from_name=member.display_name,
            session_id=session.session_id,
            secs=secs if control is ControlType.SEEK else None,
        )
        logger.debug(
            "Forwarding control:%s from %s to host %s",
            control.value,
            member.user_id,
            host.user_id,
        )
        host.connection.send_message(message_cls(payload))  # type: ignore[call-arg]
