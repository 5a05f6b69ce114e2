"""A single listening session: members, shared queue and now-playing state."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol

from aiosyncsong.models.core import SessionStatePayload
from aiosyncsong.models.session import MemberInfo, NowPlaying, QueueItem
from aiosyncsong.models.types import ErrorCode, ServerMessage

logger = logging.getLogger(__name__)


class SessionError(Exception):
    """An operation was rejected; reported to the requesting connection only."""

    code: ErrorCode = ErrorCode.INVALID_INPUT

    def __init__(self, message: str) -> None:
        """Create the error with a human readable message."""
        super().__init__(message)
        self.message = message


class SessionNotFoundError(SessionError):
    """Unknown session code, or the connection is not part of the session."""

    code = ErrorCode.NOT_FOUND


class ForbiddenError(SessionError):
    """The requester lacks the authority for this operation."""

    code = ErrorCode.FORBIDDEN


class InvalidInputError(SessionError):
    """The request payload is malformed."""

    code = ErrorCode.INVALID_INPUT


class HostUnavailableError(SessionError):
    """The host connection is gone, so a control request cannot be forwarded."""

    code = ErrorCode.HOST_UNAVAILABLE


class MemberConnection(Protocol):
    """Delivery handle of a member; the session never owns the connection."""

    @property
    def member_id(self) -> str:
        """Random id assigned to the connection when it was established."""
        ...

    def send_message(self, message: ServerMessage) -> None:
        """Enqueue a message for delivery without waiting for it to be sent."""
        ...


@dataclass
class Member:
    """A connection that joined a session."""

    user_id: str
    display_name: str
    connection: MemberConnection
    """Non-owning reference, only used for delivery."""

    def info(self) -> MemberInfo:
        """Return the roster entry for this member."""
        return MemberInfo(user_id=self.user_id, display_name=self.display_name)


class Session:
    """
    Server side state of one session.

    Mutations happen only through the SessionRegistry, one inbound message at a time.
    """

    _members: dict[str, Member]
    """Members keyed by user id, in join order."""
    _queue: list[QueueItem]
    _now_playing: NowPlaying | None

    def __init__(self, session_id: str, host: Member) -> None:
        """Create a session with its host as the only member."""
        self.session_id = session_id
        self.host_user_id = host.user_id
        self.allow_guest_control = False
        self.party_mode = False
        self._members = {host.user_id: host}
        self._queue = []
        self._now_playing = None

    @property
    def members(self) -> list[Member]:
        """Members in join order."""
        return list(self._members.values())

    @property
    def queue(self) -> list[QueueItem]:
        """A copy of the queue in playback order."""
        return list(self._queue)

    @property
    def now_playing(self) -> NowPlaying | None:
        """The current now-playing state, None when nothing is loaded."""
        return self._now_playing

    @property
    def host(self) -> Member | None:
        """The host member, None once the host has left."""
        return self._members.get(self.host_user_id)

    def __len__(self) -> int:
        """Return the number of members."""
        return len(self._members)

    def get_member(self, user_id: str) -> Member | None:
        """Get the member with the given id."""
        return self._members.get(user_id)

    def add_member(self, member: Member) -> None:
        """Add or replace a member."""
        self._members[member.user_id] = member

    def remove_member(self, user_id: str) -> Member | None:
        """Remove a member, returning it if it was present."""
        return self._members.pop(user_id, None)

    def is_host(self, user_id: str) -> bool:
        """Check whether the member is the host."""
        return user_id == self.host_user_id

    def can_control(self, user_id: str) -> bool:
        """
        Check whether the member may edit the queue, publish state and request controls.

        Evaluated for every operation, since the host can toggle guest control at any time.
        """
        return self.is_host(user_id) or self.allow_guest_control

    def require_host(self, user_id: str, message: str) -> None:
        """Raise ForbiddenError unless the member is the host."""
        if not self.is_host(user_id):
            raise ForbiddenError(message)

    def require_control(self, user_id: str, message: str) -> None:
        """Raise ForbiddenError unless the member has control authority."""
        if not self.can_control(user_id):
            raise ForbiddenError(message)

    def append(self, item: QueueItem) -> None:
        """Append an item to the end of the queue."""
        self._queue.append(item)

    def remove(self, queue_id: str) -> bool:
        """
        Remove the item with the given queue id.

        Clears the now-playing state if it referred to the removed item.
        Returns whether an item was removed.
        """
        remaining = [item for item in self._queue if item.queue_id != queue_id]
        removed = len(remaining) != len(self._queue)
        self._queue = remaining
        if self._now_playing is not None and self._now_playing.queue_id == queue_id:
            self._now_playing = None
        return removed

    def reorder(self, order: Iterable[str]) -> None:
        """
        Rebuild the queue following the given queue ids.

        Unknown and duplicate ids are ignored. Items missing from the order are appended
        in their previous relative order, so no item is ever dropped.
        """
        by_id = {item.queue_id: item for item in self._queue}
        seen: set[str] = set()
        reordered: list[QueueItem] = []
        for queue_id in order:
            item = by_id.get(queue_id)
            if item is None or queue_id in seen:
                continue
            seen.add(queue_id)
            reordered.append(item)
        reordered.extend(item for item in self._queue if item.queue_id not in seen)
        self._queue = reordered

    def set_now_playing(self, now_playing: NowPlaying | None) -> None:
        """Replace the now-playing state as a whole."""
        self._now_playing = now_playing

    def snapshot(self) -> SessionStatePayload:
        """Build the full session snapshot sent in session:state."""
        return SessionStatePayload(
            session_id=self.session_id,
            host_user_id=self.host_user_id,
            allow_guest_control=self.allow_guest_control,
            party_mode=self.party_mode,
            members=[member.info() for member in self._members.values()],
            queue=list(self._queue),
            now_playing=self._now_playing,
        )

    def broadcast(self, message: ServerMessage) -> None:
        """Send a message to every member, best effort per member."""
        for member in list(self._members.values()):
            try:
                member.connection.send_message(message)
            except Exception:
                logger.exception(
                    "Failed to deliver %s to member %s", type(message).__name__, member.user_id
                )
