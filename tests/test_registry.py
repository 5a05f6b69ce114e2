from __future__ import annotations

from collections.abc import Iterator

import pytest
from conftest import FakeConnection, make_track

from aiosyncsong.models.core import (
    ControlNextMessage,
    ControlSeekMessage,
    ControlSeekPayload,
    ErrorMessage,
    ForwardedNextMessage,
    ForwardedSeekMessage,
    HostStateMessage,
    HostStatePayload,
    NowPlayingUpdatedMessage,
    QueueAddMessage,
    QueueAddPayload,
    QueueRemoveMessage,
    QueueRemovePayload,
    QueueReorderMessage,
    QueueReorderPayload,
    QueueUpdatedMessage,
    SessionCreatedMessage,
    SessionCreateMessage,
    SessionCreatePayload,
    SessionJoinMessage,
    SessionJoinPayload,
    SessionLeaveMessage,
    SessionStateMessage,
    SetGuestControlMessage,
    SetGuestControlPayload,
    SetPartyModeMessage,
    SetPartyModePayload,
)
from aiosyncsong.models.session import NowPlaying, Track
from aiosyncsong.models.types import ErrorCode, TrackSource
from aiosyncsong.server.registry import (
    MemberJoinedEvent,
    MemberLeftEvent,
    SessionCreatedEvent,
    SessionEndedEvent,
    SessionRegistry,
)


def _codes(*codes: str) -> Iterator[str]:
    return iter(codes)


def _errors(conn: FakeConnection) -> list[tuple[str, ErrorCode | None]]:
    return [(m.payload.message, m.payload.code) for m in conn.of_type(ErrorMessage)]


@pytest.fixture
def registry() -> SessionRegistry:
    codes = _codes("ABC123", "DEF456", "FED789")
    return SessionRegistry(code_factory=lambda: next(codes))


@pytest.fixture
def host() -> FakeConnection:
    return FakeConnection("host-id")


@pytest.fixture
def guest() -> FakeConnection:
    return FakeConnection("guest-id")


def _create(registry: SessionRegistry, conn: FakeConnection, name: str = "Alice") -> str:
    registry.handle_message(conn, SessionCreateMessage(SessionCreatePayload(display_name=name)))
    return conn.of_type(SessionCreatedMessage)[-1].payload.session_id


def _join(registry: SessionRegistry, conn: FakeConnection, code: str, name: str = "Bob") -> None:
    registry.handle_message(
        conn, SessionJoinMessage(SessionJoinPayload(session_id=code, display_name=name))
    )


def _add(registry: SessionRegistry, conn: FakeConnection, track: Track | None = None) -> str:
    registry.handle_message(conn, QueueAddMessage(QueueAddPayload(track=track or make_track())))
    return conn.of_type(QueueUpdatedMessage)[-1].payload.queue[-1].queue_id


def test_shared_queue_scenario(
    registry: SessionRegistry, host: FakeConnection, guest: FakeConnection
) -> None:
    code = _create(registry, host)
    assert code == "ABC123"
    state = host.of_type(SessionStateMessage)[-1].payload
    assert state.host_user_id == host.member_id
    assert state.members[0].display_name == "Alice"

    track = Track(
        source=TrackSource.SPOTIFY, source_id="t1", title="X", artist="Y", duration_ms=200000
    )
    queue_id = _add(registry, host, track)
    session = registry.get_session(code)
    assert session is not None
    assert len(session.queue) == 1
    assert session.now_playing is None
    assert session.queue[0].added_by.display_name == "Alice"

    _join(registry, guest, "abc123")
    guest_state = guest.of_type(SessionStateMessage)[-1].payload
    assert guest_state.session_id == "ABC123"
    assert guest_state.host_user_id == host.member_id
    assert guest_state.queue == session.queue
    assert [m.user_id for m in guest_state.members] == [host.member_id, guest.member_id]

    registry.handle_message(
        host,
        HostStateMessage(
            HostStatePayload(now_playing=NowPlaying(queue_id=queue_id, is_playing=True))
        ),
    )
    published = guest.of_type(NowPlayingUpdatedMessage)[-1].payload.now_playing
    assert published is not None
    assert published.queue_id == queue_id
    assert published.is_playing is True
    assert published.playhead_ms == 0
    assert published.updated_at is not None
    assert host.of_type(NowPlayingUpdatedMessage)[-1].payload.now_playing == published

    host.clear()
    guest.clear()
    registry.handle_message(host, QueueRemoveMessage(QueueRemovePayload(queue_id=queue_id)))
    for conn in (host, guest):
        assert conn.of_type(QueueUpdatedMessage)[-1].payload.queue == []
        assert conn.of_type(NowPlayingUpdatedMessage)[-1].payload.now_playing is None
    assert session.now_playing is None


def test_join_unknown_session(registry: SessionRegistry, guest: FakeConnection) -> None:
    _join(registry, guest, "NOPE00")
    assert _errors(guest) == [("Session not found", ErrorCode.NOT_FOUND)]
    assert registry.session_of(guest.member_id) is None


def test_display_names_default_and_truncate(
    registry: SessionRegistry, host: FakeConnection, guest: FakeConnection
) -> None:
    code = _create(registry, host, "   ")
    _join(registry, guest, code, "x" * 40)
    members = guest.of_type(SessionStateMessage)[-1].payload.members
    assert members[0].display_name == "Host"
    assert members[1].display_name == "x" * 32


def test_session_code_collision_is_retried(host: FakeConnection, guest: FakeConnection) -> None:
    codes = _codes("AAAAAA", "AAAAAA", "BBBBBB")
    registry = SessionRegistry(code_factory=lambda: next(codes))
    assert _create(registry, host) == "AAAAAA"
    assert _create(registry, guest) == "BBBBBB"
    assert set(registry.sessions) == {"AAAAAA", "BBBBBB"}


def test_creating_leaves_previous_session(
    registry: SessionRegistry, host: FakeConnection, guest: FakeConnection
) -> None:
    code = _create(registry, host)
    _join(registry, guest, code)
    host.clear()

    new_code = _create(registry, guest, "Bob")
    assert new_code != code
    assert registry.session_of(guest.member_id) is registry.get_session(new_code)
    members = host.of_type(SessionStateMessage)[-1].payload.members
    assert [m.user_id for m in members] == [host.member_id]


def test_invalid_tracks_are_rejected(
    registry: SessionRegistry, host: FakeConnection, guest: FakeConnection
) -> None:
    code = _create(registry, host)
    _join(registry, guest, code)
    guest.clear()

    registry.handle_message(host, QueueAddMessage(QueueAddPayload(track=make_track(title=" "))))
    registry.handle_message(host, QueueAddMessage(QueueAddPayload(track=make_track(""))))
    assert _errors(host) == [
        ("Invalid track (missing title/artist)", ErrorCode.INVALID_INPUT),
        ("Invalid track (missing sourceId)", ErrorCode.INVALID_INPUT),
    ]
    assert guest.messages == []
    session = registry.get_session(code)
    assert session is not None
    assert session.queue == []


def test_local_track_without_source_id_and_truncation(
    registry: SessionRegistry, host: FakeConnection
) -> None:
    code = _create(registry, host)
    track = make_track("", source=TrackSource.LOCAL, album="a" * 200, url="u" * 600)
    _add(registry, host, track)
    session = registry.get_session(code)
    assert session is not None
    queued = session.queue[0].track
    assert len(queued.album) == 120
    assert len(queued.url) == 500


def test_any_member_may_add(
    registry: SessionRegistry, host: FakeConnection, guest: FakeConnection
) -> None:
    code = _create(registry, host)
    _join(registry, guest, code)
    _add(registry, guest)
    assert host.of_type(QueueUpdatedMessage)[-1].payload.queue[0].added_by.user_id == "guest-id"


def test_reorder_never_drops_items(registry: SessionRegistry, host: FakeConnection) -> None:
    code = _create(registry, host)
    ids = [_add(registry, host, make_track(f"t{i}")) for i in range(4)]

    registry.handle_message(
        host, QueueReorderMessage(QueueReorderPayload(order=[ids[2], "unknown", ids[2], ids[0]]))
    )
    session = registry.get_session(code)
    assert session is not None
    assert [item.queue_id for item in session.queue] == [ids[2], ids[0], ids[1], ids[3]]

    registry.handle_message(host, QueueReorderMessage(QueueReorderPayload(order=[])))
    assert _errors(host) == [("Invalid reorder payload", ErrorCode.INVALID_INPUT)]
    assert len(session.queue) == 4


def test_guest_needs_control_to_edit(
    registry: SessionRegistry, host: FakeConnection, guest: FakeConnection
) -> None:
    code = _create(registry, host)
    _join(registry, guest, code)
    queue_id = _add(registry, host)

    registry.handle_message(guest, QueueRemoveMessage(QueueRemovePayload(queue_id=queue_id)))
    registry.handle_message(
        guest, HostStateMessage(HostStatePayload(now_playing=NowPlaying(queue_id=queue_id)))
    )
    assert [err for _, err in _errors(guest)] == [ErrorCode.FORBIDDEN, ErrorCode.FORBIDDEN]

    registry.handle_message(
        host, SetGuestControlMessage(SetGuestControlPayload(allow_guest_control=True))
    )
    assert guest.of_type(SessionStateMessage)[-1].payload.allow_guest_control is True
    registry.handle_message(guest, QueueRemoveMessage(QueueRemovePayload(queue_id=queue_id)))
    session = registry.get_session(code)
    assert session is not None
    assert session.queue == []


def test_only_host_changes_permissions(
    registry: SessionRegistry, host: FakeConnection, guest: FakeConnection
) -> None:
    code = _create(registry, host)
    _join(registry, guest, code)

    registry.handle_message(
        guest, SetGuestControlMessage(SetGuestControlPayload(allow_guest_control=True))
    )
    registry.handle_message(guest, SetPartyModeMessage(SetPartyModePayload(party_mode=True)))
    assert _errors(guest) == [
        ("Only host can change permissions", ErrorCode.FORBIDDEN),
        ("Only host can change party mode", ErrorCode.FORBIDDEN),
    ]

    registry.handle_message(host, SetPartyModeMessage(SetPartyModePayload(party_mode=True)))
    assert guest.of_type(SessionStateMessage)[-1].payload.party_mode is True


def test_session_id_mismatch_is_not_found(
    registry: SessionRegistry, host: FakeConnection
) -> None:
    _create(registry, host)
    registry.handle_message(
        host, QueueAddMessage(QueueAddPayload(track=make_track(), session_id="OTHER1"))
    )
    assert _errors(host) == [("Not in a valid session", ErrorCode.NOT_FOUND)]


def test_not_in_session(registry: SessionRegistry, guest: FakeConnection) -> None:
    registry.handle_message(guest, ControlNextMessage())
    assert _errors(guest) == [("Not in a valid session", ErrorCode.NOT_FOUND)]


def test_control_is_forwarded_only_to_host(
    registry: SessionRegistry, host: FakeConnection, guest: FakeConnection
) -> None:
    code = _create(registry, host)
    _join(registry, guest, code)
    session = registry.get_session(code)
    assert session is not None
    registry.handle_message(
        host, SetGuestControlMessage(SetGuestControlPayload(allow_guest_control=True))
    )
    host.clear()
    guest.clear()

    registry.handle_message(guest, ControlNextMessage())
    registry.handle_message(guest, ControlSeekMessage(ControlSeekPayload(secs=42.5)))

    forwarded = host.of_type(ForwardedNextMessage)
    assert len(forwarded) == 1
    assert forwarded[0].payload.from_user_id == guest.member_id
    assert forwarded[0].payload.from_name == "Bob"
    assert forwarded[0].payload.session_id == code
    assert forwarded[0].payload.secs is None
    assert host.of_type(ForwardedSeekMessage)[0].payload.secs == 42.5
    assert guest.messages == []
    # Nothing changes until the host publishes
    assert session.now_playing is None


def test_control_forbidden_without_guest_control(
    registry: SessionRegistry, host: FakeConnection, guest: FakeConnection
) -> None:
    code = _create(registry, host)
    _join(registry, guest, code)
    host.clear()

    registry.handle_message(guest, ControlNextMessage())
    assert _errors(guest) == [("Host has not enabled guest controls", ErrorCode.FORBIDDEN)]
    assert host.messages == []


def test_control_without_host_connection(
    registry: SessionRegistry, host: FakeConnection, guest: FakeConnection
) -> None:
    code = _create(registry, host)
    _join(registry, guest, code)
    session = registry.get_session(code)
    assert session is not None
    session.allow_guest_control = True
    session.remove_member(host.member_id)

    registry.handle_message(guest, ControlNextMessage())
    assert _errors(guest) == [("Host not connected", ErrorCode.HOST_UNAVAILABLE)]


def test_guest_leaving_broadcasts_state(
    registry: SessionRegistry, host: FakeConnection, guest: FakeConnection
) -> None:
    code = _create(registry, host)
    _join(registry, guest, code)
    host.clear()

    registry.handle_message(guest, SessionLeaveMessage())
    assert registry.session_of(guest.member_id) is None
    members = host.of_type(SessionStateMessage)[-1].payload.members
    assert [m.user_id for m in members] == [host.member_id]


def test_host_disconnect_ends_session(
    registry: SessionRegistry, host: FakeConnection, guest: FakeConnection
) -> None:
    events = []
    remove = registry.add_event_listener(lambda _registry, event: events.append(event))
    code = _create(registry, host)
    _join(registry, guest, code)

    registry.handle_disconnect(host)
    assert _errors(guest) == [("Host disconnected. Session ended.", ErrorCode.SESSION_ENDED)]
    assert registry.get_session(code) is None
    assert registry.session_of(guest.member_id) is None
    assert events == [
        SessionCreatedEvent(code, host.member_id),
        MemberJoinedEvent(code, guest.member_id),
        MemberLeftEvent(code, host.member_id),
        SessionEndedEvent(code),
    ]

    remove()
    _create(registry, guest)
    assert len(events) == 4


def test_listener_errors_do_not_break_registry(
    registry: SessionRegistry, host: FakeConnection
) -> None:
    def _broken(_registry, _event) -> None:
        raise RuntimeError("boom")

    registry.add_event_listener(_broken)
    code = _create(registry, host)
    assert registry.get_session(code) is not None


def test_failing_member_does_not_block_broadcast(
    registry: SessionRegistry, host: FakeConnection, guest: FakeConnection
) -> None:
    class _Broken(FakeConnection):
        def send_message(self, message) -> None:
            raise ConnectionResetError

    broken = _Broken("broken-id")
    code = _create(registry, host)
    registry.join_session(broken, code)
    _join(registry, guest, code)
    assert guest.of_type(SessionStateMessage)[-1].payload.members[-1].user_id == guest.member_id
    assert len(host.of_type(SessionStateMessage)[-1].payload.members) == 3
