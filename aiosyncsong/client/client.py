"""SyncSong Client implementation to connect to a SyncSong Server."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import suppress

from aiohttp import ClientSession, ClientWebSocketResponse, WSMsgType

from aiosyncsong.models.core import (
    FORWARDED_CONTROL_MESSAGES,
    ControlNextMessage,
    ControlPayload,
    ControlPrevMessage,
    ControlSeekMessage,
    ControlSeekPayload,
    ControlToggleMessage,
    ErrorMessage,
    ErrorPayload,
    ForwardedControlPayload,
    HelloMessage,
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
    SessionStatePayload,
    SetGuestControlMessage,
    SetGuestControlPayload,
    SetPartyModeMessage,
    SetPartyModePayload,
)
from aiosyncsong.models.session import MemberInfo, NowPlaying, QueueItem, Track
from aiosyncsong.models.types import ClientMessage, ControlType, ErrorCode, ServerMessage

logger = logging.getLogger(__name__)

HELLO_TIMEOUT = 10.0
HEARTBEAT_INTERVAL = 30.0

# Callback invoked with every full session snapshot.
SessionStateCallback = Callable[[SessionStatePayload], None]

# Callback invoked with the complete queue after every change.
QueueCallback = Callable[[list[QueueItem]], None]

# Callback invoked with the new now-playing state, None when nothing is loaded.
NowPlayingCallback = Callable[[NowPlaying | None], None]

# Callback invoked on the host with a control request forwarded by the server.
ControlCallback = Callable[[ControlType, ForwardedControlPayload], None]

# Callback invoked when the server rejected an operation or ended the session.
ErrorCallback = Callable[[ErrorPayload], None]

# Callback invoked when the client disconnects from the server.
DisconnectCallback = Callable[[], None]

# Callback invoked after this client left its session.
SessionLeftCallback = Callable[[], None]

_CONTROL_TYPES: dict[type[ServerMessage], ControlType] = {
    message_cls: control for control, message_cls in FORWARDED_CONTROL_MESSAGES.items()
}


class SyncSongClient:
    """
    Async SyncSong client mirroring the state of the session it belongs to.

    The client must be created within an async context. All session state exposed by
    its properties is the last state received from the server; nothing is changed
    locally before the server confirms it.
    """

    _session: ClientSession | None
    _owns_session: bool
    """True when the aiohttp session was created here and must be closed here."""
    _loop: asyncio.AbstractEventLoop
    _ws: ClientWebSocketResponse | None = None
    """WebSocket connection to the server."""
    _connected: bool = False
    _hello_event: asyncio.Event | None = None
    """Event signaled when hello is received."""
    _receive_task: asyncio.Task[None] | None = None
    """Reads and dispatches server messages while connected."""
    _send_lock: asyncio.Lock

    _user_id: str | None = None
    """Member id assigned by the server in its hello."""
    _session_id: str | None = None
    _host_user_id: str | None = None
    _allow_guest_control: bool = False
    _party_mode: bool = False
    _members: list[MemberInfo]
    _queue: list[QueueItem]
    _now_playing: NowPlaying | None = None

    _session_state_callbacks: list[SessionStateCallback]
    _queue_callbacks: list[QueueCallback]
    _now_playing_callbacks: list[NowPlayingCallback]
    _control_callbacks: list[ControlCallback]
    _error_callbacks: list[ErrorCallback]
    _disconnect_callbacks: list[DisconnectCallback]
    _session_left_callbacks: list[SessionLeftCallback]

    def __init__(self, *, session: ClientSession | None = None) -> None:
        """
        Create a new SyncSong client instance.

        Args:
            session: Optional aiohttp ClientSession. If None, a session is created
                and managed by this client.
        """
        self._session = session
        self._owns_session = session is None
        self._loop = asyncio.get_running_loop()
        self._send_lock = asyncio.Lock()
        self._members = []
        self._queue = []

        self._session_state_callbacks = []
        self._queue_callbacks = []
        self._now_playing_callbacks = []
        self._control_callbacks = []
        self._error_callbacks = []
        self._disconnect_callbacks = []
        self._session_left_callbacks = []

    @property
    def connected(self) -> bool:
        """Return True if the client currently has an active connection."""
        return self._connected and self._ws is not None and not self._ws.closed

    @property
    def user_id(self) -> str | None:
        """Member id assigned by the server, None before the hello."""
        return self._user_id

    @property
    def session_id(self) -> str | None:
        """Code of the joined session, None when not in a session."""
        return self._session_id

    @property
    def host_user_id(self) -> str | None:
        """Member id of the session host."""
        return self._host_user_id

    @property
    def is_host(self) -> bool:
        """Whether this client hosts its session."""
        return self._user_id is not None and self._user_id == self._host_user_id

    @property
    def allow_guest_control(self) -> bool:
        """Whether guests may control playback and edit the queue."""
        return self._allow_guest_control

    @property
    def can_control(self) -> bool:
        """Whether this client may edit the queue and request controls."""
        return self.is_host or self._allow_guest_control

    @property
    def party_mode(self) -> bool:
        """Party mode flag of the session."""
        return self._party_mode

    @property
    def members(self) -> list[MemberInfo]:
        """Roster of the session in join order."""
        return list(self._members)

    @property
    def queue(self) -> list[QueueItem]:
        """The shared queue in playback order."""
        return list(self._queue)

    @property
    def now_playing(self) -> NowPlaying | None:
        """Last now-playing state published by the host."""
        return self._now_playing

    async def connect(self, url: str) -> None:
        """
        Open the WebSocket to ``url`` and wait for the server's hello.

        Raises:
            TimeoutError: No hello arrived within HELLO_TIMEOUT seconds.
        """
        if self.connected:
            logger.debug("Ignoring connect, a connection is open")
            return

        if self._session is None:
            self._session = ClientSession()
        logger.info("Connecting to %s", url)
        self._ws = await self._session.ws_connect(url, heartbeat=HEARTBEAT_INTERVAL)
        self._connected = True
        self._hello_event = asyncio.Event()
        self._receive_task = self._loop.create_task(self._receive_loop())

        try:
            async with asyncio.timeout(HELLO_TIMEOUT):
                await self._hello_event.wait()
        except TimeoutError as err:
            await self.disconnect()
            raise TimeoutError(f"No hello from {url}") from err
        logger.info("Connected to %s as %s", url, self._user_id)

    async def disconnect(self) -> None:
        """Close the WebSocket, forget the session and notify disconnect listeners."""
        was_open = self._connected or self._ws is not None
        self._connected = False

        receive_task, self._receive_task = self._receive_task, None
        if receive_task is not None and receive_task is not asyncio.current_task():
            receive_task.cancel()
            with suppress(asyncio.CancelledError):
                await receive_task
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

        self._hello_event = None
        self._user_id = None
        self._clear_session_state()
        if was_open:
            self._notify(self._disconnect_callbacks, "disconnect")

    # Requests

    async def create_session(self, display_name: str = "") -> None:
        """Create a session hosted by this client."""
        await self._send(SessionCreateMessage(SessionCreatePayload(display_name=display_name)))

    async def join_session(self, session_id: str, display_name: str = "") -> None:
        """Join an existing session by its code."""
        await self._send(
            SessionJoinMessage(SessionJoinPayload(session_id=session_id, display_name=display_name))
        )

    async def leave_session(self) -> None:
        """Leave the current session, keeping the connection open."""
        # Cleared first so nothing sent from a listener still claims the session
        self._clear_session_state()
        self._notify(self._session_left_callbacks, "session left")
        await self._send(SessionLeaveMessage())

    async def set_guest_control(self, allow: bool) -> None:  # noqa: FBT001
        """Host only: allow or forbid guest control."""
        await self._send(
            SetGuestControlMessage(
                SetGuestControlPayload(allow_guest_control=allow, session_id=self._session_id)
            )
        )

    async def set_party_mode(self, party_mode: bool) -> None:  # noqa: FBT001
        """Host only: toggle party mode."""
        await self._send(
            SetPartyModeMessage(
                SetPartyModePayload(party_mode=party_mode, session_id=self._session_id)
            )
        )

    async def add_track(self, track: Track) -> None:
        """Append a track to the shared queue."""
        await self._send(QueueAddMessage(QueueAddPayload(track=track, session_id=self._session_id)))

    async def remove_queue_item(self, queue_id: str) -> None:
        """Remove an entry from the shared queue."""
        await self._send(
            QueueRemoveMessage(QueueRemovePayload(queue_id=queue_id, session_id=self._session_id))
        )

    async def reorder_queue(self, order: list[str]) -> None:
        """Reorder the shared queue by queue ids."""
        await self._send(
            QueueReorderMessage(QueueReorderPayload(order=order, session_id=self._session_id))
        )

    async def publish_state(self, now_playing: NowPlaying | None) -> None:
        """Publish the authoritative now-playing state of the host."""
        await self._send(
            HostStateMessage(
                HostStatePayload(now_playing=now_playing, session_id=self._session_id)
            )
        )

    async def send_control(self, control: ControlType, *, secs: float | None = None) -> None:
        """Request a playback control from the host."""
        message: ClientMessage
        match control:
            case ControlType.NEXT:
                message = ControlNextMessage(ControlPayload(session_id=self._session_id))
            case ControlType.PREV:
                message = ControlPrevMessage(ControlPayload(session_id=self._session_id))
            case ControlType.TOGGLE:
                message = ControlToggleMessage(ControlPayload(session_id=self._session_id))
            case ControlType.SEEK:
                if secs is None:
                    raise ValueError("secs is required for seek")
                message = ControlSeekMessage(
                    ControlSeekPayload(secs=secs, session_id=self._session_id)
                )
        await self._send(message)

    # Listeners

    def add_session_state_listener(self, callback: SessionStateCallback) -> Callable[[], None]:
        """Add a listener for session:state snapshots.

        Returns a function that removes the listener.
        """
        return self._add_listener(self._session_state_callbacks, callback)

    def add_queue_listener(self, callback: QueueCallback) -> Callable[[], None]:
        """Add a listener for queue changes, including those carried by snapshots.

        Returns a function that removes the listener.
        """
        return self._add_listener(self._queue_callbacks, callback)

    def add_now_playing_listener(self, callback: NowPlayingCallback) -> Callable[[], None]:
        """Add a listener for now-playing changes, including those carried by snapshots.

        Returns a function that removes the listener.
        """
        return self._add_listener(self._now_playing_callbacks, callback)

    def add_control_listener(self, callback: ControlCallback) -> Callable[[], None]:
        """Add a listener for control requests forwarded to this client as host.

        Returns a function that removes the listener.
        """
        return self._add_listener(self._control_callbacks, callback)

    def add_error_listener(self, callback: ErrorCallback) -> Callable[[], None]:
        """Add a listener for error messages.

        Returns a function that removes the listener.
        """
        return self._add_listener(self._error_callbacks, callback)

    def add_disconnect_listener(self, callback: DisconnectCallback) -> Callable[[], None]:
        """Add a listener for disconnect events.

        Returns a function that removes the listener.
        """
        return self._add_listener(self._disconnect_callbacks, callback)

    def add_session_left_listener(self, callback: SessionLeftCallback) -> Callable[[], None]:
        """Add a listener called after leave_session cleared the local session state.

        Returns a function that removes the listener.
        """
        return self._add_listener(self._session_left_callbacks, callback)

    @staticmethod
    def _add_listener(
        callbacks: list[Callable[..., None]], callback: Callable[..., None]
    ) -> Callable[[], None]:
        callbacks.append(callback)
        return lambda: callbacks.remove(callback) if callback in callbacks else None

    # Internals

    async def _send(self, message: ClientMessage) -> None:
        if not self.connected or self._ws is None:
            raise RuntimeError("Client is not connected")
        async with self._send_lock:
            await self._ws.send_str(message.to_json())

    async def _receive_loop(self) -> None:
        ws = self._ws
        assert ws is not None
        try:
            async for msg in ws:
                match msg.type:
                    case WSMsgType.TEXT:
                        self._handle_json_message(msg.data)
                    case WSMsgType.BINARY:
                        logger.warning("Ignoring binary frame from server")
                    case WSMsgType.ERROR:
                        logger.error("WebSocket error: %s", ws.exception())
                        break
                    case WSMsgType.CLOSE | WSMsgType.CLOSING | WSMsgType.CLOSED:
                        break
        except Exception:
            logger.exception("Error reading from the server")
        if self._connected:
            logger.info("Server closed the connection")
            await self.disconnect()

    def _handle_json_message(self, data: str) -> None:
        try:
            message = ServerMessage.from_json(data)
        except Exception:
            logger.exception("Failed to parse server message: %s", data)
            return

        match message:
            case HelloMessage(payload=payload):
                self._user_id = payload.user_id
                if self._hello_event:
                    self._hello_event.set()
            case SessionCreatedMessage(payload=payload):
                logger.info("Created session %s", payload.session_id)
                self._session_id = payload.session_id
            case SessionStateMessage(payload=payload):
                self._handle_session_state(payload)
            case QueueUpdatedMessage(payload=payload):
                self._queue = list(payload.queue)
                self._notify(self._queue_callbacks, "queue", self.queue)
            case NowPlayingUpdatedMessage(payload=payload):
                self._now_playing = payload.now_playing
                self._notify(self._now_playing_callbacks, "now playing", payload.now_playing)
            case ErrorMessage(payload=payload):
                self._handle_error(payload)
            case _ if type(message) in _CONTROL_TYPES:
                payload = message.payload  # type: ignore[attr-defined]
                control = _CONTROL_TYPES[type(message)]
                logger.debug("Received control:%s from %s", control.value, payload.from_name)
                self._notify(self._control_callbacks, "control", control, payload)
            case _:
                logger.debug("Unhandled server message type: %s", type(message).__name__)

    def _handle_session_state(self, payload: SessionStatePayload) -> None:
        self._session_id = payload.session_id
        self._host_user_id = payload.host_user_id
        self._allow_guest_control = payload.allow_guest_control
        self._party_mode = payload.party_mode
        self._members = list(payload.members)
        self._queue = list(payload.queue)
        self._now_playing = payload.now_playing
        self._notify(self._session_state_callbacks, "session state", payload)
        self._notify(self._queue_callbacks, "queue", self.queue)
        self._notify(self._now_playing_callbacks, "now playing", payload.now_playing)

    def _handle_error(self, payload: ErrorPayload) -> None:
        logger.warning("Server error: %s", payload.message)
        if payload.code is ErrorCode.SESSION_ENDED:
            self._clear_session_state()
        self._notify(self._error_callbacks, "error", payload)

    def _clear_session_state(self) -> None:
        self._session_id = None
        self._host_user_id = None
        self._allow_guest_control = False
        self._party_mode = False
        self._members = []
        self._queue = []
        self._now_playing = None

    def _notify(self, callbacks: list[Callable[..., None]], name: str, *args: object) -> None:
        for callback in list(callbacks):
            try:
                callback(*args)
            except Exception:
                logger.exception("Error in %s callback %s", name, callback)
