"""Ties a connected client to local playback, as host or as guest."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine, Sequence
from typing import Any

from aiosyncsong.models.core import ErrorPayload, ForwardedControlPayload, SessionStatePayload
from aiosyncsong.models.session import NowPlaying
from aiosyncsong.models.types import ControlType, ErrorCode

from .client import SyncSongClient
from .host import HostController
from .providers import ProviderAdapter, TrackResolver
from .reconcile import PlaybackReconciler, StatusCallback

logger = logging.getLogger(__name__)


class ListeningSession:
    """
    Local side of a listening session.

    As host, the session executes forwarded controls and publishes playback through a
    HostController. As guest, every now-playing update is applied to the local provider
    through a PlaybackReconciler, and controls are sent to the host as requests. The role
    follows the session snapshots, so a client that creates a session after joining one
    switches from guest to host.
    """

    _host: HostController | None = None
    _session_id: str | None = None
    """Session the local playback belongs to."""
    _optimistic_playhead_ms: int | None = None
    """Seek target shown by a guest until the host publishes the real position."""
    _status: str = ""

    def __init__(
        self,
        client: SyncSongClient,
        provider: ProviderAdapter,
        resolver: TrackResolver,
        *,
        providers: Sequence[ProviderAdapter] = (),
        loop_queue: bool = False,
        on_status: StatusCallback | None = None,
    ) -> None:
        """
        Create a listening session around a connected client.

        Args:
            client: The client, connected or not yet connected.
            provider: The provider audio is produced with.
            resolver: Maps queued tracks to ids playable by the provider.
            providers: Other local providers, silenced whenever a track is loaded.
            loop_queue: Host only, wrap around at either end of the queue.
            on_status: Called with a short status message, e.g. after a provider failure.
        """
        self._client = client
        self._provider = provider
        self._resolver = resolver
        self._loop_queue = loop_queue
        self._on_status = on_status
        self._loop = asyncio.get_running_loop()
        self._reconciler = PlaybackReconciler(
            provider, resolver, providers=providers, on_status=self._set_status
        )
        self._tasks: set[asyncio.Task[None]] = set()
        self._unsubscribers: list[Callable[[], None]] = []

    @property
    def client(self) -> SyncSongClient:
        """The client connected to the server."""
        return self._client

    @property
    def is_host(self) -> bool:
        """Whether this side hosts the session."""
        return self._client.is_host

    @property
    def host_controller(self) -> HostController | None:
        """The host controller, only set while hosting."""
        return self._host

    @property
    def reconciler(self) -> PlaybackReconciler:
        """The reconciler used while this side is a guest."""
        return self._reconciler

    @property
    def status(self) -> str:
        """Last status message, empty when everything is fine."""
        return self._status

    @property
    def loop_queue(self) -> bool:
        """Whether the host wraps around at either end of the queue."""
        return self._loop_queue

    @loop_queue.setter
    def loop_queue(self, value: bool) -> None:
        self._loop_queue = value
        if self._host is not None:
            self._host.loop_queue = value

    @property
    def display_playhead_ms(self) -> int:
        """Position to render: a pending seek target, else the last published playhead."""
        if self._optimistic_playhead_ms is not None:
            return self._optimistic_playhead_ms
        now_playing = self._client.now_playing
        return now_playing.playhead_ms if now_playing is not None else 0

    def start(self) -> None:
        """Start following the client's session."""
        if self._unsubscribers:
            return
        self._unsubscribers = [
            self._client.add_session_state_listener(self._on_session_state),
            self._client.add_now_playing_listener(self._on_now_playing),
            self._client.add_control_listener(self._on_control),
            self._client.add_error_listener(self._on_error),
            self._client.add_disconnect_listener(self._on_disconnect),
            self._client.add_session_left_listener(self._on_session_left),
        ]

    async def close(self) -> None:
        """Stop following the session and stop every timer."""
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        await self._stop_playback()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    # Requests

    async def next(self) -> None:
        """Skip to the next queue entry."""
        if self._host is not None:
            await self._host.next()
        else:
            await self._client.send_control(ControlType.NEXT)

    async def previous(self) -> None:
        """Go back to the previous queue entry."""
        if self._host is not None:
            await self._host.previous()
        else:
            await self._client.send_control(ControlType.PREV)

    async def toggle(self) -> None:
        """Pause or resume playback."""
        if self._host is not None:
            await self._host.toggle()
        else:
            await self._client.send_control(ControlType.TOGGLE)

    async def seek(self, secs: float) -> None:
        """Seek the shared playback; a guest renders the target until the host confirms."""
        if self._host is not None:
            await self._host.seek(secs)
            return
        self._optimistic_playhead_ms = max(0, round(secs * 1000))
        await self._client.send_control(ControlType.SEEK, secs=secs)

    async def play_queue_item(self, queue_id: str) -> None:
        """Host only: start playing the given queue entry."""
        if self._host is None:
            raise RuntimeError("Only the host can choose the playing entry")
        item = next((item for item in self._client.queue if item.queue_id == queue_id), None)
        if item is None:
            raise ValueError(f"Unknown queue entry {queue_id}")
        await self._host.play_queue_item(item)

    async def set_provider(self, provider: ProviderAdapter) -> None:
        """Produce audio with another provider from now on."""
        self._provider = provider
        if self._host is not None:
            await self._host.set_provider(provider)
            return
        await self._reconciler.set_provider(provider)
        await self._reconciler.apply(self._client.now_playing)

    # Client callbacks

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = self._loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and (err := task.exception()) is not None:
            logger.error("Listening session task failed", exc_info=err)

    def _on_session_state(self, payload: SessionStatePayload) -> None:
        if payload.session_id != self._session_id:
            if self._session_id is not None:
                logger.info("Moved from session %s to %s", self._session_id, payload.session_id)
                self._detach_playback()
            self._session_id = payload.session_id

        if self._client.is_host and self._host is None:
            logger.info("Hosting session %s", payload.session_id)
            self._host = HostController(
                self._client,
                self._provider,
                self._resolver,
                loop_queue=self._loop_queue,
                on_status=self._set_status,
            )
            self._spawn(self._reconciler.reset())
        elif not self._client.is_host and self._host is not None:
            logger.info("Joined session %s as guest", payload.session_id)
            host, self._host = self._host, None
            self._spawn(host.close())

    def _on_now_playing(self, now_playing: NowPlaying | None) -> None:
        self._optimistic_playhead_ms = None
        if self._host is not None:
            # Our own publish echoed back; only a removal of the playing entry matters
            if now_playing is None and self._host.now_playing is not None:
                self._spawn(self._host.stop())
            return
        self._spawn(self._reconciler.apply(now_playing))

    def _on_control(self, control: ControlType, payload: ForwardedControlPayload) -> None:
        if self._host is None:
            logger.debug("Ignoring control:%s, not hosting", control.value)
            return
        self._spawn(self._host.handle_control(control, payload))

    def _on_error(self, payload: ErrorPayload) -> None:
        if payload.code is ErrorCode.SESSION_ENDED:
            logger.info("Session ended: %s", payload.message)
            self._session_id = None
            self._spawn(self._stop_playback())
        self._set_status(payload.message)

    def _on_disconnect(self) -> None:
        self._session_id = None
        self._spawn(self._stop_playback())

    def _on_session_left(self) -> None:
        logger.info("Left session %s", self._session_id)
        self._session_id = None
        self._detach_playback()

    def _detach_playback(self) -> None:
        # The host is dropped before returning, only its shutdown runs in the background
        self._optimistic_playhead_ms = None
        host, self._host = self._host, None
        if host is not None:
            self._spawn(host.close())
        self._spawn(self._reconciler.reset())

    async def _stop_playback(self) -> None:
        self._optimistic_playhead_ms = None
        host, self._host = self._host, None
        if host is not None:
            await host.close()
        await self._reconciler.reset()

    def _set_status(self, status: str) -> None:
        self._status = status
        if self._on_status is None:
            return
        try:
            self._on_status(status)
        except Exception:
            logger.exception("Error in status callback %s", self._on_status)
