"""Host side playback: executes controls, publishes now-playing and advances the queue."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

from aiosyncsong.models.core import ForwardedControlPayload
from aiosyncsong.models.session import NowPlaying, QueueItem
from aiosyncsong.models.types import ControlType

from .client import SyncSongClient
from .end_detection import EndOfTrackDetector
from .providers import PlaybackState, ProviderAdapter, ProviderError, TrackResolver
from .queue_policy import next_index, previous_index
from .reconcile import StatusCallback
from .tasks import RepeatingTask

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.5
"""Seconds between two samples of the host's provider."""
PUBLISH_INTERVAL = 1.0
"""Seconds between two routine publishes while the play state does not change."""
TRANSITION_COOLDOWN = 1.5
"""Seconds after a load, toggle or seek during which the poller does not publish."""
ADVANCE_LOCK_TIMEOUT = 10.0
"""Auto-advance unlocks itself after this many seconds if the advance never finished."""


class HostController:
    """
    The single writer of the session's now-playing state.

    The host plays the queue on its own provider, samples it on a fixed interval and
    publishes what the provider reports. Playhead positions are never extrapolated from a
    clock. The poller is bound to the queue entry and provider it was started for, and is
    replaced on every transition so a stale sample can never be published for a newer
    track.
    """

    _now_playing: NowPlaying | None = None
    """What the host last published."""
    _poller: RepeatingTask | None = None
    _cooldown_until: float = 0.0
    _last_publish: float = 0.0
    _advance_locked: bool = False
    _advance_unlock: asyncio.TimerHandle | None = None

    def __init__(
        self,
        client: SyncSongClient,
        provider: ProviderAdapter,
        resolver: TrackResolver,
        *,
        loop_queue: bool = False,
        on_status: StatusCallback | None = None,
        poll_interval: float = POLL_INTERVAL,
        publish_interval: float = PUBLISH_INTERVAL,
        transition_cooldown: float = TRANSITION_COOLDOWN,
        advance_lock_timeout: float = ADVANCE_LOCK_TIMEOUT,
        detector: EndOfTrackDetector | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Create a host controller.

        Args:
            client: Connected client hosting the session.
            provider: The provider the host plays on.
            resolver: Maps queued tracks to ids playable by the provider.
            loop_queue: Wrap around at either end of the queue.
            on_status: Called with a short message when a provider call failed.
            poll_interval: Seconds between two provider samples.
            publish_interval: Seconds between two routine publishes.
            transition_cooldown: Seconds after a transition without routine publishes.
            advance_lock_timeout: Safety timeout of the auto-advance lock.
            detector: End-of-track detector, a default one is created if None.
            clock: Monotonic clock in seconds.
        """
        self._client = client
        self._provider = provider
        self._resolver = resolver
        self.loop_queue = loop_queue
        self._on_status = on_status
        self._poll_interval = poll_interval
        self._publish_interval = publish_interval
        self._transition_cooldown = transition_cooldown
        self._advance_lock_timeout = advance_lock_timeout
        self._detector = detector or EndOfTrackDetector()
        self._clock = clock
        self._loop = asyncio.get_running_loop()
        self._transition_lock = asyncio.Lock()
        self._background_tasks: set[asyncio.Task[None]] = set()

    @property
    def provider(self) -> ProviderAdapter:
        """The provider the host plays on."""
        return self._provider

    @property
    def now_playing(self) -> NowPlaying | None:
        """What the host last published."""
        return self._now_playing

    @property
    def advance_locked(self) -> bool:
        """Whether an automatic advance is in progress."""
        return self._advance_locked

    @property
    def poller(self) -> RepeatingTask | None:
        """The running poller, bound to the current queue entry and provider."""
        return self._poller

    def in_cooldown(self) -> bool:
        """Whether a recent transition suppresses routine publishes."""
        return self._clock() < self._cooldown_until

    # Transitions

    async def play_queue_item(self, item: QueueItem, *, play: bool = True) -> None:
        """Load a queue entry on the provider and publish it, paused unless ``play``."""
        async with self._transition_lock:
            await self._load(item, play=play)

    async def next(self) -> None:
        """Advance to the next queue entry, keeping the current play/pause intent."""
        async with self._transition_lock:
            await self._step(forward=True)

    async def previous(self) -> None:
        """Go back to the previous queue entry, keeping the current play/pause intent."""
        async with self._transition_lock:
            await self._step(forward=False)

    async def toggle(self) -> None:
        """Pause or resume, starting the queue when nothing is loaded."""
        async with self._transition_lock:
            now_playing = self._now_playing
            if now_playing is None or now_playing.queue_id is None:
                await self._step(forward=True, play=True)
                return
            state = await self._provider.get_playback_state()
            position_ms = state.position_ms if state is not None else now_playing.playhead_ms
            if now_playing.is_playing:
                await self._provider.pause()
            else:
                await self._provider.play()
            self._start_cooldown()
            await self._publish(
                NowPlaying(
                    queue_id=now_playing.queue_id,
                    track=now_playing.track,
                    is_playing=not now_playing.is_playing,
                    playhead_ms=position_ms,
                )
            )

    async def seek(self, secs: float) -> None:
        """Seek the loaded track and publish the new position."""
        async with self._transition_lock:
            now_playing = self._now_playing
            if now_playing is None or now_playing.queue_id is None:
                logger.debug("Ignoring seek, nothing is loaded")
                return
            position_ms = max(0, round(secs * 1000))
            await self._provider.seek(position_ms / 1000)
            self._detector.seeked(position_ms)
            self._start_cooldown()
            await self._publish(
                NowPlaying(
                    queue_id=now_playing.queue_id,
                    track=now_playing.track,
                    is_playing=now_playing.is_playing,
                    playhead_ms=position_ms,
                )
            )

    async def handle_control(self, control: ControlType, payload: ForwardedControlPayload) -> None:
        """Execute a control request forwarded by the server."""
        logger.info("Executing control:%s requested by %s", control.value, payload.from_name)
        try:
            match control:
                case ControlType.NEXT:
                    await self.next()
                case ControlType.PREV:
                    await self.previous()
                case ControlType.TOGGLE:
                    await self.toggle()
                case ControlType.SEEK:
                    await self.seek(payload.secs or 0.0)
        except ProviderError as err:
            logger.warning("control:%s failed: %s", control.value, err)
            self._report(f"{self._provider.name} playback failed: {err}")

    async def set_provider(self, provider: ProviderAdapter) -> None:
        """Switch the provider, reloading the current entry at its last position."""
        if provider is self._provider:
            return
        async with self._transition_lock:
            await self._stop_poller()
            previous, self._provider = self._provider, provider
            try:
                await previous.pause()
            except ProviderError as err:
                logger.debug("Could not pause %s: %s", previous.name, err)
            now_playing = self._now_playing
            item = self._find(now_playing.queue_id if now_playing else None)
            if now_playing is None or item is None:
                return
            await self._load(item, play=now_playing.is_playing, position_ms=now_playing.playhead_ms)

    async def stop(self) -> None:
        """Stop polling and playback, e.g. when the current entry was removed."""
        async with self._transition_lock:
            await self._stop_poller()
            self._now_playing = None
            try:
                await self._provider.pause()
            except ProviderError as err:
                logger.debug("Could not pause %s: %s", self._provider.name, err)

    async def close(self) -> None:
        """Cancel every timer and background task."""
        await self._stop_poller()
        self._unlock_advance()
        for task in list(self._background_tasks):
            task.cancel()
        self._background_tasks.clear()

    async def _step(self, *, forward: bool, play: bool | None = None) -> None:
        queue = self._client.queue
        current = self._now_playing.queue_id if self._now_playing else None
        policy = next_index if forward else previous_index
        index = policy(queue, current, loop=self.loop_queue)
        if index is None:
            logger.debug("No %s entry in the queue", "next" if forward else "previous")
            return
        if play is None:
            play = self._now_playing.is_playing if self._now_playing else True
        await self._load(queue[index], play=play)

    async def _load(self, item: QueueItem, *, play: bool, position_ms: int = 0) -> None:
        provider = self._provider
        resolved = await self._resolver.resolve(item.track, provider)
        if resolved is None:
            self._report(f"{item.track.title} is not available on {provider.name}")
            # The previous entry is still loaded and must stay watched
            await self._ensure_poller()
            return

        logger.info("Loading %s (%s) on %s", item.queue_id, item.track.title, provider.name)
        await self._stop_poller()
        try:
            await provider.play_track(resolved)
            if position_ms > 0:
                await provider.seek(position_ms / 1000)
            if not play:
                await provider.pause()
        except ProviderError:
            await self._ensure_poller()
            raise

        self._detector.reset(item.queue_id, item.track.duration_ms)
        self._start_cooldown()
        await self._publish(
            NowPlaying(
                queue_id=item.queue_id,
                track=item.track,
                is_playing=play,
                playhead_ms=position_ms,
            )
        )
        self._unlock_advance()
        self._start_poller(item.queue_id)

    # Polling

    async def _ensure_poller(self) -> None:
        """Keep a poller running for the published entry on the current provider."""
        queue_id, provider_name = self._current_context()
        if queue_id is None:
            await self._stop_poller()
            return
        if self._poller is not None and self._poller.context == (queue_id, provider_name):
            return
        await self._stop_poller()
        self._start_poller(queue_id)

    def _start_poller(self, queue_id: str) -> None:
        context = (queue_id, self._provider.name)
        self._poller = RepeatingTask(
            f"host poller {queue_id}",
            self._poll_interval,
            lambda: self._poll(context),
            context=context,
        )
        self._poller.start()

    async def _stop_poller(self) -> None:
        poller, self._poller = self._poller, None
        if poller is not None:
            await poller.stop()

    def _current_context(self) -> tuple[str | None, str]:
        queue_id = self._now_playing.queue_id if self._now_playing else None
        return (queue_id, self._provider.name)

    async def _poll(self, context: tuple[str, str]) -> None:
        try:
            state = await self._provider.get_playback_state()
        except ProviderError as err:
            logger.debug("Polling %s failed: %s", self._provider.name, err)
            return
        if context != self._current_context():
            # The entry or provider changed while sampling
            return
        if state is None or self.in_cooldown() or self._transition_lock.locked():
            return

        queue_id = context[0]
        if self._detector.update(queue_id, state) and not self._advance_locked:
            logger.info("Track %s ended, advancing", queue_id)
            self._lock_advance()
            task = self._loop.create_task(self._auto_advance())
            self._background_tasks.add(task)
            task.add_done_callback(self._background_tasks.discard)
            return

        await self._maybe_publish(state)

    async def _maybe_publish(self, state: PlaybackState) -> None:
        now_playing = self._now_playing
        if now_playing is None:
            return
        changed = state.is_playing != now_playing.is_playing
        if not changed and self._clock() - self._last_publish < self._publish_interval:
            return
        await self._publish(
            NowPlaying(
                queue_id=now_playing.queue_id,
                track=now_playing.track,
                is_playing=state.is_playing,
                playhead_ms=max(0, state.position_ms),
            )
        )

    async def _auto_advance(self) -> None:
        try:
            async with self._transition_lock:
                queue = self._client.queue
                current = self._now_playing.queue_id if self._now_playing else None
                index = next_index(queue, current, loop=self.loop_queue)
                if index is None:
                    logger.debug("End of queue reached")
                    self._unlock_advance()
                    return
                await self._load(queue[index], play=True)
        except ProviderError as err:
            # Stays locked until the safety timeout
            logger.warning("Auto-advance failed: %s", err)
            self._report(f"{self._provider.name} playback failed: {err}")

    # Helpers

    def _lock_advance(self) -> None:
        self._advance_locked = True
        self._advance_unlock = self._loop.call_later(
            self._advance_lock_timeout, self._unlock_advance
        )

    def _unlock_advance(self) -> None:
        if self._advance_unlock is not None:
            self._advance_unlock.cancel()
            self._advance_unlock = None
        self._advance_locked = False

    def _start_cooldown(self) -> None:
        self._cooldown_until = self._clock() + self._transition_cooldown

    async def _publish(self, now_playing: NowPlaying) -> None:
        self._now_playing = now_playing
        self._last_publish = self._clock()
        if self._client.session_id is None:
            logger.debug("Not publishing, no longer in a session")
            return
        await self._client.publish_state(now_playing)

    def _find(self, queue_id: str | None) -> QueueItem | None:
        return next((item for item in self._client.queue if item.queue_id == queue_id), None)

    def _report(self, status: str) -> None:
        if self._on_status is None:
            return
        try:
            self._on_status(status)
        except Exception:
            logger.exception("Error in status callback %s", self._on_status)
