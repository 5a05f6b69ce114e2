"""Keeps a local provider adapter in line with the broadcast now-playing state."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Sequence

from aiosyncsong.models.session import NowPlaying

from .providers import ProviderAdapter, ProviderError, TrackResolver

logger = logging.getLogger(__name__)

DRIFT_TOLERANCE_MS = 1000
"""Local and shared positions may differ this much before a corrective seek."""
SEEK_COOLDOWN = 2.0
"""Seconds after a seek during which drift is not corrected again."""

# Callback invoked with a short human readable status, e.g. after a provider failure.
StatusCallback = Callable[[str], None]


def load_key(queue_id: str | None, provider: ProviderAdapter) -> str:
    """Identify a queue entry loaded on a specific provider."""
    return f"{queue_id}:{provider.name}"


class PlaybackReconciler:
    """
    Applies now-playing updates to the active provider adapter of a guest.

    Updates are applied one at a time in arrival order; when several updates are waiting,
    only the newest one is applied. A track is only (re)loaded when its queue entry or
    the active provider changed, otherwise the adapter is resumed and, if it drifted
    beyond the tolerance, seeked. Provider failures never escape ``apply``, they are
    reported through the status callback.
    """

    _provider: ProviderAdapter
    """The provider audio is currently produced with."""
    _providers: list[ProviderAdapter]
    """Every known provider, all but the active one are kept silent."""
    _load_key: str | None = None
    """Queue entry and provider of the track loaded locally."""
    _cooldown_until: float = 0.0
    _generation: int = 0
    _status: str = ""

    def __init__(
        self,
        provider: ProviderAdapter,
        resolver: TrackResolver,
        *,
        providers: Sequence[ProviderAdapter] = (),
        on_status: StatusCallback | None = None,
        drift_tolerance_ms: int = DRIFT_TOLERANCE_MS,
        seek_cooldown: float = SEEK_COOLDOWN,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Create a reconciler.

        Args:
            provider: The initially active provider.
            resolver: Maps queued tracks to ids playable by the active provider.
            providers: Other providers that must be stopped when a track is loaded.
            on_status: Called with a status message whenever the status changes.
            drift_tolerance_ms: Largest drift that is left uncorrected.
            seek_cooldown: Seconds after a seek during which drift is not corrected.
            clock: Monotonic clock in seconds.
        """
        self._provider = provider
        self._providers = [provider, *(p for p in providers if p is not provider)]
        self._resolver = resolver
        self._on_status = on_status
        self._drift_tolerance_ms = drift_tolerance_ms
        self._seek_cooldown = seek_cooldown
        self._clock = clock
        self._lock = asyncio.Lock()

    @property
    def provider(self) -> ProviderAdapter:
        """The active provider."""
        return self._provider

    @property
    def load_key(self) -> str | None:
        """Queue entry and provider of the track loaded locally, None if idle."""
        return self._load_key

    @property
    def status(self) -> str:
        """Last reported status, empty when everything is fine."""
        return self._status

    def in_cooldown(self) -> bool:
        """Whether a recent seek suppresses drift correction."""
        return self._clock() < self._cooldown_until

    def start_cooldown(self) -> None:
        """Suppress drift correction for a while, e.g. after an optimistic local seek."""
        self._cooldown_until = self._clock() + self._seek_cooldown

    async def set_provider(self, provider: ProviderAdapter) -> None:
        """Switch the active provider; the next update loads the track on it."""
        if provider is self._provider:
            return
        async with self._lock:
            previous, self._provider = self._provider, provider
            if provider not in self._providers:
                self._providers.append(provider)
            self._load_key = None
            logger.info("Active provider changed from %s to %s", previous.name, provider.name)
            try:
                await previous.pause()
            except ProviderError as err:
                logger.debug("Could not pause %s: %s", previous.name, err)

    async def reset(self) -> None:
        """Silence the active provider and forget the loaded track."""
        # Supersedes every apply queued behind the lock, but not one made after this call
        self._generation += 1
        async with self._lock:
            await self._idle()

    async def apply(self, now_playing: NowPlaying | None) -> None:
        """Bring the active provider in line with a now-playing update."""
        self._generation += 1
        generation = self._generation
        async with self._lock:
            if generation != self._generation:
                logger.debug("Skipping superseded now-playing update")
                return
            try:
                await self._apply(now_playing)
            except ProviderError as err:
                logger.warning("%s playback failed: %s", self._provider.name, err)
                self._set_status(f"{self._provider.name} playback failed: {err}")

    async def _apply(self, now_playing: NowPlaying | None) -> None:
        provider = self._provider
        if now_playing is None or now_playing.track is None:
            await self._idle()
            self._set_status("")
            return

        if not now_playing.is_playing:
            if self._load_key is not None:
                await provider.pause()
            return

        key = load_key(now_playing.queue_id, provider)
        if key == self._load_key:
            state = await provider.get_playback_state()
            if state is None or not state.is_playing:
                await provider.play()
            if state is not None:
                await self._correct_drift(state.position_ms, now_playing.playhead_ms)
            return

        for other in self._providers:
            if other is not provider:
                try:
                    await other.pause()
                except ProviderError as err:
                    logger.debug("Could not pause %s: %s", other.name, err)

        track = now_playing.track
        resolved = await self._resolver.resolve(track, provider)
        if resolved is None:
            self._load_key = None
            self._set_status(f"{track.title} is not available on {provider.name}")
            return

        logger.debug("Loading %s on %s as %s", now_playing.queue_id, provider.name, resolved)
        await provider.play_track(resolved)
        self._load_key = key
        self._set_status("")
        if now_playing.playhead_ms > self._drift_tolerance_ms:
            await self._seek(now_playing.playhead_ms)

    async def _correct_drift(self, position_ms: int, playhead_ms: int) -> None:
        if self.in_cooldown():
            return
        drift_ms = abs(position_ms - playhead_ms)
        if drift_ms > self._drift_tolerance_ms:
            logger.debug("Drifted %d ms, seeking to %d ms", drift_ms, playhead_ms)
            await self._seek(playhead_ms)

    async def _seek(self, position_ms: int) -> None:
        await self._provider.seek(position_ms / 1000)
        self.start_cooldown()

    async def _idle(self) -> None:
        if self._load_key is None:
            return
        self._load_key = None
        try:
            await self._provider.pause()
        except ProviderError as err:
            logger.debug("Could not pause %s: %s", self._provider.name, err)

    def _set_status(self, status: str) -> None:
        if status == self._status:
            return
        self._status = status
        if self._on_status is not None:
            try:
                self._on_status(status)
            except Exception:
                logger.exception("Error in status callback %s", self._on_status)
