"""
Interfaces of the local playback engines driven by a listening session.

A provider adapter wraps one playback engine (a streaming SDK, a local library) behind a
small async surface. The session core never talks to a provider directly, it only uses
these adapters and a track resolver that maps shared track metadata to an id the active
provider can play.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol

from aiosyncsong.models.session import Track

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """A provider adapter call failed; local to the client, never sent to the server."""


@dataclass(slots=True, frozen=True)
class PlaybackState:
    """Playback state sampled from a provider adapter."""

    is_playing: bool
    position_ms: int
    """Position reported by the provider, never extrapolated."""
    duration_ms: int = 0
    """Track length reported by the provider, 0 when unknown."""


class ProviderAdapter(ABC):
    """
    A local playback engine.

    Implementations raise ProviderError for any failed call. get_playback_state may
    return None when the provider has no state to report, which callers treat as a
    transient polling failure.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Stable name of the provider, matching a track source value where possible."""

    @abstractmethod
    async def play(self) -> None:
        """Resume playback of the loaded track."""

    @abstractmethod
    async def pause(self) -> None:
        """Pause playback, keeping the track loaded."""

    @abstractmethod
    async def seek(self, seconds: float) -> None:
        """Move the playhead of the loaded track."""

    @abstractmethod
    async def set_volume(self, level: float) -> None:
        """Set the output volume, 0.0 to 1.0."""

    @abstractmethod
    async def get_playback_state(self) -> PlaybackState | None:
        """Sample the current playback state."""

    @abstractmethod
    async def play_track(self, resolved_id: str) -> None:
        """Load the track with the given provider-native id and start playing it."""

    @staticmethod
    def validate_volume(level: float) -> float:
        """Return the volume level, raising ValueError when it is out of range."""
        if not 0.0 <= level <= 1.0:
            raise ValueError(f"volume must be between 0 and 1, got {level}")
        return level


class TrackResolver(Protocol):
    """Maps shared track metadata to an id playable by a provider."""

    async def resolve(self, track: Track, provider: ProviderAdapter) -> str | None:
        """Return the provider-native id of the track, or None if it is not playable."""
        ...


class SameSourceResolver:
    """Plays tracks only on the provider they were queued from."""

    async def resolve(self, track: Track, provider: ProviderAdapter) -> str | None:
        """Return the track's own id when it comes from the given provider."""
        if track.source.value == provider.name and track.source_id:
            return track.source_id
        return None


# Async lookup of a track on a provider, usually a catalog search by title and artist.
TrackLookup = Callable[[Track, ProviderAdapter], Awaitable[str | None]]


class CachingTrackResolver:
    """
    Resolves tracks through a lookup, caching the results.

    Tracks queued from the active provider are played by their own id without a lookup.
    A failed lookup is not cached, so it is retried the next time the track is loaded.
    """

    def __init__(self, lookup: TrackLookup) -> None:
        """Create a resolver around the given lookup coroutine function."""
        self._lookup = lookup
        self._same_source = SameSourceResolver()
        self._cache: dict[tuple[str, str, str], str | None] = {}

    async def resolve(self, track: Track, provider: ProviderAdapter) -> str | None:
        """Return the provider-native id of the track, or None if it is not playable."""
        if resolved := await self._same_source.resolve(track, provider):
            return resolved

        key = (
            provider.name,
            track.source.value,
            track.source_id or f"{track.artist}/{track.title}",
        )
        if key in self._cache:
            return self._cache[key]

        try:
            resolved = await self._lookup(track, provider)
        except ProviderError as err:
            logger.warning(
                "Lookup of %s - %s on %s failed: %s", track.artist, track.title, provider.name, err
            )
            return None
        self._cache[key] = resolved
        if resolved is None:
            logger.info("%s - %s not found on %s", track.artist, track.title, provider.name)
        return resolved

    def clear(self) -> None:
        """Forget all cached results."""
        self._cache.clear()
