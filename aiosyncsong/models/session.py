"""
Session data carried by SyncSong messages.

This module contains the provider-agnostic track metadata, the entries of the shared
queue and the single now-playing fact that the host publishes for every member.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Annotated, Any

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin
from mashumaro.types import Alias

from .types import TrackSource

logger = logging.getLogger(__name__)


# Older clients sent the provider-native id under provider specific names.
# DEPRECATED: Remove once all clients send sourceId.
_TRACK_LEGACY_SOURCE_ID_FIELDS = ("spotifyTrackId", "itunesPersistentId", "itunesTrackId")
_TRACK_TEXT_FIELDS = ("sourceId", "title", "artist", "album", "artworkUrl", "url")
_TRACK_SOURCES = frozenset(source.value for source in TrackSource)


@dataclass(frozen=True)
class Track(DataClassORJSONMixin):
    """Provider-agnostic track metadata, immutable once queued."""

    source: TrackSource = TrackSource.UNKNOWN
    """Provider the metadata came from."""
    source_id: Annotated[str, Alias("sourceId")] = ""
    """Provider-native id, required for streaming sources."""
    title: str = ""
    artist: str = ""
    album: str = ""
    duration_ms: Annotated[int, Alias("durationMs")] = 0
    """Track length in milliseconds, 0 when unknown."""
    artwork_url: Annotated[str, Alias("artworkUrl")] = ""
    url: str = ""

    @classmethod
    def __pre_deserialize__(cls, d: dict[str, Any]) -> dict[str, Any]:
        """Accept legacy id fields, unknown sources and loosely typed values."""
        d = dict(d)
        if not d.get("sourceId"):
            for legacy_name in _TRACK_LEGACY_SOURCE_ID_FIELDS:
                if d.get(legacy_name):
                    logger.info(
                        "track used deprecated field name %s, please send sourceId instead",
                        legacy_name,
                    )
                    d["sourceId"] = d[legacy_name]
                    break
        for legacy_name in _TRACK_LEGACY_SOURCE_ID_FIELDS:
            d.pop(legacy_name, None)

        source = str(d.get("source") or "").strip().lower()
        d["source"] = source if source in _TRACK_SOURCES else TrackSource.UNKNOWN.value

        for name in _TRACK_TEXT_FIELDS:
            value = d.get(name)
            if value is None:
                d.pop(name, None)
            elif not isinstance(value, str):
                d[name] = str(value)

        try:
            d["durationMs"] = max(0, int(d.get("durationMs") or 0))
        except (TypeError, ValueError):
            d["durationMs"] = 0
        return d

    class Config(BaseConfig):
        """Config for parsing json messages."""

        serialize_by_alias = True


@dataclass(frozen=True)
class AddedBy(DataClassORJSONMixin):
    """Snapshot of the member that queued an item."""

    user_id: Annotated[str, Alias("userId")]
    display_name: Annotated[str, Alias("displayName")]

    class Config(BaseConfig):
        """Config for parsing json messages."""

        serialize_by_alias = True


@dataclass(frozen=True)
class QueueItem(DataClassORJSONMixin):
    """One entry of the shared queue."""

    queue_id: Annotated[str, Alias("queueId")]
    """Server generated, unique within the session."""
    track: Track
    added_by: Annotated[AddedBy, Alias("addedBy")]
    added_at: Annotated[int, Alias("addedAt")]
    """Server wall clock in milliseconds when the item was queued."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        serialize_by_alias = True


@dataclass(frozen=True)
class NowPlaying(DataClassORJSONMixin):
    """
    The shared playback fact of a session.

    Replaced as a whole on every publish. playhead_ms is always a position sampled from a
    provider adapter, never extrapolated from a wall clock.
    """

    queue_id: Annotated[str | None, Alias("queueId")] = None
    track: Track | None = None
    is_playing: Annotated[bool, Alias("isPlaying")] = False
    playhead_ms: Annotated[int, Alias("playheadMs")] = 0
    """Last position reported by the publishing adapter."""
    updated_at: Annotated[int | None, Alias("updatedAt")] = None
    """Server wall clock in milliseconds of the last publish, stamped by the server."""

    @classmethod
    def __pre_deserialize__(cls, d: dict[str, Any]) -> dict[str, Any]:
        """Round fractional playheads reported by browser based clients."""
        d = dict(d)
        playhead = d.get("playheadMs")
        if playhead is None:
            d.pop("playheadMs", None)
        elif isinstance(playhead, float):
            d["playheadMs"] = round(playhead)
        return d

    def __post_init__(self) -> None:
        """Validate field values."""
        if self.playhead_ms < 0:
            raise ValueError(f"playheadMs must not be negative, got {self.playhead_ms}")

    class Config(BaseConfig):
        """Config for parsing json messages."""

        serialize_by_alias = True


@dataclass(frozen=True)
class MemberInfo(DataClassORJSONMixin):
    """Roster entry of a session."""

    user_id: Annotated[str, Alias("userId")]
    display_name: Annotated[str, Alias("displayName")]

    class Config(BaseConfig):
        """Config for parsing json messages."""

        serialize_by_alias = True
