"""Public interface for the SyncSong client package."""

from aiosyncsong.discovery import DiscoveredServer, discover_servers

from .client import (
    ControlCallback,
    DisconnectCallback,
    ErrorCallback,
    NowPlayingCallback,
    QueueCallback,
    SessionLeftCallback,
    SessionStateCallback,
    SyncSongClient,
)
from .end_detection import EndOfTrackDetector
from .host import HostController
from .providers import (
    CachingTrackResolver,
    PlaybackState,
    ProviderAdapter,
    ProviderError,
    SameSourceResolver,
    TrackResolver,
)
from .queue_policy import next_index, previous_index
from .reconcile import PlaybackReconciler
from .session import ListeningSession
from .tasks import RepeatingTask

__all__ = [
    "CachingTrackResolver",
    "ControlCallback",
    "DiscoveredServer",
    "DisconnectCallback",
    "EndOfTrackDetector",
    "ErrorCallback",
    "HostController",
    "ListeningSession",
    "NowPlayingCallback",
    "PlaybackReconciler",
    "PlaybackState",
    "ProviderAdapter",
    "ProviderError",
    "QueueCallback",
    "SessionLeftCallback",
    "RepeatingTask",
    "SameSourceResolver",
    "SessionStateCallback",
    "SyncSongClient",
    "TrackResolver",
    "discover_servers",
    "next_index",
    "previous_index",
]
