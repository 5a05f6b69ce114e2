from __future__ import annotations

from aiosyncsong.client.end_detection import EndOfTrackDetector
from aiosyncsong.client.providers import PlaybackState

DURATION_MS = 200_000


def _playing(position_ms: int, duration_ms: int = DURATION_MS) -> PlaybackState:
    return PlaybackState(is_playing=True, position_ms=position_ms, duration_ms=duration_ms)


def _paused(position_ms: int, duration_ms: int = DURATION_MS) -> PlaybackState:
    return PlaybackState(is_playing=False, position_ms=position_ms, duration_ms=duration_ms)


def test_mid_track_pause_is_not_an_end() -> None:
    detector = EndOfTrackDetector()
    detector.reset("q1", DURATION_MS)
    for position_ms in range(0, 100_001, 500):
        assert not detector.update("q1", _playing(position_ms))
    for _ in range(10):
        assert not detector.update("q1", _paused(100_000))


def test_snap_to_zero_near_end_fires_once() -> None:
    detector = EndOfTrackDetector()
    detector.reset("q1", DURATION_MS)
    for position_ms in range(190_000, 198_001, 500):
        assert not detector.update("q1", _playing(position_ms))

    results = [detector.update("q1", _paused(0)) for _ in range(5)]
    assert results == [True, False, False, False, False]


def test_paused_at_the_very_end_fires() -> None:
    detector = EndOfTrackDetector()
    detector.reset("q1", DURATION_MS)
    assert not detector.update("q1", _playing(199_500))
    assert detector.update("q1", _paused(199_800))


def test_user_pause_seconds_before_the_end_is_not_an_end() -> None:
    detector = EndOfTrackDetector()
    detector.reset("q1", DURATION_MS)
    assert not detector.update("q1", _playing(198_000))
    for _ in range(5):
        assert not detector.update("q1", _paused(198_000))
    assert not detector.update("q1", _paused(199_000))

    # Resuming and then finishing is still detected
    assert not detector.update("q1", _playing(199_600))
    assert detector.update("q1", _paused(0))


def test_missing_samples_and_other_entries_are_ignored() -> None:
    detector = EndOfTrackDetector()
    detector.reset("q1", DURATION_MS)
    assert not detector.update("q1", _playing(199_000))
    assert not detector.update("q1", None)
    assert not detector.update("q2", _paused(0))
    assert detector.update("q1", _paused(0))


def test_falls_back_to_metadata_duration() -> None:
    detector = EndOfTrackDetector()
    detector.reset("q1", 10_000)
    assert not detector.update("q1", _playing(9_000, duration_ms=0))
    assert detector.update("q1", _paused(0, duration_ms=0))


def test_unknown_duration_never_fires() -> None:
    detector = EndOfTrackDetector()
    detector.reset("q1")
    assert not detector.update("q1", _playing(500_000, duration_ms=0))
    assert not detector.update("q1", _paused(0, duration_ms=0))


def test_seek_back_forgets_max_position() -> None:
    detector = EndOfTrackDetector()
    detector.reset("q1", DURATION_MS)
    assert not detector.update("q1", _playing(199_000))
    detector.seeked(1_000)
    assert detector.max_position_ms == 1_000
    assert not detector.update("q1", _paused(1_000))


def test_reset_rearms_detector() -> None:
    detector = EndOfTrackDetector()
    detector.reset("q1", DURATION_MS)
    detector.update("q1", _playing(199_000))
    assert detector.update("q1", _paused(0))
    detector.reset("q2", DURATION_MS)
    detector.update("q2", _playing(199_000))
    assert detector.update("q2", _paused(0))
