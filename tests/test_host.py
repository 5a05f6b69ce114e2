from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest
from conftest import FakeProvider, make_item

from aiosyncsong.client.host import HostController
from aiosyncsong.client.providers import PlaybackState, SameSourceResolver
from aiosyncsong.models.core import ForwardedControlPayload
from aiosyncsong.models.session import NowPlaying, QueueItem
from aiosyncsong.models.types import ControlType, TrackSource


class FakeClient:
    def __init__(self, queue: list[QueueItem]) -> None:
        self.queue = queue
        self.session_id: str | None = "ABC123"
        self.published: list[NowPlaying | None] = []

    async def publish_state(self, now_playing: NowPlaying | None) -> None:
        self.published.append(now_playing)


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


def _controller(client: FakeClient, provider: FakeProvider, **kwargs) -> HostController:
    return HostController(
        client,  # type: ignore[arg-type]
        provider,
        SameSourceResolver(),
        **kwargs,
    )


def _payload(secs: float | None = None) -> ForwardedControlPayload:
    return ForwardedControlPayload(
        from_user_id="guest-id", from_name="Bob", session_id="ABC123", secs=secs
    )


@pytest.mark.asyncio
async def test_play_queue_item_publishes_and_polls(provider: FakeProvider) -> None:
    queue = [make_item("q0"), make_item("q1")]
    client = FakeClient(queue)
    host = _controller(client, provider)

    await host.play_queue_item(queue[1])
    assert provider.called("play_track") == ["t-q1"]
    published = client.published[-1]
    assert published is not None
    assert published.queue_id == "q1"
    assert published.is_playing is True
    assert published.playhead_ms == 0
    assert published.track == queue[1].track
    assert host.poller is not None
    assert host.poller.context == ("q1", "spotify")
    assert host.in_cooldown()

    await host.close()
    assert host.poller is None


@pytest.mark.asyncio
async def test_next_keeps_paused_intent(provider: FakeProvider) -> None:
    queue = [make_item("q0"), make_item("q1")]
    client = FakeClient(queue)
    host = _controller(client, provider)

    await host.play_queue_item(queue[0], play=False)
    await host.next()
    assert provider.called("play_track") == ["t-q0", "t-q1"]
    published = client.published[-1]
    assert published is not None
    assert published.queue_id == "q1"
    assert published.is_playing is False
    assert provider.calls[-1] == ("pause", None)
    await host.close()


@pytest.mark.asyncio
async def test_next_at_end_of_queue(provider: FakeProvider) -> None:
    queue = [make_item("q0"), make_item("q1")]
    client = FakeClient(queue)
    host = _controller(client, provider)

    await host.play_queue_item(queue[1])
    count = len(client.published)
    await host.next()
    assert len(client.published) == count
    assert host.now_playing is not None
    assert host.now_playing.queue_id == "q1"

    host.loop_queue = True
    await host.next()
    assert host.now_playing is not None
    assert host.now_playing.queue_id == "q0"
    await host.close()


@pytest.mark.asyncio
async def test_previous_and_toggle_from_empty(provider: FakeProvider) -> None:
    queue = [make_item("q0"), make_item("q1")]
    client = FakeClient(queue)
    host = _controller(client, provider)

    await host.toggle()
    assert host.now_playing is not None
    assert host.now_playing.queue_id == "q0"
    assert host.now_playing.is_playing is True

    await host.previous()
    assert host.now_playing.queue_id == "q0"
    host.loop_queue = True
    await host.previous()
    assert host.now_playing.queue_id == "q1"
    await host.close()


@pytest.mark.asyncio
async def test_toggle_and_seek_publish_sampled_state(provider: FakeProvider) -> None:
    queue = [make_item("q0")]
    client = FakeClient(queue)
    host = _controller(client, provider)
    await host.play_queue_item(queue[0])

    provider.state = PlaybackState(is_playing=True, position_ms=42_000)
    await host.toggle()
    published = client.published[-1]
    assert published is not None
    assert published.is_playing is False
    assert published.playhead_ms == 42_000
    assert provider.calls[-1] == ("pause", None)

    await host.seek(90.5)
    published = client.published[-1]
    assert published is not None
    assert provider.called("seek") == [90.5]
    assert published.playhead_ms == 90_500
    assert published.is_playing is False
    await host.close()


@pytest.mark.asyncio
async def test_forwarded_controls_are_executed(provider: FakeProvider) -> None:
    queue = [make_item("q0"), make_item("q1")]
    client = FakeClient(queue)
    host = _controller(client, provider)
    await host.play_queue_item(queue[0])

    await host.handle_control(ControlType.SEEK, _payload(secs=12.0))
    assert provider.called("seek") == [12.0]
    await host.handle_control(ControlType.NEXT, _payload())
    assert host.now_playing is not None
    assert host.now_playing.queue_id == "q1"
    await host.handle_control(ControlType.PREV, _payload())
    assert host.now_playing.queue_id == "q0"
    await host.close()


@pytest.mark.asyncio
async def test_provider_error_in_control_is_reported(provider: FakeProvider) -> None:
    statuses: list[str] = []
    queue = [make_item("q0"), make_item("q1")]
    client = FakeClient(queue)
    host = _controller(client, provider, on_status=statuses.append)
    await host.play_queue_item(queue[0])

    provider.failing.add("play_track")
    await host.handle_control(ControlType.NEXT, _payload())
    assert statuses == ["spotify playback failed: play_track failed"]
    assert host.now_playing is not None
    assert host.now_playing.queue_id == "q0"
    assert host.poller is not None
    assert host.poller.running
    assert host.poller.context == ("q0", "spotify")
    await host.close()


@pytest.mark.asyncio
async def test_end_of_track_advances_once(provider: FakeProvider) -> None:
    queue = [make_item("q0", duration_ms=10_000), make_item("q1"), make_item("q2")]
    client = FakeClient(queue)
    host = _controller(client, provider, poll_interval=0.01, transition_cooldown=0.0)
    await host.play_queue_item(queue[0])

    provider.state = PlaybackState(is_playing=True, position_ms=9_500, duration_ms=10_000)
    await asyncio.sleep(0.05)
    provider.state = PlaybackState(is_playing=False, position_ms=0, duration_ms=10_000)

    await _wait_until(lambda: host.now_playing is not None and host.now_playing.queue_id == "q1")
    await asyncio.sleep(0.05)
    assert provider.called("play_track") == ["t-q0", "t-q1"]
    assert not host.advance_locked
    assert host.poller is not None
    assert host.poller.context == ("q1", "spotify")
    await host.close()


@pytest.mark.asyncio
async def test_mid_track_pause_does_not_advance(provider: FakeProvider) -> None:
    queue = [make_item("q0", duration_ms=10_000), make_item("q1")]
    client = FakeClient(queue)
    host = _controller(client, provider, poll_interval=0.01, transition_cooldown=0.0)
    await host.play_queue_item(queue[0])

    provider.state = PlaybackState(is_playing=True, position_ms=5_000, duration_ms=10_000)
    await asyncio.sleep(0.05)
    provider.state = PlaybackState(is_playing=False, position_ms=5_000, duration_ms=10_000)

    # The play state change is published, the queue does not move
    def _paused_published() -> bool:
        last = client.published[-1]
        return last is not None and not last.is_playing

    await _wait_until(_paused_published)
    await asyncio.sleep(0.05)
    assert provider.called("play_track") == ["t-q0"]
    published = client.published[-1]
    assert published is not None
    assert published.queue_id == "q0"
    assert published.playhead_ms == 5_000
    await host.close()


@pytest.mark.asyncio
async def test_failed_advance_unlocks_after_timeout(provider: FakeProvider) -> None:
    queue = [make_item("q0", duration_ms=10_000), make_item("q1")]
    client = FakeClient(queue)
    host = _controller(
        client,
        provider,
        poll_interval=0.01,
        transition_cooldown=0.0,
        advance_lock_timeout=0.1,
    )
    await host.play_queue_item(queue[0])
    provider.failing.add("play_track")

    provider.state = PlaybackState(is_playing=True, position_ms=9_900, duration_ms=10_000)
    await asyncio.sleep(0.05)
    provider.state = PlaybackState(is_playing=False, position_ms=0, duration_ms=10_000)

    await _wait_until(lambda: host.advance_locked)
    await _wait_until(lambda: not host.advance_locked)
    assert host.now_playing is not None
    assert host.now_playing.queue_id == "q0"
    await host.close()


@pytest.mark.asyncio
async def test_stale_poll_result_is_discarded(provider: FakeProvider) -> None:
    queue = [make_item("q0"), make_item("q1")]
    client = FakeClient(queue)
    host = _controller(client, provider, transition_cooldown=0.0, publish_interval=0.0)
    await host.play_queue_item(queue[1])
    await host.close()
    count = len(client.published)

    await host._poll(("q0", "spotify"))  # noqa: SLF001
    assert len(client.published) == count
    await host._poll(("q1", "spotify"))  # noqa: SLF001
    assert len(client.published) == count + 1


@pytest.mark.asyncio
async def test_unplayable_next_entry_keeps_current_one_watched(provider: FakeProvider) -> None:
    statuses: list[str] = []
    queue = [make_item("q0"), make_item("q1", source=TrackSource.APPLE, title="Elsewhere")]
    client = FakeClient(queue)
    host = _controller(client, provider, on_status=statuses.append)
    await host.play_queue_item(queue[0])
    published = len(client.published)

    await host.next()
    assert statuses == ["Elsewhere is not available on spotify"]
    assert provider.called("play_track") == ["t-q0"]
    assert len(client.published) == published
    assert host.now_playing is not None
    assert host.now_playing.queue_id == "q0"
    assert host.poller is not None
    assert host.poller.running
    assert host.poller.context == ("q0", "spotify")
    await host.close()


@pytest.mark.asyncio
async def test_pause_shortly_before_the_end_does_not_advance(provider: FakeProvider) -> None:
    queue = [make_item("q0"), make_item("q1")]
    client = FakeClient(queue)
    host = _controller(client, provider, poll_interval=0.01, transition_cooldown=0.0)
    await host.play_queue_item(queue[0])

    provider.state = PlaybackState(is_playing=True, position_ms=198_000, duration_ms=200_000)
    await asyncio.sleep(0.05)
    provider.state = PlaybackState(is_playing=False, position_ms=198_000, duration_ms=200_000)
    await asyncio.sleep(0.1)

    assert provider.called("play_track") == ["t-q0"]
    assert host.now_playing is not None
    assert host.now_playing.queue_id == "q0"
    assert host.now_playing.is_playing is False
    assert not host.advance_locked
    await host.close()


@pytest.mark.asyncio
async def test_nothing_is_published_outside_a_session(provider: FakeProvider) -> None:
    queue = [make_item("q0")]
    client = FakeClient(queue)
    host = _controller(client, provider, poll_interval=0.01, transition_cooldown=0.0)
    await host.play_queue_item(queue[0])
    count = len(client.published)

    client.session_id = None
    provider.state = PlaybackState(is_playing=False, position_ms=5_000, duration_ms=200_000)
    await asyncio.sleep(0.05)
    assert len(client.published) == count
    await host.close()
