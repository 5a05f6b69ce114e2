from __future__ import annotations

from dataclasses import replace
from typing import TypeVar

import pytest

from aiosyncsong.client.providers import PlaybackState, ProviderAdapter, ProviderError
from aiosyncsong.models.session import AddedBy, QueueItem, Track
from aiosyncsong.models.types import ServerMessage, TrackSource


T = TypeVar("T")


class FakeConnection:
    def __init__(self, member_id: str) -> None:
        self._member_id = member_id
        self.messages: list[ServerMessage] = []

    @property
    def member_id(self) -> str:
        return self._member_id

    def send_message(self, message: ServerMessage) -> None:
        self.messages.append(message)

    def of_type(self, cls: type[T]) -> list[T]:
        return [message for message in self.messages if isinstance(message, cls)]

    def clear(self) -> None:
        self.messages.clear()


class FakeProvider(ProviderAdapter):
    def __init__(self, name: str = "spotify") -> None:
        self._name = name
        self.calls: list[tuple[str, object]] = []
        self.state: PlaybackState | None = PlaybackState(is_playing=False, position_ms=0)
        self.failing: set[str] = set()

    @property
    def name(self) -> str:
        return self._name

    def _record(self, call: str, arg: object = None) -> None:
        self.calls.append((call, arg))
        if call in self.failing:
            raise ProviderError(f"{call} failed")

    def called(self, call: str) -> list[object]:
        return [arg for name, arg in self.calls if name == call]

    async def play(self) -> None:
        self._record("play")
        if self.state is not None:
            self.state = replace(self.state, is_playing=True)

    async def pause(self) -> None:
        self._record("pause")
        if self.state is not None:
            self.state = replace(self.state, is_playing=False)

    async def seek(self, seconds: float) -> None:
        self._record("seek", seconds)
        if self.state is not None:
            self.state = replace(self.state, position_ms=round(seconds * 1000))

    async def set_volume(self, level: float) -> None:
        self._record("set_volume", self.validate_volume(level))

    async def get_playback_state(self) -> PlaybackState | None:
        if "get_playback_state" in self.failing:
            raise ProviderError("get_playback_state failed")
        return self.state

    async def play_track(self, resolved_id: str) -> None:
        self._record("play_track", resolved_id)
        self.state = PlaybackState(is_playing=True, position_ms=0)


def make_track(source_id: str = "t1", **kwargs) -> Track:
    values = {
        "source": TrackSource.SPOTIFY,
        "source_id": source_id,
        "title": f"Title {source_id}",
        "artist": "Artist",
        "duration_ms": 200_000,
    }
    values.update(kwargs)
    return Track(**values)


def make_item(queue_id: str, source_id: str | None = None, **kwargs) -> QueueItem:
    return QueueItem(
        queue_id=queue_id,
        track=make_track(source_id or f"t-{queue_id}", **kwargs),
        added_by=AddedBy(user_id="host", display_name="Host"),
        added_at=0,
    )


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()
