"""Queue advancement policy of the host."""

from __future__ import annotations

from collections.abc import Sequence

from aiosyncsong.models.session import QueueItem


def _current_index(queue: Sequence[QueueItem], current_queue_id: str | None) -> int | None:
    if current_queue_id is None:
        return None
    for index, item in enumerate(queue):
        if item.queue_id == current_queue_id:
            return index
    return None


def next_index(
    queue: Sequence[QueueItem], current_queue_id: str | None, *, loop: bool = False
) -> int | None:
    """
    Return the index of the entry to play after the current one.

    Starts at the first entry when nothing is playing or the current entry was removed
    meanwhile. At the end of the queue this wraps around when looping, otherwise it
    returns None and playback stays as it is.
    """
    if not queue:
        return None
    index = _current_index(queue, current_queue_id)
    if index is None:
        return 0
    if index + 1 < len(queue):
        return index + 1
    return 0 if loop else None


def previous_index(
    queue: Sequence[QueueItem], current_queue_id: str | None, *, loop: bool = False
) -> int | None:
    """
    Return the index of the entry to play before the current one.

    Starts at the first entry when nothing is playing or the current entry was removed
    meanwhile. At the start of the queue this wraps to the last entry when looping,
    otherwise it stays on the first entry.
    """
    if not queue:
        return None
    index = _current_index(queue, current_queue_id)
    if index is None:
        return 0
    if index > 0:
        return index - 1
    return len(queue) - 1 if loop else 0
