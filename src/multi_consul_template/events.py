"""Change events and the channels that carry them.

Each watcher publishes into its own ``EventStream``; ``merge_streams``
fans them into the single stream consumed by the change applier.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path, PurePath
from typing import Union

__all__ = [
    "Created",
    "Updated",
    "Removed",
    "ChangeEvent",
    "EventStream",
    "merge_streams",
    "relocate",
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Created:
    """A template key appeared."""

    path: PurePath
    content: bytes


@dataclass(frozen=True)
class Updated:
    """A known template key changed its modify index."""

    path: PurePath
    content: bytes


@dataclass(frozen=True)
class Removed:
    """A known template key disappeared."""

    path: PurePath


ChangeEvent = Union[Created, Updated, Removed]


def relocate(event: ChangeEvent, directory: Path) -> ChangeEvent:
    """Move an event onto ``directory``, keeping only the basename of its path."""
    path = directory / event.path.name
    if isinstance(event, Removed):
        return Removed(path=path)
    return type(event)(path=path, content=event.content)


_CLOSED = object()


class EventStream:
    """Unbounded FIFO of change events that can be closed.

    ``get()`` returns None once the stream is closed and drained.
    """

    def __init__(self, name: str = "events") -> None:
        self.name = name
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event: ChangeEvent) -> None:
        if self._closed:
            raise RuntimeError(f"Stream {self.name} is closed")
        self._queue.put_nowait(event)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSED)
            logger.debug(f"Stream {self.name} closed")

    async def get(self) -> ChangeEvent | None:
        item = await self._queue.get()
        if item is _CLOSED:
            # Keep the marker for any later reader
            self._queue.put_nowait(_CLOSED)
            return None
        return item  # type: ignore[return-value]

    def __aiter__(self) -> "EventStream":
        return self

    async def __anext__(self) -> ChangeEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


async def _forward(source: EventStream, target: EventStream) -> None:
    async for event in source:
        target.publish(event)


def merge_streams(
    sources: Iterable[EventStream],
    *,
    name: str = "changes",
) -> tuple[EventStream, list[asyncio.Task[None]]]:
    """Fan several streams into one.

    Events keep their per-source order; sources interleave freely. The
    merged stream closes once every source has closed.

    Returns:
        (merged stream, forwarder tasks) tuple
    """
    merged = EventStream(name)
    sources = list(sources)
    remaining = len(sources)

    def _on_done(_: asyncio.Task[None]) -> None:
        nonlocal remaining
        remaining -= 1
        if remaining == 0:
            merged.close()

    tasks: list[asyncio.Task[None]] = []
    for source in sources:
        task = asyncio.create_task(_forward(source, merged), name=f"forward-{source.name}")
        task.add_done_callback(_on_done)
        tasks.append(task)
    if not sources:
        merged.close()
    return merged, tasks
