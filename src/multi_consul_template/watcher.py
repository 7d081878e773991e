"""Per-prefix KV watcher.

Each ``KVWatcher`` long-polls one Consul prefix and turns the difference
between consecutive listings into change events for one local directory.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from types import MappingProxyType

from .config import WatchPair
from .consul import ConsulClient, ConsulError, KVEntry
from .events import ChangeEvent, Created, EventStream, Removed, Updated, relocate
from .runtime import Continue, ResumableTask, StepResult, StopToken, TaskOutcome

__all__ = ["KVWatcher", "WatchState", "diff_listing", "is_template"]

logger = logging.getLogger(__name__)

TEMPLATE_SUFFIX = ".ctmpl"
DEFAULT_RETRY_DELAY = 5.0


def is_template(key: str) -> bool:
    """True if the key's basename carries the template extension."""
    return PurePosixPath(key).suffix == TEMPLATE_SUFFIX


@dataclass(frozen=True)
class WatchState:
    """Cursor and template modify indexes seen by one watcher."""

    cursor: int = 0
    known: Mapping[str, int] = field(default_factory=lambda: MappingProxyType({}))


def diff_listing(
    known: Mapping[str, int],
    entries: Sequence[KVEntry],
) -> tuple[list[ChangeEvent], dict[str, int]]:
    """Compare a full listing with the previously known templates.

    Removals are computed against every listed key, templates or not;
    creations and updates only consider template keys.

    Args:
        known: Template key -> modify index from the previous listing
        entries: Full current listing of the prefix

    Returns:
        (events, new_known) tuple. Event paths are the remote keys;
        removals come first, sorted by key.
    """
    listed = {entry.key for entry in entries}
    events: list[ChangeEvent] = [
        Removed(path=PurePosixPath(key)) for key in sorted(set(known) - listed)
    ]

    new_known: dict[str, int] = {}
    for entry in entries:
        if not is_template(entry.key):
            continue
        previous = known.get(entry.key)
        if previous is None:
            events.append(Created(path=PurePosixPath(entry.key), content=entry.value))
        elif previous != entry.modify_index:
            events.append(Updated(path=PurePosixPath(entry.key), content=entry.value))
        new_known[entry.key] = entry.modify_index
    return events, new_known


class KVWatcher:
    """Watch one (prefix, directory) pair and publish its changes.

    Example:
        watcher = KVWatcher(client, WatchPair("templates", Path("/etc/ct")))
        task = asyncio.create_task(watcher.run())
        async for event in watcher.events:
            ...
    """

    def __init__(
        self,
        client: ConsulClient,
        pair: WatchPair,
        *,
        wait: str = "10s",
        retry_delay: float = DEFAULT_RETRY_DELAY,
        stop_token: StopToken | None = None,
    ) -> None:
        self.client = client
        self.pair = pair
        self.wait = wait
        self.retry_delay = retry_delay
        self.events = EventStream(name=f"watch:{pair.prefix}")
        self._task: ResumableTask[WatchState] = ResumableTask(
            WatchState(),
            self.step,
            stop_token=stop_token,
            name=f"watcher {pair}",
        )

    @property
    def state(self) -> WatchState:
        return self._task.state

    def stop(self) -> None:
        self._task.stop()

    async def run(self) -> TaskOutcome[WatchState]:
        """Poll until stopped; the event stream is closed on the way out."""
        logger.info(f"Watching consul prefix {self.pair.prefix!r} -> {self.pair.directory}")
        try:
            return await self._task.run()
        finally:
            self.events.close()

    async def step(self, state: WatchState) -> StepResult[WatchState]:
        try:
            listing = await self.client.list_prefix(
                self.pair.prefix,
                index=state.cursor,
                wait=self.wait,
            )
        except ConsulError as e:
            logger.error(f"Error while consul request for {self.pair.prefix!r}: {e}")
            await self._task.stop_token.sleep(self.retry_delay)
            return Continue(state)

        events, known = diff_listing(state.known, listing.entries)
        for event in events:
            placed = relocate(event, self.pair.directory)
            logger.debug(f"{type(event).__name__} {event.path} -> {placed.path}")
            self.events.publish(placed)

        cursor = listing.index if listing.index is not None else state.cursor
        return Continue(WatchState(cursor=cursor, known=MappingProxyType(known)))
