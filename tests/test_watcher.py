"""KV watcher tests.

Test coverage:
- diff_listing scenarios (create, update, remove, non-template keys)
- Event relocation into the pair directory
- Cursor handling and error backoff in a watcher step
- Stream closing when the watcher stops
"""

from __future__ import annotations

import asyncio
from pathlib import Path, PurePosixPath
from types import MappingProxyType

import pytest

from multi_consul_template.config import WatchPair
from multi_consul_template.consul import ConsulRequestError, ConsulResponseError, KVEntry, KVListing
from multi_consul_template.events import Created, Removed, Updated
from multi_consul_template.runtime import Continue
from multi_consul_template.watcher import KVWatcher, WatchState, diff_listing, is_template


def entry(key: str, value: str, index: int) -> KVEntry:
    return KVEntry(key=key, value=value.encode(), modify_index=index)


class FakeConsul:
    """Replays scripted listings (or exceptions) for list_prefix."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls: list[tuple[str, int, str]] = []

    async def list_prefix(self, prefix: str, *, index: int = 0, wait: str = "10s"):
        self.calls.append((prefix, index, wait))
        if not self.responses:
            await asyncio.sleep(3600)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


# =============================================================================
# diff_listing
# =============================================================================


class TestDiffListing:
    """Test the listing diff algorithm."""

    def test_new_template_is_created(self):
        events, known = diff_listing({}, [entry("a.ctmpl", "X", 1)])

        assert events == [Created(path=PurePosixPath("a.ctmpl"), content=b"X")]
        assert known == {"a.ctmpl": 1}

    def test_changed_modify_index_is_updated(self):
        events, known = diff_listing({"a.ctmpl": 1}, [entry("a.ctmpl", "Y", 2)])

        assert events == [Updated(path=PurePosixPath("a.ctmpl"), content=b"Y")]
        assert known == {"a.ctmpl": 2}

    def test_missing_key_is_removed(self):
        events, known = diff_listing(
            {"a.ctmpl": 1, "b.ctmpl": 2},
            [entry("a.ctmpl", "X", 1)],
        )

        assert events == [Removed(path=PurePosixPath("b.ctmpl"))]
        assert known == {"a.ctmpl": 1}

    def test_non_template_is_ignored(self):
        events, known = diff_listing({}, [entry("c.txt", "Z", 1)])

        assert events == []
        assert known == {}

    def test_same_index_emits_nothing(self):
        events, known = diff_listing({"a.ctmpl": 5}, [entry("a.ctmpl", "X", 5)])

        assert events == []
        assert known == {"a.ctmpl": 5}

    def test_removals_come_before_creations(self):
        events, _ = diff_listing(
            {"old.ctmpl": 1, "gone.ctmpl": 2},
            [entry("new.ctmpl", "N", 3)],
        )

        assert [type(e) for e in events] == [Removed, Removed, Created]
        assert {e.path for e in events[:2]} == {
            PurePosixPath("old.ctmpl"),
            PurePosixPath("gone.ctmpl"),
        }

    def test_empty_listing_removes_everything(self):
        events, known = diff_listing({"a.ctmpl": 1, "b.ctmpl": 2}, [])

        assert sorted(str(e.path) for e in events) == ["a.ctmpl", "b.ctmpl"]
        assert all(isinstance(e, Removed) for e in events)
        assert known == {}

    def test_known_is_rebuilt_from_listing(self):
        """Mixed listings: only template keys survive into the new state."""
        listing = [
            entry("svc/a.ctmpl", "A", 10),
            entry("svc/readme.md", "R", 11),
            entry("svc/", "", 9),
            entry("svc/b.ctmpl", "B", 12),
        ]
        events, known = diff_listing({"svc/a.ctmpl": 10}, listing)

        assert events == [Created(path=PurePosixPath("svc/b.ctmpl"), content=b"B")]
        assert known == {"svc/a.ctmpl": 10, "svc/b.ctmpl": 12}

    def test_listing_order_is_kept(self):
        listing = [entry("z.ctmpl", "", 1), entry("a.ctmpl", "", 2), entry("m.ctmpl", "", 3)]
        events, _ = diff_listing({}, listing)

        assert [str(e.path) for e in events] == ["z.ctmpl", "a.ctmpl", "m.ctmpl"]

    @pytest.mark.parametrize(
        "key,expected",
        [
            ("a.ctmpl", True),
            ("dir/nginx.conf.ctmpl", True),
            ("dir.ctmpl/file", False),
            ("a.ctmpl.bak", False),
            ("ctmpl", False),
            ("a.txt", False),
        ],
    )
    def test_is_template(self, key: str, expected: bool):
        assert is_template(key) is expected


# =============================================================================
# KVWatcher.step
# =============================================================================


class TestWatcherStep:
    """Test one watcher poll cycle."""

    @pytest.mark.asyncio
    async def test_events_are_relocated(self, tmp_path: Path):
        """Event paths become pair directory + key basename."""
        client = FakeConsul(
            KVListing(entries=(entry("services/web/nginx.ctmpl", "cfg", 4),), index=42)
        )
        watcher = KVWatcher(client, WatchPair("services", tmp_path))  # type: ignore[arg-type]

        result = await watcher.step(WatchState())

        assert isinstance(result, Continue)
        assert result.state.cursor == 42
        assert dict(result.state.known) == {"services/web/nginx.ctmpl": 4}
        event = await watcher.events.get()
        assert event == Created(path=tmp_path / "nginx.ctmpl", content=b"cfg")

    @pytest.mark.asyncio
    async def test_request_uses_cursor_and_wait(self, tmp_path: Path):
        client = FakeConsul(KVListing(entries=(), index=8))
        watcher = KVWatcher(client, WatchPair("p", tmp_path), wait="3s")  # type: ignore[arg-type]

        await watcher.step(WatchState(cursor=7, known=MappingProxyType({})))

        assert client.calls == [("p", 7, "3s")]

    @pytest.mark.asyncio
    async def test_missing_index_keeps_cursor(self, tmp_path: Path):
        client = FakeConsul(KVListing(entries=(entry("a.ctmpl", "X", 1),), index=None))
        watcher = KVWatcher(client, WatchPair("p", tmp_path))  # type: ignore[arg-type]

        result = await watcher.step(WatchState(cursor=15))

        assert result.state.cursor == 15
        assert dict(result.state.known) == {"a.ctmpl": 1}

    @pytest.mark.asyncio
    async def test_error_keeps_state_and_backs_off(self, tmp_path: Path):
        """A failed request leaves cursor and known untouched."""
        client = FakeConsul(ConsulRequestError("connection refused"))
        watcher = KVWatcher(client, WatchPair("p", tmp_path), retry_delay=0.01)  # type: ignore[arg-type]
        state = WatchState(cursor=3, known=MappingProxyType({"a.ctmpl": 1}))

        result = await watcher.step(state)

        assert result == Continue(state)
        assert watcher.events._queue.empty()

    @pytest.mark.asyncio
    async def test_http_error_is_retried(self, tmp_path: Path):
        """The loop survives error responses and picks up the next listing."""
        client = FakeConsul(
            ConsulResponseError(500, "leader election"),
            KVListing(entries=(entry("a.ctmpl", "X", 1),), index=2),
        )
        watcher = KVWatcher(client, WatchPair("p", tmp_path), retry_delay=0.01)  # type: ignore[arg-type]
        runner = asyncio.create_task(watcher.run())

        event = await asyncio.wait_for(watcher.events.get(), timeout=1.0)
        watcher.stop()
        runner.cancel()
        await asyncio.gather(runner, return_exceptions=True)

        assert event == Created(path=tmp_path / "a.ctmpl", content=b"X")
        assert [call[1] for call in client.calls[:2]] == [0, 0]


class TestWatcherLifecycle:
    """Test watcher run/stop."""

    @pytest.mark.asyncio
    async def test_stop_closes_stream(self, tmp_path: Path):
        client = FakeConsul(ConsulRequestError("down"))
        watcher = KVWatcher(client, WatchPair("p", tmp_path), retry_delay=30)  # type: ignore[arg-type]
        runner = asyncio.create_task(watcher.run())
        await asyncio.sleep(0.01)

        watcher.stop()
        outcome = await asyncio.wait_for(runner, timeout=1.0)

        assert outcome.completed is False
        assert watcher.events.closed
        assert await watcher.events.get() is None
