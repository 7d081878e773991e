"""Change applier: materialize template events on disk.

The applier is the only writer of template files and of the generated
block in consul-template's configuration. It consumes one event at a time
and SIGHUPs the renderer after every applied change.
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from collections.abc import Sequence
from pathlib import Path, PurePath
from typing import Protocol

from anyio import to_thread

from .events import ChangeEvent, Created, EventStream, Removed, Updated
from .runtime import Complete, Continue, ResumableTask, StepResult, StopToken, TaskOutcome

__all__ = [
    "GENERATED_MARK",
    "ChangeApplier",
    "EventStreamClosed",
    "render_config",
    "write_durably",
]

logger = logging.getLogger(__name__)

GENERATED_MARK = "//GENERATED BY MULTI-CONSUL-TEMPLATE"
DEFAULT_FILE_MODE = 0o644

Templates = tuple[Path, ...]


class EventStreamClosed(RuntimeError):
    """The change stream ended while the applier was still running."""


class Reloader(Protocol):
    def reload(self) -> bool: ...


def write_durably(path: Path, contents: bytes) -> None:
    """Replace ``path`` with ``contents``, fsynced before it becomes visible.

    The permissions of an existing file are kept.
    """
    try:
        mode = path.stat().st_mode & 0o777
    except FileNotFoundError:
        mode = DEFAULT_FILE_MODE
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            os.fchmod(f.fileno(), mode)
            f.write(contents)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def _destination(template: PurePath) -> str:
    return os.path.splitext(str(template))[0]


def _stanza(template: PurePath) -> str:
    return f'template {{\nsource = "{template}"\ndestination = "{_destination(template)}"\n}}\n'


def render_config(previous: str, templates: Sequence[PurePath]) -> str:
    """Build the configuration text for ``templates``.

    Lines before the generated mark (all lines if there is none) are kept
    byte for byte (lines end at "\n" only); everything from the mark on is
    regenerated.
    """
    lines = previous.split("\n")
    if previous.endswith("\n"):
        lines.pop()
    kept: list[str] = []
    for line in lines:
        if line == GENERATED_MARK:
            break
        kept.append(line)
    head = "\n".join(kept) + "\n"
    return head + GENERATED_MARK + "\n" + "\n".join(_stanza(t) for t in templates)


def _regenerate_config(config_path: Path, templates: Sequence[PurePath]) -> None:
    try:
        # Bytes before the mark must survive untouched, whatever they are
        previous = config_path.read_bytes().decode("utf-8", errors="surrogateescape")
    except FileNotFoundError:
        logger.warning(f"{config_path} does not exist yet, starting from an empty config")
        previous = ""
    rendered = render_config(previous, templates)
    write_durably(config_path, rendered.encode("utf-8", errors="surrogateescape"))


def _remove_rendered(template: Path) -> None:
    rendered = Path(_destination(template))
    try:
        rendered.unlink()
    except OSError as e:
        # The renderer may not have produced it yet
        logger.debug(f"Could not remove rendered file {rendered}: {e}")


class ChangeApplier:
    """Apply change events, one at a time, until stopped.

    Example:
        applier = ChangeApplier(Path("/etc/ct.hcl"), supervisor.reload_target)
        outcome = await applier.run(changes)

    Attributes:
        config_path: consul-template configuration file
        reloader: Receives one ``reload()`` per applied event
    """

    def __init__(
        self,
        config_path: Path,
        reloader: Reloader,
        *,
        stop_token: StopToken | None = None,
    ) -> None:
        self.config_path = config_path
        self.reloader = reloader
        self.stop_token = stop_token or StopToken()

    def stop(self) -> None:
        self.stop_token.request_stop()

    async def run(self, changes: EventStream, templates: Templates = ()) -> TaskOutcome[Templates]:
        """Consume ``changes`` until a stop is requested.

        Raises:
            EventStreamClosed: If ``changes`` closes without a stop request
        """

        async def step(state: Templates) -> StepResult[Templates]:
            return await self._next(changes, state)

        task: ResumableTask[Templates] = ResumableTask(
            templates,
            step,
            stop_token=self.stop_token,
            name="change applier",
        )
        return await task.run()

    async def _next(self, changes: EventStream, templates: Templates) -> StepResult[Templates]:
        reader = asyncio.ensure_future(changes.get())
        stopper = asyncio.ensure_future(self.stop_token.wait())
        done: set[asyncio.Future[object]] = set()
        try:
            done, _ = await asyncio.wait({reader, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopper.cancel()
            if reader not in done:
                reader.cancel()

        if reader not in done:
            return Complete(templates)
        event = reader.result()
        if event is None:
            if self.stop_token.stop_requested:
                return Complete(templates)
            raise EventStreamClosed(f"Unexpected close of {changes.name}")
        # An event already taken off the stream is applied even if a stop
        # arrived at the same time.
        return Continue(await self.apply(templates, event))

    async def apply(self, templates: Templates, event: ChangeEvent) -> Templates:
        """Apply one event and return the new template list."""
        if isinstance(event, Created):
            path = Path(event.path)
            logger.info(f"Template created: {path}")
            await to_thread.run_sync(write_durably, path, event.content)
            templates = (path,) + tuple(t for t in templates if t != path)
            await self._regenerate(templates)
            self.reloader.reload()
            return templates

        if isinstance(event, Updated):
            path = Path(event.path)
            logger.info(f"Template updated: {path}")
            await to_thread.run_sync(write_durably, path, event.content)
            self.reloader.reload()
            return templates

        if isinstance(event, Removed):
            path = Path(event.path)
            logger.info(f"Template removed: {path}")
            await to_thread.run_sync(path.unlink)
            templates = tuple(t for t in templates if t != path)
            await self._regenerate(templates)
            self.reloader.reload()
            await to_thread.run_sync(_remove_rendered, path)
            return templates

        raise TypeError(f"Unknown change event: {event!r}")

    async def _regenerate(self, templates: Templates) -> None:
        logger.debug(f"Regenerating {self.config_path} with {len(templates)} template(s)")
        await to_thread.run_sync(_regenerate_config, self.config_path, templates)
