"""Resumable, cooperatively stoppable task loop.

A ``ResumableTask`` repeatedly awaits a step function with the current
state. The step answers either ``Continue(state)`` to keep going or
``Complete(state)`` to finish. A ``StopToken`` can be raised from outside;
the loop checks it between steps and exits with the last state it reached.

Key design points:
- A running step is never interrupted by a stop request
- Exceptions raised by a step propagate to whoever awaits ``run()``
- No domain knowledge: the watcher and the applier both run on it
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar, Union

__all__ = [
    "Complete",
    "Continue",
    "ResumableTask",
    "StepResult",
    "StopToken",
    "TaskOutcome",
]

logger = logging.getLogger(__name__)

S = TypeVar("S")


@dataclass(frozen=True)
class Continue(Generic[S]):
    """Keep looping with ``state``."""

    state: S


@dataclass(frozen=True)
class Complete(Generic[S]):
    """Stop looping; ``state`` is final."""

    state: S


StepResult = Union[Continue[S], Complete[S]]


@dataclass(frozen=True)
class TaskOutcome(Generic[S]):
    """Result of ``ResumableTask.run``.

    Attributes:
        state: Last state reached by the loop
        completed: True if a step returned ``Complete``, False if the loop
            exited because a stop was requested
    """

    state: S
    completed: bool


class StopToken:
    """Cooperative stop request shared between a loop and its owner."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def stop_requested(self) -> bool:
        return self._event.is_set()

    def request_stop(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        """Block until a stop has been requested."""
        await self._event.wait()

    async def sleep(self, delay: float) -> bool:
        """Sleep for ``delay`` seconds, returning early on a stop request.

        Returns:
            True if the sleep was cut short by a stop request
        """
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True


class ResumableTask(Generic[S]):
    """Run ``step`` until it completes or a stop is requested.

    Example:
        async def count(n: int) -> StepResult[int]:
            return Complete(n) if n >= 3 else Continue(n + 1)

        outcome = await ResumableTask(0, count).run()
        assert outcome == TaskOutcome(state=3, completed=True)
    """

    def __init__(
        self,
        initial: S,
        step: Callable[[S], Awaitable[StepResult[S]]],
        *,
        stop_token: StopToken | None = None,
        name: str = "resumable-task",
    ) -> None:
        self._state = initial
        self._step = step
        self.stop_token = stop_token or StopToken()
        self.name = name

    @property
    def state(self) -> S:
        """State after the most recently finished step."""
        return self._state

    def stop(self) -> None:
        """Ask the loop to exit after the step in progress."""
        logger.debug(f"Stop requested for {self.name}")
        self.stop_token.request_stop()

    async def run(self) -> TaskOutcome[S]:
        while not self.stop_token.stop_requested:
            result = await self._step(self._state)
            self._state = result.state
            if isinstance(result, Complete):
                logger.debug(f"{self.name} completed")
                return TaskOutcome(state=self._state, completed=True)
        logger.debug(f"{self.name} stopped")
        return TaskOutcome(state=self._state, completed=False)
