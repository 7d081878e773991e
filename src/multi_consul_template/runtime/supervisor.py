"""Supervisor for the consul-template child process.

This module provides:
- Spawn / readiness signal / wait / respawn loop for the renderer
- Stdout/stderr streaming into the log, line by line
- A read-only ``ReloadTarget`` view used to SIGHUP the current child
- Graceful termination on stop (SIGTERM -> timeout -> SIGKILL)

Key design points:
- start_new_session=True so terminal signals reach us, not the renderer
- Spawn failures back off for ``spawn_retry_delay``; clean respawns do not
- The handle is published only after the readiness SIGHUP was sent
"""

from __future__ import annotations

import asyncio
import enum
import logging
import os
import signal
from dataclasses import dataclass, field
from pathlib import Path

from .resumable import StopToken

__all__ = [
    "ProcessSupervisor",
    "ReloadTarget",
    "SupervisorState",
    "SupervisorStats",
]

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD = 1.0  # seconds before the readiness SIGHUP
DEFAULT_SPAWN_RETRY_DELAY = 5.0
DEFAULT_TERM_TIMEOUT = 2.0  # seconds to wait after SIGTERM
DEFAULT_KILL_TIMEOUT = 1.0  # seconds to wait after SIGKILL
DEFAULT_DRAIN_TIMEOUT = 1.0  # seconds to finish reading output after exit


class SupervisorState(enum.Enum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass
class SupervisorStats:
    """Counters kept by the supervisor for observability."""

    spawns: int = 0
    spawn_failures: int = 0
    exits: int = 0
    reloads: int = 0


class ReloadTarget:
    """Read-only view of the currently supervised process.

    Only ``ProcessSupervisor`` publishes or clears the process; everyone
    else can look at the pid or ask for a reload.
    """

    def __init__(self) -> None:
        self._process: asyncio.subprocess.Process | None = None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    def reload(self) -> bool:
        """Send SIGHUP to the current process, if there is one.

        Returns:
            True if a signal was delivered
        """
        process = self._process
        if process is None:
            logger.debug("No renderer running, skipping reload")
            return False
        return _send_hup(process)

    def _publish(self, process: asyncio.subprocess.Process | None) -> None:
        self._process = process


def _send_hup(process: asyncio.subprocess.Process) -> bool:
    try:
        process.send_signal(signal.SIGHUP)
    except ProcessLookupError:
        logger.debug(f"Renderer pid={process.pid} already exited, SIGHUP dropped")
        return False
    logger.debug(f"Sent SIGHUP to renderer pid={process.pid}")
    return True


def describe_returncode(returncode: int | None) -> str:
    """Human readable exit outcome of a child process."""
    if returncode is None:
        return "is still running"
    if returncode < 0:
        try:
            name = signal.Signals(-returncode).name
        except ValueError:
            name = f"signal {-returncode}"
        return f"killed by {name}"
    return f"exited with code {returncode}"


@dataclass
class ProcessSupervisor:
    """Keep one renderer process running forever.

    Example:
        supervisor = ProcessSupervisor("consul-template", Path("/etc/ct.hcl"))
        task = asyncio.create_task(supervisor.run())
        supervisor.reload_target.reload()

    Attributes:
        binary: Renderer executable (name on PATH or path)
        config_path: Passed to the renderer as ``-config <config_path>``
        grace_period: Delay between spawn and the readiness SIGHUP
        spawn_retry_delay: Backoff after a failed spawn
        term_timeout: Wait after SIGTERM on stop before SIGKILL
        kill_timeout: Wait after SIGKILL on stop
        drain_timeout: Time given to output readers after the child exited
    """

    binary: str
    config_path: Path
    grace_period: float = DEFAULT_GRACE_PERIOD
    spawn_retry_delay: float = DEFAULT_SPAWN_RETRY_DELAY
    term_timeout: float = DEFAULT_TERM_TIMEOUT
    kill_timeout: float = DEFAULT_KILL_TIMEOUT
    drain_timeout: float = DEFAULT_DRAIN_TIMEOUT
    stats: SupervisorStats = field(default_factory=SupervisorStats)
    reload_target: ReloadTarget = field(default_factory=ReloadTarget)
    state: SupervisorState = SupervisorState.STARTING
    _stop: StopToken = field(default_factory=StopToken, repr=False)
    _drainers: set[asyncio.Task[None]] = field(default_factory=set, repr=False)

    @property
    def argv(self) -> list[str]:
        return [self.binary, "-config", str(self.config_path)]

    def stop(self) -> None:
        """Stop respawning and terminate the running renderer."""
        logger.info("Stopping renderer supervisor")
        self._stop.request_stop()

    async def run(self) -> None:
        """Spawn, watch and respawn the renderer until ``stop()``."""
        try:
            while not self._stop.stop_requested:
                self.state = SupervisorState.STARTING
                process = await self._spawn()
                if process is None:
                    await self._stop.sleep(self.spawn_retry_delay)
                    continue
                await self._supervise(process)
        finally:
            if self._drainers:
                await asyncio.gather(*list(self._drainers), return_exceptions=True)
        self.state = SupervisorState.STOPPED
        logger.info("Renderer supervisor stopped")

    async def _spawn(self) -> asyncio.subprocess.Process | None:
        try:
            process = await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            self.stats.spawn_failures += 1
            logger.error(f"Can't start {self.binary}: {e}")
            return None
        self.stats.spawns += 1
        logger.info(f"Started {self.binary} pid={process.pid} config={self.config_path}")
        return process

    async def _supervise(self, process: asyncio.subprocess.Process) -> None:
        drain_tasks = [
            asyncio.create_task(self._drain(process.stdout, "stdout")),
            asyncio.create_task(self._drain(process.stderr, "stderr")),
        ]
        try:
            # consul-template needs a moment to install its HUP handler
            exited = asyncio.create_task(process.wait())
            stopped = asyncio.create_task(self._stop.wait())
            try:
                await asyncio.wait(
                    {exited, stopped},
                    timeout=self.grace_period,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if process.returncode is None and not self._stop.stop_requested:
                    if _send_hup(process):
                        self.stats.reloads += 1
                    self.reload_target._publish(process)
                    self.state = SupervisorState.RUNNING
                    await asyncio.wait({exited, stopped}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                stopped.cancel()
                if not exited.done():
                    exited.cancel()

            if process.returncode is not None:
                self.stats.exits += 1
                logger.error(f"{self.binary} {describe_returncode(process.returncode)}")
        finally:
            self.reload_target._publish(None)
            if process.returncode is None:
                await self._terminate_process(process)
            # Respawn does not wait for output still held open by grandchildren
            finisher = asyncio.create_task(self._finish_drain(drain_tasks))
            self._drainers.add(finisher)
            finisher.add_done_callback(self._drainers.discard)

    async def _drain(self, stream: asyncio.StreamReader | None, name: str) -> None:
        """Log ``stream`` line by line until EOF.

        An overlong line is only partly logged, with a warning, and reading
        goes on; the renderer blocks on write if nobody reads.
        """
        if stream is None:
            return
        while True:
            try:
                raw = await stream.readline()
            except ValueError as e:
                # readline() already discarded the buffered chunk
                logger.warning(f"{self.binary} {name}: overlong line truncated ({e})")
                continue
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            logger.info(f"{self.binary} {name}: {line}")

    async def _finish_drain(self, drain_tasks: list[asyncio.Task[None]]) -> None:
        # Grandchildren may keep the pipes open after the renderer exited
        _, pending = await asyncio.wait(drain_tasks, timeout=self.drain_timeout)
        for task in pending:
            task.cancel()
        for task in drain_tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except (OSError, ValueError) as e:
                logger.warning(f"Error reading {self.binary} output: {e}")

    async def _terminate_process(self, process: asyncio.subprocess.Process) -> None:
        """Terminate the renderer gracefully, then forcefully if needed.

        Termination strategy:
        1. Send SIGTERM to the renderer's process group
        2. Wait up to term_timeout for graceful exit
        3. If still running, send SIGKILL to the process group
        4. Wait up to kill_timeout for forced exit
        """
        pid = process.pid
        logger.debug(f"Terminating renderer pid={pid}")

        try:
            self._signal_group(process, signal.SIGTERM)
            try:
                await asyncio.wait_for(process.wait(), timeout=self.term_timeout)
                logger.info(f"{self.binary} {describe_returncode(process.returncode)}")
                return
            except asyncio.TimeoutError:
                pass

            logger.warning(f"Force killing renderer pid={pid}")
            self._signal_group(process, signal.SIGKILL)
            try:
                await asyncio.wait_for(process.wait(), timeout=self.kill_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Renderer did not exit after kill pid={pid}")

        except ProcessLookupError:
            logger.debug(f"Renderer already exited pid={pid}")

    @staticmethod
    def _signal_group(process: asyncio.subprocess.Process, signum: signal.Signals) -> None:
        try:
            # Process group id equals the pid because of start_new_session
            pgid = os.getpgid(process.pid)
            os.killpg(pgid, signum)
            logger.debug(f"Sent {signum.name} to process group pgid={pgid}")
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.debug(f"killpg failed, falling back to send_signal: {e}")
            process.send_signal(signum)
