"""multi-consul-template application entry.

Wires the watchers, the change applier and the renderer supervisor
together, and owns process lifecycle and logging setup.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import sys
from collections.abc import Sequence

from .applier import ChangeApplier
from .cli import parse_args
from .config import Config, ConfigError
from .consul import ConsulClient
from .events import merge_streams
from .runtime import ProcessSupervisor
from .signal_manager import SignalManager
from .watcher import KVWatcher

__all__ = ["run_app", "main"]

logger = logging.getLogger(__name__)

EXIT_FATAL = 1
EXIT_USAGE = 2
EXIT_FORCED = 130  # 128 + SIGINT(2)


async def _wait_stopped(
    tasks: Sequence[asyncio.Task],
    timeout: float,
    signal_manager: SignalManager,
) -> None:
    """Give ``tasks`` ``timeout`` seconds to finish, then cancel the rest."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    pending = {task for task in tasks if not task.done()}
    force_watcher = asyncio.create_task(signal_manager.wait_for_force_exit())
    try:
        while pending and not signal_manager.is_force_exit:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.wait(
                pending | {force_watcher},
                timeout=remaining,
                return_when=asyncio.FIRST_COMPLETED,
            )
            pending = {task for task in pending if not task.done()}
    finally:
        force_watcher.cancel()

    for task in pending:
        logger.warning(f"Task {task.get_name()} did not stop in time, cancelling")
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


async def run_app(config: Config) -> int:
    """Run until a shutdown signal or a fatal error.

    Returns:
        Process exit status (0 after a graceful shutdown, 130 after a forced one)

    Raises:
        Exception: Whatever fatal error stopped one of the loops
    """
    logger.info(f"Starting multi-consul-template: {config}")

    client = ConsulClient(config.consul_endpoint)
    supervisor = ProcessSupervisor(
        config.consul_bin,
        config.config_path,
        grace_period=config.grace_period,
        spawn_retry_delay=config.spawn_retry_delay,
    )
    watchers = [
        KVWatcher(
            client,
            pair,
            wait=config.consul_wait,
            retry_delay=config.consul_retry_delay,
        )
        for pair in config.watched_pairs
    ]
    applier = ChangeApplier(config.config_path, supervisor.reload_target)

    def stop_all() -> None:
        """Ask every loop to stop; the applier first so closing streams is expected."""
        applier.stop()
        for watcher in watchers:
            watcher.stop()
        supervisor.stop()

    signal_manager = SignalManager(on_shutdown=stop_all)
    tasks: list[asyncio.Task] = []
    forwarders: list[asyncio.Task] = []
    shutdown_watcher: asyncio.Task | None = None
    failure: BaseException | None = None

    try:
        await signal_manager.start()

        tasks.append(asyncio.create_task(supervisor.run(), name="renderer-supervisor"))
        for watcher in watchers:
            tasks.append(asyncio.create_task(watcher.run(), name=f"watcher-{watcher.pair.prefix}"))
        changes, forwarders = merge_streams(watcher.events for watcher in watchers)
        tasks.append(asyncio.create_task(applier.run(changes), name="change-applier"))

        shutdown_watcher = asyncio.create_task(
            signal_manager.wait_for_shutdown(), name="shutdown-watcher"
        )
        done, _ = await asyncio.wait(
            [*tasks, shutdown_watcher],
            return_when=asyncio.FIRST_COMPLETED,
        )

        for task in done:
            if task is shutdown_watcher or task.cancelled():
                continue
            if task.exception() is not None:
                failure = task.exception()
                logger.error(f"Task {task.get_name()} failed: {failure!r}")
                break
            if not signal_manager.is_shutdown_requested:
                failure = RuntimeError(f"Task {task.get_name()} finished unexpectedly")
                logger.error(str(failure))
                break

        stop_all()
        await _wait_stopped(tasks, config.shutdown_timeout, signal_manager)

    finally:
        if shutdown_watcher and not shutdown_watcher.done():
            shutdown_watcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await shutdown_watcher
        for task in [*tasks, *forwarders]:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, *forwarders, return_exceptions=True)
        await client.close()
        await signal_manager.stop()
        logger.info("multi-consul-template: cleanup completed")

    if failure is not None:
        raise failure
    if signal_manager.is_force_exit:
        logger.warning(f"Force exit requested, terminating with exit code {EXIT_FORCED}")
        return EXIT_FORCED
    return 0


def setup_logging(config: Config) -> None:
    """Configure stderr (or debug file) logging for the package loggers."""
    log_handlers: list[logging.Handler] = []
    log_level = config.log_level

    if config.log_debug and config.log_file:
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(file_handler)
        log_level = logging.DEBUG
    else:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(stderr_handler)

    # Third-party loggers (aiohttp, asyncio) stay at WARNING
    logging.basicConfig(
        level=logging.WARNING,
        handlers=log_handlers,
        force=True,
    )
    logging.getLogger("multi_consul_template").setLevel(log_level)


def main(argv: Sequence[str] | None = None) -> None:
    """Main entry point."""
    try:
        config = parse_args(argv)
    except ConfigError as exc:
        logging.basicConfig(format="%(levelname)s: %(message)s")
        logging.error("%s", exc)
        raise SystemExit(EXIT_USAGE) from exc

    setup_logging(config)
    if config.log_debug:
        logger.info(f"Debug log: {config.log_file}")

    try:
        exit_code = asyncio.run(run_app(config))
    except Exception:
        logger.exception("Fatal error, exiting")
        raise SystemExit(EXIT_FATAL)

    if exit_code:
        sys.exit(exit_code)


if __name__ == "__main__":
    main()
