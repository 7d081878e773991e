"""信号管理模块。

将 OS 信号转换为 watcher、applier 和渲染进程 supervisor 的关闭操作：
- 第一次 SIGINT/SIGTERM：优雅关闭（停止各循环，终止渲染进程）
- 第二次 SIGINT/SIGTERM：强制退出（取消仍在运行的任务）

SIGHUP 不处理：它是发给 consul-template 的信号，不是我们接收的。
"""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Callable, Optional

__all__ = ["SignalManager"]

logger = logging.getLogger(__name__)

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class SignalManager:
    """信号管理器。

    Example:
        ```python
        signal_manager = SignalManager(on_shutdown=stop_everything)

        async def main():
            await signal_manager.start()
            try:
                await signal_manager.wait_for_shutdown()
            finally:
                await signal_manager.stop()

        asyncio.run(main())
        ```
    """

    def __init__(self, on_shutdown: Optional[Callable[[], None]] = None) -> None:
        """初始化信号管理器。

        Args:
            on_shutdown: 请求优雅关闭时调用（只调用一次）
        """
        self._on_shutdown = on_shutdown

        self._shutdown_requested: bool = False
        self._force_exit: bool = False
        self._shutdown_event = asyncio.Event()
        self._force_event = asyncio.Event()
        self._running: bool = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def is_shutdown_requested(self) -> bool:
        """是否已请求关闭。"""
        return self._shutdown_requested

    @property
    def is_force_exit(self) -> bool:
        """是否请求强制退出（第二次信号）。"""
        return self._force_exit

    async def start(self) -> None:
        """在当前事件循环上设置 SIGINT 和 SIGTERM 处理器。"""
        if self._running:
            logger.warning("SignalManager already running")
            return

        self._loop = asyncio.get_running_loop()
        self._running = True
        for signum in HANDLED_SIGNALS:
            self._loop.add_signal_handler(signum, self._handle_signal, signum)
        logger.debug("Signal handlers installed")

    async def stop(self) -> None:
        """移除 ``start()`` 设置的处理器。"""
        if not self._running:
            return

        self._running = False
        if self._loop:
            for signum in HANDLED_SIGNALS:
                try:
                    self._loop.remove_signal_handler(signum)
                except (ValueError, RuntimeError) as e:
                    logger.debug(f"Error removing signal handler for {signum.name}: {e}")

        logger.debug("Signal handlers removed")

    async def wait_for_shutdown(self) -> None:
        await self._shutdown_event.wait()

    async def wait_for_force_exit(self) -> None:
        await self._force_event.wait()

    def _handle_signal(self, signum: signal.Signals) -> None:
        if self._shutdown_requested:
            logger.warning(f"{signum.name} received during shutdown, forcing exit")
            self._force_shutdown()
            return
        logger.info(f"{signum.name} received, initiating graceful shutdown")
        self.request_graceful_shutdown()

    def request_graceful_shutdown(self) -> None:
        """请求优雅关闭（也可由代码直接调用）。"""
        if self._shutdown_requested:
            return
        self._shutdown_requested = True

        if self._on_shutdown:
            try:
                self._on_shutdown()
            except Exception as e:
                logger.warning(f"Error in shutdown callback: {e}")

        self._shutdown_event.set()

    def _force_shutdown(self) -> None:
        self._force_exit = True
        self._shutdown_requested = True
        self._shutdown_event.set()
        self._force_event.set()
