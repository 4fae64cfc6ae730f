"""信号管理模块。

将宿主进程收到的 OS 信号转换为关闭操作：
- SIGINT / SIGTERM: 请求优雅关闭（宿主随后优雅终止已登记的后台子进程）
- 双击窗口内第二次 SIGINT: 强制关闭（立即 kill 所有已登记的后台子进程）

同步执行的子进程与宿主处于同一前台进程组，终端 Ctrl+C 会直接送达子进程，
这里不做额外处理。

支持的配置：
- EXS_SIGINT_DOUBLE_TAP_WINDOW: 双击退出窗口时间
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
import time
from typing import Callable, Optional

from .config import get_config
from .runtime.registry import ShutdownRegistry

__all__ = ["SignalManager"]

logger = logging.getLogger(__name__)


class SignalManager:
    """信号管理器。

    Example:
        ```python
        registry = ShutdownRegistry()
        signal_manager = SignalManager(registry)

        async def main():
            await signal_manager.start()
            try:
                await signal_manager.wait_for_shutdown()
            finally:
                await signal_manager.stop()

        asyncio.run(main())
        ```

    Attributes:
        registry: 关闭注册表
        double_tap_window: 双击退出窗口时间（秒）
    """

    def __init__(
        self,
        registry: ShutdownRegistry,
        double_tap_window: Optional[float] = None,
        on_shutdown: Optional[Callable[[], None]] = None,
    ) -> None:
        """初始化信号管理器。

        Args:
            registry: 关闭注册表
            double_tap_window: 双击退出窗口时间（默认从配置读取）
            on_shutdown: 关闭时的回调函数
        """
        self.registry = registry

        config = get_config()
        self.double_tap_window = (
            double_tap_window if double_tap_window is not None else config.sigint_double_tap_window
        )
        self._on_shutdown = on_shutdown

        # 内部状态
        self._last_sigint_time: float = 0.0
        self._shutdown_requested: bool = False
        self._force_exit: bool = False
        self._shutdown_event: Optional[asyncio.Event] = None
        self._original_sigint_handler = None
        self._running: bool = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def is_shutdown_requested(self) -> bool:
        """是否已请求关闭。"""
        return self._shutdown_requested

    @property
    def is_force_exit(self) -> bool:
        """是否请求强制退出（双击 SIGINT）。"""
        return self._force_exit

    async def start(self) -> None:
        """启动信号监听。

        必须在 asyncio 事件循环中调用。
        """
        if self._running:
            logger.warning("SignalManager already running")
            return

        self._loop = asyncio.get_running_loop()
        self._shutdown_event = asyncio.Event()
        self._running = True

        if sys.platform != "win32":
            self._loop.add_signal_handler(signal.SIGINT, self._handle_sigint)
            self._loop.add_signal_handler(signal.SIGTERM, self._handle_sigterm)
            logger.debug(
                f"Signal handlers installed (double_tap_window={self.double_tap_window}s)"
            )
        else:
            # Windows: 使用 signal.signal() 设置处理器
            self._original_sigint_handler = signal.signal(
                signal.SIGINT,
                lambda sig, frame: self._loop.call_soon_threadsafe(self._handle_sigint),
            )
            logger.debug("SIGINT handler installed on Windows")

    async def stop(self) -> None:
        """停止信号监听，恢复原始信号处理器。"""
        if not self._running:
            return

        self._running = False

        if sys.platform != "win32" and self._loop:
            try:
                self._loop.remove_signal_handler(signal.SIGINT)
                self._loop.remove_signal_handler(signal.SIGTERM)
            except Exception as e:
                logger.debug(f"Error removing signal handlers: {e}")
        elif sys.platform == "win32" and self._original_sigint_handler is not None:
            try:
                signal.signal(signal.SIGINT, self._original_sigint_handler)
            except Exception as e:
                logger.debug(f"Error restoring SIGINT handler: {e}")

        logger.debug("Signal handlers removed")

    async def wait_for_shutdown(self) -> None:
        """等待关闭信号。"""
        if self._shutdown_event:
            await self._shutdown_event.wait()

    def _handle_sigint(self) -> None:
        """处理 SIGINT 信号。

        - 第一次：请求优雅关闭
        - 在双击窗口内再次收到：强制关闭
        """
        current_time = time.time()
        time_since_last = current_time - self._last_sigint_time
        self._last_sigint_time = current_time

        if time_since_last < self.double_tap_window and self._shutdown_requested:
            logger.warning("Double SIGINT detected, forcing shutdown")
            self._force_shutdown()
            return

        logger.info(
            f"SIGINT received, requesting shutdown. "
            f"Press Ctrl+C again within {self.double_tap_window}s to kill background processes."
        )
        self._request_shutdown()

    def _handle_sigterm(self) -> None:
        """处理 SIGTERM 信号：始终进入优雅关闭流程。"""
        logger.info("SIGTERM received, initiating graceful shutdown")
        self._request_shutdown()

    def _request_shutdown(self) -> None:
        """请求关闭。"""
        self._shutdown_requested = True
        self._notify()

    def _force_shutdown(self) -> None:
        """强制关闭。

        立即 kill 所有已登记的后台子进程，设置 force_exit 标志。
        实际的进程退出由 app.run_app() 在清理完成后执行。
        """
        logger.warning("Forcing immediate shutdown")
        self._force_exit = True
        self._shutdown_requested = True

        count = self.registry.run_shutdown_pass()
        if count:
            logger.info(f"Force shutdown: killed {count} background process(es)")

        self._notify()

    def _notify(self) -> None:
        """调用关闭回调并设置关闭事件。"""
        if self._on_shutdown:
            try:
                self._on_shutdown()
            except Exception as e:
                logger.warning(f"Error in shutdown callback: {e}")

        if self._shutdown_event and self._loop:
            self._loop.call_soon_threadsafe(self._shutdown_event.set)

    def request_graceful_shutdown(self) -> None:
        """程序化请求优雅关闭。"""
        logger.info("Programmatic shutdown requested")
        self._request_shutdown()
