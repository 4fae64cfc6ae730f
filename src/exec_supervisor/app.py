"""exec-supervisor 应用入口。

包含宿主生命周期管理和主入口点。
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import sys
from typing import Sequence

import anyio

from .cli import RunRequest, parse_args
from .config import Config, get_config
from .errors import InvalidCommand, LaunchFailure, NonZeroExit
from .executor import BackgroundExecution, ExecutionMode, ProcessExecutor
from .runtime.registry import ShutdownRegistry
from .signal_manager import SignalManager

__all__ = ["run_app", "main", "configure_logging"]

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_FORCED = 130  # 128 + SIGINT(2)


async def run_app(
    request: RunRequest,
    registry: ShutdownRegistry | None = None,
) -> int:
    """执行一次请求并返回宿主退出码。

    使用并发任务架构：
    - work_task: 执行命令（同步模式等待退出；异步模式可选等待后台进程）
    - shutdown_watcher: 监听 shutdown 事件

    同步模式下收到关闭信号不取消命令（子进程通过终端自行收到信号）；
    异步模式下停止等待，并优雅终止已登记的后台子进程。
    双击 SIGINT 强制退出，退出码 130。

    Args:
        request: 执行请求
        registry: 关闭注册表（默认新建并注册 atexit）
    """
    config = get_config()
    if registry is None:
        registry = ShutdownRegistry()
        registry.install()

    executor = ProcessExecutor(
        request.mode,
        request.cleanup_on_shutdown,
        registry=registry,
        pump_timeout=config.pump_timeout,
    )
    signal_manager = SignalManager(registry)
    work_task: asyncio.Task | None = None
    shutdown_watcher: asyncio.Task | None = None

    async def _run_impl() -> int:
        result = await executor.aexecute(request.spec, request.sink, request.success_codes)
        if isinstance(result, BackgroundExecution):
            logger.info(f"Started background process pid={result.pid}: {result.command_line}")
            if request.wait:
                await executor.await_background()
        return EXIT_OK

    async def _watch_shutdown() -> None:
        await signal_manager.wait_for_shutdown()
        if signal_manager.is_force_exit or request.mode is ExecutionMode.ASYNCHRONOUS:
            logger.info("Shutdown signal received, cancelling work task...")
            if work_task and not work_task.done():
                work_task.cancel()

    try:
        await signal_manager.start()

        work_task = asyncio.create_task(_run_impl(), name="exec-work")
        shutdown_watcher = asyncio.create_task(_watch_shutdown(), name="shutdown-watcher")

        try:
            return await work_task
        except asyncio.CancelledError:
            if not signal_manager.is_shutdown_requested:
                raise
            logger.info("Work task cancelled by shutdown signal")
            return EXIT_FORCED if signal_manager.is_force_exit else EXIT_OK

    except NonZeroExit:
        # Already logged by the executor
        return EXIT_FAILURE

    except LaunchFailure:
        return EXIT_FAILURE

    except InvalidCommand as e:
        logger.error(f"Invalid command: {e}")
        return EXIT_USAGE

    finally:
        if shutdown_watcher and not shutdown_watcher.done():
            shutdown_watcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await shutdown_watcher

        await signal_manager.stop()

        if signal_manager.is_shutdown_requested and not signal_manager.is_force_exit:
            await anyio.to_thread.run_sync(
                registry.terminate_all,
                config.term_timeout,
                config.kill_timeout,
            )

        logger.debug("run_app: cleanup completed")


def configure_logging(config: Config, verbose: bool = False) -> None:
    """配置日志输出。

    - 默认：输出到 stderr，exec_supervisor 命名空间 INFO
    - verbose：DEBUG
    - EXS_LOG_DEBUG：DEBUG 级别输出到临时文件
    """
    log_format = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    log_handlers: list[logging.Handler] = []

    if config.log_debug and config.log_file:
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(log_format))
        log_handlers.append(file_handler)
        log_level = logging.DEBUG
    else:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(log_format))
        log_handlers.append(stderr_handler)
        log_level = logging.DEBUG if verbose else logging.INFO

    # 配置 root logger（第三方库）为 WARNING，减少噪音
    logging.basicConfig(level=logging.WARNING, handlers=log_handlers, force=True)
    # 只对 exec_supervisor 命名空间启用详细日志
    logging.getLogger("exec_supervisor").setLevel(log_level)


def main(argv: Sequence[str] | None = None) -> int:
    """主入口点。"""
    request = parse_args(argv)

    config = get_config()
    configure_logging(config, request.verbose)
    logger.debug(f"Starting exec-supervisor: {config}")

    return asyncio.run(run_app(request))


if __name__ == "__main__":
    sys.exit(main())
