"""Completion strategy: run a command synchronously or fire-and-forget.

Synchronous mode blocks until the child exits, drains the stream pumps and
classifies the exit code against the success codes, raising NonZeroExit on
failure.

Asynchronous mode returns as soon as the pumps are attached. A background
observer thread waits for the child, logs the exit value, stops the pumps
and deregisters the child from the shutdown registry. Nothing is reported
back to the caller except through the log and the optional outcome future.
"""

from __future__ import annotations

import functools
import logging
import threading
from collections.abc import Iterable
from concurrent.futures import Future
from dataclasses import dataclass, field
from enum import Enum

import anyio

from .config import get_config
from .errors import LaunchFailure, NonZeroExit
from .runtime.process_runner import (
    OutputSink,
    ProcessLauncher,
    ProcessSpec,
    ProcessState,
    RunningProcess,
)
from .runtime.registry import ShutdownRegistry

__all__ = [
    "BackgroundExecution",
    "ExecutionMode",
    "ExitOutcome",
    "ProcessExecutor",
    "is_failure",
]

logger = logging.getLogger(__name__)


class ExecutionMode(Enum):
    """Whether the caller waits for the child."""

    SYNCHRONOUS = "sync"
    ASYNCHRONOUS = "async"


def is_failure(code: int, success_codes: Iterable[int] | None = None) -> bool:
    """Classify an exit code.

    An empty or missing success set means only 0 succeeds; it never means
    "everything succeeds".
    """
    codes = frozenset(success_codes or ())
    if not codes:
        return code != 0
    return code not in codes


@dataclass(frozen=True)
class ExitOutcome:
    """Final result of a child process."""

    exit_code: int
    command_line: str
    success: bool
    terminated: bool = False


@dataclass(eq=False)
class BackgroundExecution:
    """Handle on an asynchronous execution.

    The observer publishes to ``outcome`` exactly once: an ExitOutcome when
    the child exits (naturally or killed at shutdown), or the exception that
    prevented tracking it. Callers are free to ignore it.
    """

    handle: RunningProcess
    success_codes: frozenset[int] = frozenset()
    outcome: Future = field(default_factory=Future)
    observer: threading.Thread | None = None

    @property
    def pid(self) -> int:
        return self.handle.pid

    @property
    def command_line(self) -> str:
        return self.handle.command_line

    def done(self) -> bool:
        return self.outcome.done()

    def result(self, timeout: float | None = None) -> ExitOutcome:
        return self.outcome.result(timeout=timeout)


class ProcessExecutor:
    """Launch commands and decide how their completion is observed.

    Example:
        executor = ProcessExecutor()
        executor.execute(
            ProcessSpec(argv=["pytest", "-q"], cwd=Path("/workspace")),
            success_codes={0, 5},
        )

        background = ProcessExecutor(ExecutionMode.ASYNCHRONOUS)
        background.execute(ProcessSpec(argv=["./server"]))

    Attributes:
        mode: Synchronous (default) or asynchronous
        cleanup_on_shutdown: Kill asynchronous children when the host exits
        pump_timeout: Seconds to wait for the pumps to drain after exit
    """

    def __init__(
        self,
        mode: ExecutionMode = ExecutionMode.SYNCHRONOUS,
        cleanup_on_shutdown: bool = True,
        *,
        registry: ShutdownRegistry | None = None,
        launcher: ProcessLauncher | None = None,
        pump_timeout: float | None = None,
    ) -> None:
        config = get_config()
        self.mode = mode
        self.cleanup_on_shutdown = cleanup_on_shutdown
        self.launcher = launcher if launcher is not None else ProcessLauncher()
        self.pump_timeout = pump_timeout if pump_timeout is not None else config.pump_timeout
        self._registry = registry
        self._background: set[BackgroundExecution] = set()
        self._lock = threading.Lock()

    @property
    def registry(self) -> ShutdownRegistry:
        if self._registry is None:
            self._registry = ShutdownRegistry.default()
        return self._registry

    @property
    def background(self) -> list[BackgroundExecution]:
        """Asynchronous executions whose observer has not finished."""
        with self._lock:
            return list(self._background)

    def execute(
        self,
        spec: ProcessSpec,
        sink: OutputSink | None = None,
        success_codes: Iterable[int] | None = None,
    ) -> int | BackgroundExecution:
        """Run a command according to the executor's mode.

        Args:
            spec: What to run and where
            sink: Output destination (None = caller's stdout/stderr)
            success_codes: Exit codes treated as success (empty = only 0)

        Returns:
            The exit code (synchronous) or a BackgroundExecution (asynchronous)

        Raises:
            InvalidCommand: Spec rejected before anything started
            LaunchFailure: Process could not be started (both modes)
            NonZeroExit: Synchronous child exited outside success_codes
        """
        codes = frozenset(success_codes or ())
        logger.debug(f"Executing command line: {spec.command_line}")

        try:
            if self.mode is ExecutionMode.ASYNCHRONOUS:
                return self._execute_async(spec, sink, codes)
            return self._execute_sync(spec, sink, codes)
        except LaunchFailure as e:
            logger.error(str(e))
            raise

    async def aexecute(
        self,
        spec: ProcessSpec,
        sink: OutputSink | None = None,
        success_codes: Iterable[int] | None = None,
    ) -> int | BackgroundExecution:
        """execute() from an event loop, blocking a worker thread instead."""
        return await anyio.to_thread.run_sync(
            functools.partial(self.execute, spec, sink, success_codes),
            abandon_on_cancel=True,
        )

    def wait_background(self, timeout: float | None = None) -> bool:
        """Join every outstanding observer.

        Returns:
            True if all observers finished within timeout
        """
        for execution in self.background:
            if execution.observer is not None:
                execution.observer.join(timeout)
        return not self.background

    async def await_background(self) -> None:
        """wait_background() from an event loop."""
        await anyio.to_thread.run_sync(self.wait_background, abandon_on_cancel=True)

    def _execute_sync(
        self,
        spec: ProcessSpec,
        sink: OutputSink | None,
        codes: frozenset[int],
    ) -> int:
        handle = self.launcher.launch(spec, sink)
        command_line = spec.command_line

        try:
            exit_code = handle.wait()
        except OSError as e:
            raise LaunchFailure(e, command_line) from e
        finally:
            # Output is fully delivered before the caller sees the outcome
            self._stop_pumps(handle, "Error stopping process stream handler")

        if is_failure(exit_code, codes):
            error = NonZeroExit(exit_code, command_line)
            logger.error(str(error))
            raise error
        return exit_code

    def _execute_async(
        self,
        spec: ProcessSpec,
        sink: OutputSink | None,
        codes: frozenset[int],
    ) -> BackgroundExecution:
        handle = self.launcher.launch(spec, sink, new_session=True)
        if self.cleanup_on_shutdown:
            self.registry.register(handle)

        execution = BackgroundExecution(handle=handle, success_codes=codes)
        execution.observer = threading.Thread(
            target=self._observe,
            args=(execution,),
            name=f"exec-observer-{handle.pid}",
            daemon=True,
        )
        with self._lock:
            self._background.add(execution)
        execution.observer.start()
        return execution

    def _observe(self, execution: BackgroundExecution) -> None:
        """Background completion path for one asynchronous child."""
        handle = execution.handle
        command_line = handle.command_line

        try:
            try:
                exit_code = handle.wait()
            except Exception as e:
                # Tracking lost; the child stays registered for the shutdown pass
                logger.error(f"Async process failed for: {command_line}: {e}")
                self._stop_pumps(handle, "Error stopping async process stream handler")
                execution.outcome.set_exception(e)
                return

            terminated = handle.state is ProcessState.TERMINATED
            if terminated:
                logger.info(
                    f"Async process terminated, exit value = {exit_code} for: {command_line}"
                )
            else:
                logger.info(
                    f"Async process complete, exit value = {exit_code} for: {command_line}"
                )

            self._stop_pumps(handle, "Error stopping async process stream handler")
            if self.cleanup_on_shutdown:
                self.registry.deregister(handle)

            execution.outcome.set_result(
                ExitOutcome(
                    exit_code=exit_code,
                    command_line=command_line,
                    success=not is_failure(exit_code, execution.success_codes),
                    terminated=terminated,
                )
            )
        finally:
            with self._lock:
                self._background.discard(execution)

    def _stop_pumps(self, handle: RunningProcess, message: str) -> None:
        # Teardown is best effort: the outcome is published regardless
        try:
            handle.stop_pumps(self.pump_timeout)
        except Exception as e:
            logger.error(f"{message} for: {handle.command_line}: {e}")
