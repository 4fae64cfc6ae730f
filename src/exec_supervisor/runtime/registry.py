"""Shutdown registry for detached child processes.

Tracks asynchronous children that must not outlive the host. Membership is
weak: the registry never keeps a finished handle alive on its own.

Thread safety: register/deregister/handles and both shutdown passes take a
single lock around the membership set. Termination itself happens outside
the lock on a snapshot, so a slow child does not block concurrent
deregistration.
"""

from __future__ import annotations

import atexit
import logging
import threading
import weakref
from typing import ClassVar

from .process_runner import RunningProcess

__all__ = ["ShutdownRegistry"]

logger = logging.getLogger(__name__)


class ShutdownRegistry:
    """Process-wide set of running handles to force-terminate at shutdown.

    Example:
        registry = ShutdownRegistry()
        registry.install()          # run_shutdown_pass() at interpreter exit

        registry.register(handle)   # on launch (async + cleanup only)
        ...
        registry.deregister(handle) # on completion (idempotent)
    """

    _default: ClassVar[ShutdownRegistry | None] = None
    _default_lock: ClassVar[threading.Lock] = threading.Lock()

    def __init__(self) -> None:
        self._handles: weakref.WeakSet[RunningProcess] = weakref.WeakSet()
        self._lock = threading.Lock()
        self._installed = False

    @classmethod
    def default(cls) -> ShutdownRegistry:
        """Return the lazily created, atexit-installed process-wide registry."""
        with cls._default_lock:
            if cls._default is None:
                cls._default = cls()
                cls._default.install()
            return cls._default

    def install(self) -> None:
        """Register the shutdown pass with atexit (once)."""
        with self._lock:
            if self._installed:
                return
            self._installed = True
        atexit.register(self.run_shutdown_pass)

    def register(self, handle: RunningProcess) -> None:
        with self._lock:
            self._handles.add(handle)
        logger.debug(f"Registered pid={handle.pid} for shutdown cleanup")

    def deregister(self, handle: RunningProcess) -> bool:
        """Remove a handle.

        Returns:
            Whether the handle was registered (False is a no-op)
        """
        with self._lock:
            if handle not in self._handles:
                return False
            self._handles.discard(handle)
        logger.debug(f"Deregistered pid={handle.pid}")
        return True

    def handles(self) -> list[RunningProcess]:
        """Snapshot of the registered handles."""
        with self._lock:
            return list(self._handles)

    def __contains__(self, handle: object) -> bool:
        with self._lock:
            return handle in self._handles

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)

    def _drain(self) -> list[RunningProcess]:
        with self._lock:
            handles = list(self._handles)
            self._handles.clear()
        return handles

    def run_shutdown_pass(self) -> int:
        """Forcibly terminate every still-registered handle.

        Best-effort: a failure on one handle is logged and the rest are
        still attempted.

        Returns:
            Number of processes that were still running and got killed
        """
        handles = self._drain()
        if not handles:
            return 0

        killed = 0
        for handle in handles:
            try:
                if handle.kill():
                    killed += 1
            except Exception as e:
                logger.warning(f"Error killing subprocess pid={handle.pid}: {e}")

        if killed:
            logger.info(f"Shutdown: killed {killed} background process(es)")
        return killed

    def terminate_all(self, term_timeout: float, kill_timeout: float) -> int:
        """Graceful variant of run_shutdown_pass (SIGTERM, wait, SIGKILL).

        Returns:
            Number of processes that were still running and got terminated
        """
        handles = self._drain()
        if not handles:
            return 0

        terminated = 0
        for handle in handles:
            try:
                if handle.terminate(term_timeout, kill_timeout):
                    terminated += 1
            except Exception as e:
                logger.warning(f"Error terminating subprocess pid={handle.pid}: {e}")

        if terminated:
            logger.info(f"Shutdown: terminated {terminated} background process(es)")
        return terminated
