"""ShutdownRegistry tests.

Uses stand-in handles for membership and best-effort semantics; real
processes are covered in test_executor.py.
"""

from __future__ import annotations

import gc
import threading
from unittest import mock

from exec_supervisor.runtime.registry import ShutdownRegistry


class FakeHandle:
    """Minimal stand-in for RunningProcess."""

    def __init__(self, pid: int, running: bool = True, error: Exception | None = None) -> None:
        self.pid = pid
        self.running = running
        self.error = error
        self.kill_calls = 0
        self.terminate_calls: list[tuple[float, float]] = []

    def kill(self) -> bool:
        self.kill_calls += 1
        if self.error is not None:
            raise self.error
        was_running, self.running = self.running, False
        return was_running

    def terminate(self, term_timeout: float, kill_timeout: float) -> bool:
        self.terminate_calls.append((term_timeout, kill_timeout))
        if self.error is not None:
            raise self.error
        was_running, self.running = self.running, False
        return was_running


class TestMembership:
    """register / deregister semantics."""

    def test_starts_empty(self):
        assert len(ShutdownRegistry()) == 0

    def test_register_and_deregister(self):
        registry = ShutdownRegistry()
        handle = FakeHandle(1)

        registry.register(handle)
        assert handle in registry
        assert registry.handles() == [handle]

        assert registry.deregister(handle) is True
        assert handle not in registry

    def test_deregister_is_idempotent(self):
        registry = ShutdownRegistry()
        handle = FakeHandle(1)
        registry.register(handle)

        assert registry.deregister(handle) is True
        assert registry.deregister(handle) is False
        assert registry.deregister(FakeHandle(2)) is False

    def test_membership_is_weak(self):
        registry = ShutdownRegistry()
        registry.register(FakeHandle(1))
        gc.collect()
        assert len(registry) == 0

    def test_concurrent_register_and_deregister(self):
        registry = ShutdownRegistry()
        handles = [FakeHandle(i) for i in range(200)]

        def churn(chunk):
            for handle in chunk:
                registry.register(handle)
            for handle in chunk[::2]:
                registry.deregister(handle)

        threads = [
            threading.Thread(target=churn, args=(handles[i::4],)) for i in range(4)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        expected = {id(h) for i in range(4) for h in handles[i::4][1::2]}
        assert {id(h) for h in registry.handles()} == expected


class TestShutdownPass:
    """Forced termination of registered handles."""

    def test_kills_every_registered_handle(self):
        registry = ShutdownRegistry()
        handles = [FakeHandle(i) for i in range(4)]
        for handle in handles:
            registry.register(handle)

        assert registry.run_shutdown_pass() == 4
        assert all(h.kill_calls == 1 for h in handles)
        assert len(registry) == 0

    def test_deregistered_handles_are_not_touched(self):
        registry = ShutdownRegistry()
        kept, gone = FakeHandle(1), FakeHandle(2)
        registry.register(kept)
        registry.register(gone)
        registry.deregister(gone)

        assert registry.run_shutdown_pass() == 1
        assert kept.kill_calls == 1
        assert gone.kill_calls == 0

    def test_failure_does_not_stop_the_pass(self, caplog):
        registry = ShutdownRegistry()
        handles = [
            FakeHandle(1),
            FakeHandle(2, error=RuntimeError("boom")),
            FakeHandle(3),
        ]
        for handle in handles:
            registry.register(handle)

        assert registry.run_shutdown_pass() == 2
        assert all(h.kill_calls == 1 for h in handles)
        assert "Error killing subprocess pid=2: boom" in caplog.text

    def test_already_exited_handles_not_counted(self):
        registry = ShutdownRegistry()
        registry_handles = [FakeHandle(1, running=False), FakeHandle(2)]
        for handle in registry_handles:
            registry.register(handle)
        assert registry.run_shutdown_pass() == 1

    def test_second_pass_is_empty(self):
        registry = ShutdownRegistry()
        handle = FakeHandle(1)
        registry.register(handle)
        registry.run_shutdown_pass()

        assert registry.run_shutdown_pass() == 0
        assert handle.kill_calls == 1

    def test_terminate_all_uses_timeouts(self):
        registry = ShutdownRegistry()
        handles = [FakeHandle(1), FakeHandle(2, error=OSError("gone"))]
        for handle in handles:
            registry.register(handle)

        assert registry.terminate_all(1.5, 0.5) == 1
        assert handles[0].terminate_calls == [(1.5, 0.5)]
        assert handles[1].terminate_calls == [(1.5, 0.5)]
        assert len(registry) == 0


class TestLifecycle:
    """install() / default()."""

    def test_install_registers_atexit_once(self):
        registry = ShutdownRegistry()
        with mock.patch("exec_supervisor.runtime.registry.atexit.register") as register:
            registry.install()
            registry.install()
        register.assert_called_once_with(registry.run_shutdown_pass)

    def test_default_is_shared_and_installed(self):
        with mock.patch.object(ShutdownRegistry, "_default", None), mock.patch(
            "exec_supervisor.runtime.registry.atexit.register"
        ) as register:
            first = ShutdownRegistry.default()
            second = ShutdownRegistry.default()

        assert first is second
        register.assert_called_once_with(first.run_shutdown_pass)
