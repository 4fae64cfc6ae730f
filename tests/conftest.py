"""Pytest 配置和 fixtures。"""

from __future__ import annotations

import os
import sys
import time
from pathlib import Path
from typing import Callable

import pytest

# 项目根目录
PROJECT_ROOT = Path(__file__).parent.parent

# 添加 src 目录到 Python 路径
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

# 测试用的子进程脚本
FIXTURES_DIR = PROJECT_ROOT / "tests" / "fixtures"
FAKE_CHILD_PATH = FIXTURES_DIR / "fake_child.py"

from exec_supervisor.config import reload_config  # noqa: E402
from exec_supervisor.runtime.registry import ShutdownRegistry  # noqa: E402


@pytest.fixture(autouse=True)
def _clean_config(monkeypatch: pytest.MonkeyPatch):
    """每个测试使用不含 EXS_* 变量的默认配置。"""
    for key in list(os.environ):
        if key.startswith("EXS_"):
            monkeypatch.delenv(key, raising=False)
    reload_config()
    yield
    reload_config()


@pytest.fixture
def temp_workspace(tmp_path: Path) -> Path:
    """临时工作目录。"""
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    return workspace


@pytest.fixture
def child_argv() -> Callable[..., list[str]]:
    """构造运行 fake_child.py 的 argv。"""

    def _argv(*args: str) -> list[str]:
        return [sys.executable, str(FAKE_CHILD_PATH), *args]

    return _argv


@pytest.fixture
def registry():
    """独立的关闭注册表；测试结束时清理残留的后台进程。"""
    registry = ShutdownRegistry()
    yield registry
    registry.run_shutdown_pass()


def wait_for_file(path: Path, timeout: float = 10.0) -> str:
    """等待文件出现并返回其内容。"""
    deadline = time.time() + timeout
    while time.time() < deadline:
        if path.exists():
            content = path.read_text(encoding="utf-8").strip()
            if content:
                return content
        time.sleep(0.02)
    raise AssertionError(f"File did not appear in {timeout}s: {path}")


def pid_exists(pid: int) -> bool:
    """POSIX: 进程是否仍在运行（未被回收的僵尸进程视为已退出）。"""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True

    # 容器里的 init 不一定回收孤儿进程
    stat = Path(f"/proc/{pid}/stat")
    try:
        state = stat.read_text().rsplit(")", 1)[1].split()[0]
    except (OSError, IndexError):
        return True
    return state not in ("Z", "X")


def wait_for_exit(pid: int, timeout: float = 10.0) -> bool:
    """POSIX: 等待非本进程子进程的 pid 消失。"""
    deadline = time.time() + timeout
    while time.time() < deadline:
        if not pid_exists(pid):
            return True
        time.sleep(0.05)
    return False
