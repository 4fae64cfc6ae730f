"""EXS 环境变量配置管理。

环境变量:
    EXS_LOG_DEBUG: 日志调试模式
        - true/1/yes = 开启 (DEBUG 级别日志输出到临时文件)
        - false/0/no = 关闭 (默认，日志输出到 stderr)

    EXS_TERM_TIMEOUT: 发送 SIGTERM 后等待进程退出的时间（秒）
        - 默认 2.0 秒，限制在 0.1-60 秒

    EXS_KILL_TIMEOUT: 发送 SIGKILL 后等待进程退出的时间（秒）
        - 默认 1.0 秒，限制在 0.1-60 秒

    EXS_PUMP_TIMEOUT: 进程退出后等待输出泵排空的时间（秒）
        - 默认 10.0 秒，限制在 0.1-600 秒
        - 子进程的后代仍持有管道时，超时后报告 StreamTeardownError

    EXS_SIGINT_DOUBLE_TAP_WINDOW: 双击退出窗口时间（秒）
        - 默认 1.0 秒
        - 在此时间窗口内第二次 Ctrl+C 将强制终止所有后台进程并退出
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

__all__ = ["Config", "load_config", "get_config", "reload_config"]

DEFAULT_TERM_TIMEOUT = 2.0
DEFAULT_KILL_TIMEOUT = 1.0
DEFAULT_PUMP_TIMEOUT = 10.0
DEFAULT_DOUBLE_TAP_WINDOW = 1.0


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """解析布尔值环境变量。"""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_seconds(
    value: str | None,
    default: float,
    minimum: float,
    maximum: float,
) -> float:
    """解析秒数环境变量，无效值返回默认值，有效值限制在范围内。"""
    if not value:
        return default
    try:
        seconds = float(value)
    except ValueError:
        return default
    return max(minimum, min(seconds, maximum))


@dataclass
class Config:
    """EXS 配置。

    Attributes:
        log_debug: 日志调试模式（输出到临时文件）
        log_file: 日志文件路径（当 log_debug=True 时自动设置）
        term_timeout: SIGTERM 后的等待时间（秒）
        kill_timeout: SIGKILL 后的等待时间（秒）
        pump_timeout: 输出泵排空的等待时间（秒）
        sigint_double_tap_window: 双击退出窗口时间（秒）
    """

    log_debug: bool = False
    log_file: str | None = None
    term_timeout: float = DEFAULT_TERM_TIMEOUT
    kill_timeout: float = DEFAULT_KILL_TIMEOUT
    pump_timeout: float = DEFAULT_PUMP_TIMEOUT
    sigint_double_tap_window: float = DEFAULT_DOUBLE_TAP_WINDOW

    def __repr__(self) -> str:
        return (
            f"Config(log_debug={self.log_debug}, "
            f"log_file={self.log_file}, "
            f"term_timeout={self.term_timeout}, "
            f"kill_timeout={self.kill_timeout}, "
            f"pump_timeout={self.pump_timeout}, "
            f"sigint_double_tap_window={self.sigint_double_tap_window})"
        )


def _generate_log_file_path() -> str:
    """生成日志文件路径。

    Returns:
        临时目录下的日志文件绝对路径
    """
    log_dir = Path(tempfile.gettempdir()) / "exec-supervisor"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"exs_debug_{timestamp}.log"

    return str(log_file.resolve())


def load_config() -> Config:
    """从环境变量加载配置。"""
    log_debug = _parse_bool(os.environ.get("EXS_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    return Config(
        log_debug=log_debug,
        log_file=log_file,
        term_timeout=_parse_seconds(
            os.environ.get("EXS_TERM_TIMEOUT"), DEFAULT_TERM_TIMEOUT, 0.1, 60.0
        ),
        kill_timeout=_parse_seconds(
            os.environ.get("EXS_KILL_TIMEOUT"), DEFAULT_KILL_TIMEOUT, 0.1, 60.0
        ),
        pump_timeout=_parse_seconds(
            os.environ.get("EXS_PUMP_TIMEOUT"), DEFAULT_PUMP_TIMEOUT, 0.1, 600.0
        ),
        sigint_double_tap_window=_parse_seconds(
            os.environ.get("EXS_SIGINT_DOUBLE_TAP_WINDOW"),
            DEFAULT_DOUBLE_TAP_WINDOW,
            0.1,
            10.0,
        ),
    )


# 全局配置实例（延迟加载）
_config: Config | None = None


def get_config() -> Config:
    """获取全局配置实例。"""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """重新加载配置（用于测试）。"""
    global _config
    _config = load_config()
    return _config
