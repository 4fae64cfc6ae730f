"""exec-supervisor 异常类。

所有失败都派生自 ExecutionError：
- InvalidCommand: 命令为空或格式错误（启动任何进程之前）
- LaunchFailure: 操作系统无法创建进程（可执行文件缺失、权限、I/O）
- NonZeroExit: 进程已运行，但退出码不在成功集合内
- StreamTeardownError: 进程结束后停止输出泵失败（只记录日志）
"""

from __future__ import annotations

__all__ = [
    "ExecutionError",
    "InvalidCommand",
    "LaunchFailure",
    "NonZeroExit",
    "StreamTeardownError",
]


class ExecutionError(Exception):
    """exec-supervisor 基础异常。"""
    pass


class InvalidCommand(ExecutionError, ValueError):
    """命令规格无效（空 argv 或非字符串参数）。"""
    pass


class LaunchFailure(ExecutionError):
    """进程启动失败。

    Attributes:
        cause: 底层异常（通常是 OSError）
        command_line: 尝试执行的命令行
    """

    def __init__(self, cause: BaseException, command_line: str = "") -> None:
        self.cause = cause
        self.command_line = command_line
        message = "Command execution failed."
        if command_line:
            message = f"Command execution failed: {command_line}: {cause}"
        super().__init__(message)


class NonZeroExit(ExecutionError):
    """进程退出码不在成功集合内。

    Attributes:
        exit_code: 进程退出码
        command_line: 执行的命令行
    """

    def __init__(self, exit_code: int, command_line: str) -> None:
        self.exit_code = exit_code
        self.command_line = command_line
        super().__init__(f"Result of {command_line} execution is: '{exit_code}'.")


class StreamTeardownError(ExecutionError):
    """停止输出泵或关闭输出文件时出错。"""
    pass
