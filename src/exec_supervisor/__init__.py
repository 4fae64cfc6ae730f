"""exec-supervisor - 子进程执行监督器。

启动子进程、转发标准流、等待（或脱离）其完成，并根据成功退出码集合判定结果。

环境变量:
    EXS_LOG_DEBUG: 日志输出到临时文件 (默认 false)
    EXS_TERM_TIMEOUT / EXS_KILL_TIMEOUT: 终止等待时间
    EXS_PUMP_TIMEOUT: 输出泵排空等待时间

用法:
    exec-supervisor --success-code 0 --success-code 3 -- ./build.sh
"""

__version__ = "0.1.0"

from .errors import (
    ExecutionError,
    InvalidCommand,
    LaunchFailure,
    NonZeroExit,
    StreamTeardownError,
)
from .executor import (
    BackgroundExecution,
    ExecutionMode,
    ExitOutcome,
    ProcessExecutor,
    is_failure,
)
from .runtime import OutputSink, ProcessLauncher, ProcessSpec, ShutdownRegistry

__all__ = [
    "__version__",
    "BackgroundExecution",
    "ExecutionError",
    "ExecutionMode",
    "ExitOutcome",
    "InvalidCommand",
    "LaunchFailure",
    "NonZeroExit",
    "OutputSink",
    "ProcessExecutor",
    "ProcessLauncher",
    "ProcessSpec",
    "ShutdownRegistry",
    "StreamTeardownError",
    "is_failure",
]
