"""命令行参数解析。

把命令行转换为一次执行请求（RunRequest）：命令、工作目录、环境、输出、
成功退出码集合、执行模式。

用法:
    exec-supervisor [选项] -- PROGRAM [ARGS...]

示例:
    exec-supervisor --output build/logs/test.log --success-code 0 --success-code 5 -- pytest -q
    exec-supervisor --async --no-cleanup --no-wait --output /tmp/server.log -- ./server
"""

from __future__ import annotations

import argparse
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

from . import __version__
from .executor import ExecutionMode
from .runtime.process_runner import OutputSink, ProcessSpec

__all__ = ["RunRequest", "build_parser", "parse_args", "parse_env_overrides"]


@dataclass
class RunRequest:
    """一次执行请求。

    Attributes:
        spec: 进程规格
        sink: 输出目标
        success_codes: 成功退出码集合（空 = 只有 0）
        mode: 同步/异步
        cleanup_on_shutdown: 宿主退出时是否终止异步子进程
        wait: 异步模式下宿主是否等待后台进程结束
        verbose: DEBUG 级别日志
    """

    spec: ProcessSpec
    sink: OutputSink = field(default_factory=OutputSink.inherit)
    success_codes: frozenset[int] = frozenset()
    mode: ExecutionMode = ExecutionMode.SYNCHRONOUS
    cleanup_on_shutdown: bool = True
    wait: bool = True
    verbose: bool = False


def parse_env_overrides(values: Sequence[str]) -> dict[str, str]:
    """解析 KEY=VALUE 列表。

    Raises:
        ValueError: 缺少 '=' 或 KEY 为空
    """
    overrides: dict[str, str] = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise ValueError(f"Invalid environment override (expected KEY=VALUE): {item!r}")
        overrides[key] = value
    return overrides


def build_parser() -> argparse.ArgumentParser:
    """构建参数解析器。"""
    parser = argparse.ArgumentParser(
        prog="exec-supervisor",
        description="Run a command, pump its output, and check its exit code.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--cwd", type=Path, default=None, help="Working directory")
    parser.add_argument(
        "--env",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Environment override (repeatable)",
    )
    parser.add_argument(
        "--clear-env",
        action="store_true",
        help="Start from an empty environment instead of inheriting",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        metavar="FILE",
        help="Write stdout and stderr to FILE instead of the console",
    )
    parser.add_argument(
        "--success-code",
        type=int,
        action="append",
        default=[],
        metavar="N",
        help="Exit code treated as success (repeatable, default: 0)",
    )
    parser.add_argument(
        "--stdin-file",
        type=Path,
        default=None,
        metavar="FILE",
        help="Feed FILE to the command's stdin (default: inherit)",
    )
    parser.add_argument(
        "--async",
        dest="async_mode",
        action="store_true",
        help="Run in the background; the result is only logged",
    )
    parser.add_argument(
        "--no-cleanup",
        action="store_true",
        help="Let a background command outlive this process",
    )
    parser.add_argument(
        "--no-wait",
        action="store_true",
        help="With --async --no-cleanup, exit right after the command started",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument(
        "command",
        nargs=argparse.REMAINDER,
        help="Program and arguments (after --)",
    )
    return parser


def parse_args(argv: Sequence[str] | None = None) -> RunRequest:
    """解析命令行。

    用法错误通过 parser.error() 以退出码 2 结束。
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    command = list(args.command)
    if command and command[0] == "--":
        command = command[1:]
    if not command:
        parser.error("no command given")

    if args.no_wait and not args.async_mode:
        parser.error("--no-wait requires --async")
    # 不等待且退出时清理 = 子进程启动后立即被 atexit 杀掉
    if args.no_wait and not args.no_cleanup:
        parser.error(
            "--no-wait requires --no-cleanup (the command would be killed as this process exits)"
        )

    try:
        overrides = parse_env_overrides(args.env)
    except ValueError as e:
        parser.error(str(e))

    env: dict[str, str] | None = None
    if args.clear_env or overrides:
        env = {} if args.clear_env else dict(os.environ)
        env.update(overrides)

    stdin_bytes: bytes | None = None
    if args.stdin_file is not None:
        try:
            stdin_bytes = args.stdin_file.read_bytes()
        except OSError as e:
            parser.error(f"cannot read --stdin-file: {e}")

    sink = OutputSink.to_file(args.output) if args.output is not None else OutputSink.inherit()

    return RunRequest(
        spec=ProcessSpec(argv=command, cwd=args.cwd, env=env, stdin_bytes=stdin_bytes),
        sink=sink,
        success_codes=frozenset(args.success_code),
        mode=ExecutionMode.ASYNCHRONOUS if args.async_mode else ExecutionMode.SYNCHRONOUS,
        cleanup_on_shutdown=not args.no_cleanup,
        wait=not args.no_wait,
        verbose=args.verbose,
    )
