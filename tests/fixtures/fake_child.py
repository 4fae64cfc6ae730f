#!/usr/bin/env python3
"""Fake child process for exec-supervisor tests.

Behaves like a small, scriptable command so tests can exercise exit codes,
output volume, stderr, stdin, working directory, environment and signal
handling without depending on platform shell utilities.

Usage:
    python fake_child.py [--stdout TEXT]... [--stderr TEXT]... [--bytes N]
                         [--echo-stdin] [--print-cwd] [--print-env NAME]
                         [--pid-file PATH] [--sleep SECONDS]
                         [--ignore-sigterm] [--exit-code CODE]

Output order: --stdout lines, --stderr lines, --bytes, --echo-stdin,
--print-cwd, --print-env; then --pid-file is written, then the sleep.
"""

from __future__ import annotations

import argparse
import os
import signal
import sys
import time
from typing import NoReturn


def main() -> NoReturn:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Fake child for testing")
    parser.add_argument("--stdout", action="append", default=[], help="Line to print on stdout")
    parser.add_argument("--stderr", action="append", default=[], help="Line to print on stderr")
    parser.add_argument("--bytes", type=int, default=0, help="Write N bytes of 'x' to stdout")
    parser.add_argument("--echo-stdin", action="store_true", help="Copy stdin to stdout")
    parser.add_argument("--print-cwd", action="store_true", help="Print working directory")
    parser.add_argument("--print-env", default=None, help="Print the value of an env var")
    parser.add_argument("--pid-file", default=None, help="Write own pid to this file")
    parser.add_argument("--sleep", type=float, default=0.0, help="Seconds to sleep before exit")
    parser.add_argument("--ignore-sigterm", action="store_true", help="Ignore SIGTERM")
    parser.add_argument("--exit-code", type=int, default=0, help="Exit code")
    args = parser.parse_args()

    if args.ignore_sigterm and hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, signal.SIG_IGN)

    out = sys.stdout.buffer
    for line in args.stdout:
        out.write(line.encode("utf-8") + b"\n")
        out.flush()
    for line in args.stderr:
        sys.stderr.buffer.write(line.encode("utf-8") + b"\n")
        sys.stderr.buffer.flush()
    if args.bytes:
        remaining = args.bytes
        while remaining:
            size = min(remaining, 65536)
            out.write(b"x" * size)
            remaining -= size
        out.flush()
    if args.echo_stdin:
        out.write(sys.stdin.buffer.read())
        out.flush()
    if args.print_cwd:
        out.write(os.getcwd().encode("utf-8") + b"\n")
        out.flush()
    if args.print_env is not None:
        value = os.environ.get(args.print_env, "<unset>")
        out.write(value.encode("utf-8") + b"\n")
        out.flush()

    if args.pid_file:
        tmp = args.pid_file + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(str(os.getpid()))
        os.replace(tmp, args.pid_file)

    deadline = time.time() + args.sleep
    while time.time() < deadline:
        time.sleep(min(0.05, max(0.0, deadline - time.time())))

    sys.exit(args.exit_code)


if __name__ == "__main__":
    main()
