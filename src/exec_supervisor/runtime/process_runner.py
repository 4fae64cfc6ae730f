"""Process launcher with stream pumps and reliable termination.

exec-supervisor runtime module v0.1.0

This module provides:
- Command validation before anything is spawned
- Output sinks: the caller's stdout/stderr, a combined output file, or
  explicit writers
- Stream pumps (daemon threads) copying child stdout/stderr to the sink and
  feeding stdin bytes to the child
- Optional session/process-group isolation for detached children
- Termination ladder (SIGTERM -> timeout -> SIGKILL) and immediate kill

Key design points:
- Pumps are started inside launch(), before anyone waits on the process, so
  a child that fills its pipe buffer never blocks on an absent reader
- Every chunk is flushed to the sink as soon as it is read
- POSIX: start_new_session=True when isolated, signals go to the group
- Windows: CREATE_NEW_PROCESS_GROUP when isolated
"""

from __future__ import annotations

import codecs
import io
import logging
import os
import shlex
import signal
import subprocess
import sys
import threading
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import IO, Any

from ..errors import InvalidCommand, LaunchFailure, StreamTeardownError

__all__ = [
    "IS_WINDOWS",
    "OutputSink",
    "ProcessLauncher",
    "ProcessSpec",
    "ProcessState",
    "RunningProcess",
    "StreamPump",
]

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"

DEFAULT_CHUNK_SIZE = 4096


class ProcessState(Enum):
    """Lifecycle of a launched process."""

    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    TERMINATED = "terminated"


@dataclass(frozen=True)
class ProcessSpec:
    """Specification for a subprocess to run.

    Attributes:
        argv: Command line arguments (first element is the executable)
        cwd: Working directory for the process (None = caller's cwd)
        env: Complete environment for the child (None = inherit parent)
        stdin_bytes: Bytes pumped into stdin (None = inherit caller's stdin)
    """

    argv: Sequence[str]
    cwd: Path | None = None
    env: Mapping[str, str] | None = None
    stdin_bytes: bytes | None = None

    def __post_init__(self) -> None:
        # Freeze argv; a bare string is left alone so validate() can reject it
        if not isinstance(self.argv, (str, bytes)):
            object.__setattr__(self, "argv", tuple(self.argv))
        if self.cwd is not None and not isinstance(self.cwd, Path):
            object.__setattr__(self, "cwd", Path(self.cwd))

    @property
    def command_line(self) -> str:
        """Shell-quoted command line, for logs and error messages."""
        if isinstance(self.argv, (str, bytes)):
            return repr(self.argv)
        return shlex.join(str(arg) for arg in self.argv)

    def validate(self) -> None:
        """Check the command before anything is started.

        Raises:
            InvalidCommand: If argv is empty, not a sequence of strings,
                names an empty program, or anything passed to the OS
                (arguments, cwd, environment) cannot be represented there
        """
        if isinstance(self.argv, (str, bytes)):
            raise InvalidCommand(
                f"Command must be a sequence of arguments, not a string: {self.argv!r}"
            )
        if not self.argv:
            raise InvalidCommand("Command line is empty")
        for arg in self.argv:
            if not isinstance(arg, str):
                raise InvalidCommand(
                    f"Command arguments must be strings, got {type(arg).__name__}: {arg!r}"
                )
            if "\0" in arg:
                raise InvalidCommand(f"Command argument contains a NUL byte: {arg!r}")
        if not self.argv[0]:
            raise InvalidCommand("Program name is empty")

        if self.cwd is not None and "\0" in str(self.cwd):
            raise InvalidCommand(f"Working directory contains a NUL byte: {str(self.cwd)!r}")

        if self.env is not None:
            for key, value in self.env.items():
                if not isinstance(key, str) or not isinstance(value, str):
                    raise InvalidCommand(
                        f"Environment entries must be strings, got "
                        f"{type(key).__name__}={type(value).__name__}: {key!r}"
                    )
                if not key or "=" in key or "\0" in key:
                    raise InvalidCommand(f"Invalid environment variable name: {key!r}")
                if "\0" in value:
                    raise InvalidCommand(f"Environment variable {key} contains a NUL byte")

        if self.stdin_bytes is not None and not isinstance(self.stdin_bytes, (bytes, bytearray)):
            raise InvalidCommand(
                f"stdin_bytes must be bytes, got {type(self.stdin_bytes).__name__}"
            )


class _SinkWriter:
    """Thread-safe, always-flushed writer for one destination stream.

    Text streams (without a binary buffer) receive incrementally decoded
    UTF-8 so multi-byte characters split across chunks survive.
    """

    def __init__(self, stream: IO[Any] | None, lock: threading.Lock) -> None:
        self._stream = stream
        self._lock = lock
        self._decoder = None
        if stream is not None and isinstance(stream, io.TextIOBase):
            self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def write(self, chunk: bytes) -> None:
        if self._stream is None:
            return
        with self._lock:
            if self._decoder is not None:
                self._stream.write(self._decoder.decode(chunk))
            else:
                self._stream.write(chunk)
            self._stream.flush()

    def finish(self) -> None:
        if self._stream is None or self._decoder is None:
            return
        with self._lock:
            tail = self._decoder.decode(b"", final=True)
            if tail:
                self._stream.write(tail)
                self._stream.flush()


@dataclass
class _OpenSink:
    """Resolved output destination for one launch."""

    stdout: _SinkWriter
    stderr: _SinkWriter
    owned_file: IO[bytes] | None = None

    def close(self) -> None:
        self.stdout.finish()
        if self.stderr is not self.stdout:
            self.stderr.finish()
        if self.owned_file is not None:
            try:
                self.owned_file.flush()
            finally:
                self.owned_file.close()
                self.owned_file = None


def _binary_stream(stream: IO[Any] | None) -> IO[Any] | None:
    """Prefer the binary layer of a text stream such as sys.stdout."""
    if stream is None:
        return None
    buffer = getattr(stream, "buffer", None)
    if buffer is not None:
        # Push out text already written through the text layer first
        stream.flush()
        return buffer
    return stream


@dataclass(frozen=True)
class OutputSink:
    """Where the child's stdout/stderr go.

    Use the constructors:
        OutputSink.inherit()                  caller's sys.stdout / sys.stderr
        OutputSink.to_file(path)              stdout+stderr combined in a file
        OutputSink.to_streams(out, err=None)  explicit writers (err defaults to out)
    """

    path: Path | None = None
    stdout: IO[Any] | None = None
    stderr: IO[Any] | None = None

    @classmethod
    def inherit(cls) -> OutputSink:
        return cls()

    @classmethod
    def to_file(cls, path: str | os.PathLike[str]) -> OutputSink:
        return cls(path=Path(path))

    @classmethod
    def to_streams(cls, stdout: IO[Any], stderr: IO[Any] | None = None) -> OutputSink:
        return cls(stdout=stdout, stderr=stderr if stderr is not None else stdout)

    @property
    def is_inherit(self) -> bool:
        return self.path is None and self.stdout is None

    def describe(self) -> str:
        if self.path is not None:
            return f"file:{self.path}"
        if self.stdout is not None:
            return "streams"
        return "inherit"

    def open(self) -> _OpenSink:
        """Resolve the sink into writers.

        A missing parent directory of an output file is created; failing to
        create it is only a warning, the subsequent open decides.

        Raises:
            OSError: If the output file cannot be opened
        """
        lock = threading.Lock()

        if self.path is not None:
            parent = self.path.parent
            if not parent.exists():
                try:
                    parent.mkdir(parents=True, exist_ok=True)
                except OSError as e:
                    logger.warning(
                        f"Could not create non existing parent directories for log file: "
                        f"{self.path} ({e})"
                    )
            handle = open(self.path, "wb")
            writer = _SinkWriter(handle, lock)
            return _OpenSink(stdout=writer, stderr=writer, owned_file=handle)

        if self.stdout is not None:
            out = _SinkWriter(self.stdout, lock)
            if self.stderr is None or self.stderr is self.stdout:
                return _OpenSink(stdout=out, stderr=out)
            return _OpenSink(stdout=out, stderr=_SinkWriter(self.stderr, threading.Lock()))

        return _OpenSink(
            stdout=_SinkWriter(_binary_stream(sys.stdout), lock),
            stderr=_SinkWriter(_binary_stream(sys.stderr), threading.Lock()),
        )


def _write_fully(stream: IO[bytes]) -> Callable[[bytes], None]:
    """Writer for unbuffered pipes, whose write() may accept a prefix only."""

    def write(chunk: bytes) -> None:
        view = memoryview(chunk)
        while view:
            written = stream.write(view)
            view = view[written or 0:]

    return write


class StreamPump(threading.Thread):
    """Copy bytes from a reader to a writer until EOF.

    A failing writer does not stop the pump: the error is recorded and the
    reader is drained to EOF, so the child never blocks on a full pipe.

    Args:
        name: Thread name, used in logs and teardown errors
        read: Callable returning up to n bytes, b"" at EOF
        write: Callable receiving each chunk
        on_finish: Optional callable run after EOF (e.g. closing child stdin)
        chunk_size: Read size
        writes_to_child: The writer is the child's stdin; a broken pipe means
            the child stopped reading and ends the pump without error
    """

    def __init__(
        self,
        name: str,
        read: Callable[[int], bytes],
        write: Callable[[bytes], None],
        on_finish: Callable[[], None] | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        writes_to_child: bool = False,
    ) -> None:
        super().__init__(name=name, daemon=True)
        self._read = read
        self._write = write
        self._on_finish = on_finish
        self._chunk_size = chunk_size
        self._writes_to_child = writes_to_child
        self.error: BaseException | None = None
        self.bytes_pumped = 0
        self.bytes_discarded = 0

    def run(self) -> None:
        try:
            while True:
                chunk = self._read(self._chunk_size)
                if not chunk:
                    break
                if self.error is not None:
                    self.bytes_discarded += len(chunk)
                    continue
                try:
                    self._write(chunk)
                except BrokenPipeError as e:
                    if self._writes_to_child:
                        # Child closed its stdin before reading everything
                        logger.debug(f"{self.name}: pipe closed by child")
                        break
                    self._write_failed(e, chunk)
                except (OSError, ValueError) as e:
                    self._write_failed(e, chunk)
                else:
                    self.bytes_pumped += len(chunk)
        except (OSError, ValueError) as e:
            if self.error is None:
                self.error = e
            logger.debug(f"{self.name}: read error: {e}")
        finally:
            if self._on_finish is not None:
                try:
                    self._on_finish()
                except OSError as e:
                    logger.debug(f"{self.name}: error on finish: {e}")

    def _write_failed(self, error: BaseException, chunk: bytes) -> None:
        self.error = error
        self.bytes_discarded += len(chunk)
        logger.debug(f"{self.name}: write error, discarding remaining output: {error}")


@dataclass(eq=False)
class RunningProcess:
    """Handle on a launched child process, its pumps and its sink.

    Identity-hashed so it can live in the shutdown registry.
    """

    spec: ProcessSpec
    process: subprocess.Popen
    sink: _OpenSink
    new_session: bool = False
    pumps: list[StreamPump] = field(default_factory=list)
    state: ProcessState = ProcessState.STARTING
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _pumps_stopped: bool = field(default=False, repr=False)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def command_line(self) -> str:
        return self.spec.command_line

    @property
    def returncode(self) -> int | None:
        return self.process.poll()

    def is_running(self) -> bool:
        return self.process.poll() is None

    def start_pumps(self, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        """Attach and start the stream pumps, then mark the process running."""
        process = self.process
        if process.stdout is not None:
            self.pumps.append(
                StreamPump(
                    f"stdout-pump-{process.pid}",
                    process.stdout.read,
                    self.sink.stdout.write,
                    chunk_size=chunk_size,
                )
            )
        if process.stderr is not None:
            self.pumps.append(
                StreamPump(
                    f"stderr-pump-{process.pid}",
                    process.stderr.read,
                    self.sink.stderr.write,
                    chunk_size=chunk_size,
                )
            )
        if process.stdin is not None and self.spec.stdin_bytes is not None:
            self.pumps.append(
                StreamPump(
                    f"stdin-pump-{process.pid}",
                    io.BytesIO(self.spec.stdin_bytes).read,
                    _write_fully(process.stdin),
                    on_finish=process.stdin.close,
                    chunk_size=chunk_size,
                    writes_to_child=True,
                )
            )
        for pump in self.pumps:
            pump.start()
        self._transition(ProcessState.STARTING, ProcessState.RUNNING)

    def wait(self, timeout: float | None = None) -> int:
        """Block until the process exits and return its exit code.

        Raises:
            subprocess.TimeoutExpired: If timeout elapses first
        """
        returncode = self.process.wait(timeout=timeout)
        self._transition(ProcessState.RUNNING, ProcessState.COMPLETED)
        return returncode

    def stop_pumps(self, timeout: float | None = None) -> None:
        """Wait for the pumps to drain, then close pipes and owned files.

        Idempotent.

        Raises:
            StreamTeardownError: If a pump is still running after timeout,
                a pump failed, or the sink could not be closed
        """
        if self._pumps_stopped:
            return
        self._pumps_stopped = True

        problems: list[str] = []
        deadline = None if timeout is None else time.monotonic() + timeout
        for pump in self.pumps:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            pump.join(remaining)
            if pump.is_alive():
                problems.append(f"{pump.name} still running after {timeout}s")
            elif pump.error is not None:
                problems.append(f"{pump.name} failed: {pump.error}")

        alive = {pump.name for pump in self.pumps if pump.is_alive()}
        for name, pipe in (
            (f"stdout-pump-{self.pid}", self.process.stdout),
            (f"stderr-pump-{self.pid}", self.process.stderr),
        ):
            # A pump blocked in read() keeps its pipe
            if pipe is not None and name not in alive:
                pipe.close()

        try:
            self.sink.close()
        except (OSError, ValueError) as e:
            problems.append(f"closing output failed: {e}")

        if problems:
            raise StreamTeardownError(
                f"Error stopping stream pumps for {self.command_line}: " + "; ".join(problems)
            )

    def terminate(self, term_timeout: float, kill_timeout: float) -> bool:
        """Terminate gracefully, then forcefully if needed.

        Termination strategy:
        1. Send SIGTERM (or CTRL_BREAK_EVENT on Windows)
        2. Wait up to term_timeout for graceful exit
        3. If still running, send SIGKILL (or kill() on Windows)
        4. Wait up to kill_timeout for forced exit

        Returns:
            True if the process was still running and got signalled
        """
        if not self._mark_terminated():
            return False

        pid = self.pid
        logger.debug(f"Terminating subprocess pid={pid}")

        try:
            # Step 1: Graceful termination
            if IS_WINDOWS:
                self._windows_terminate()
            else:
                self._posix_signal(signal.SIGTERM)

            # Step 2: Wait for graceful exit
            try:
                self.process.wait(timeout=term_timeout)
                logger.debug(
                    f"Subprocess terminated gracefully pid={pid} "
                    f"returncode={self.process.returncode}"
                )
                return True
            except subprocess.TimeoutExpired:
                pass

            # Step 3: Force kill
            logger.debug(f"Force killing subprocess pid={pid}")
            if IS_WINDOWS:
                self.process.kill()
            else:
                self._posix_signal(signal.SIGKILL)

            # Step 4: Wait for forced exit
            try:
                self.process.wait(timeout=kill_timeout)
                logger.debug(
                    f"Subprocess killed pid={pid} "
                    f"returncode={self.process.returncode}"
                )
            except subprocess.TimeoutExpired:
                logger.warning(f"Subprocess did not exit after kill pid={pid}")

        except ProcessLookupError:
            # Process already exited
            logger.debug(f"Subprocess already exited pid={pid}")
        return True

    def kill(self) -> bool:
        """Forcibly terminate now, without waiting.

        Returns:
            True if the process was still running and got signalled
        """
        if not self._mark_terminated():
            return False
        logger.debug(f"Killing subprocess pid={self.pid}")
        try:
            if IS_WINDOWS:
                self.process.kill()
            else:
                self._posix_signal(signal.SIGKILL)
        except ProcessLookupError:
            logger.debug(f"Subprocess already exited pid={self.pid}")
        return True

    def _transition(self, expected: ProcessState, new: ProcessState) -> None:
        with self._lock:
            if self.state is expected:
                self.state = new

    def _mark_terminated(self) -> bool:
        with self._lock:
            if self.state in (ProcessState.COMPLETED, ProcessState.TERMINATED):
                return False
            if self.process.poll() is not None:
                self.state = ProcessState.COMPLETED
                return False
            self.state = ProcessState.TERMINATED
            return True

    def _posix_signal(self, sig: signal.Signals) -> None:
        """Signal the process group when isolated, else just the process."""
        if not self.new_session:
            self.process.send_signal(sig)
            return
        try:
            # Same as pid due to start_new_session
            pgid = os.getpgid(self.pid)
            os.killpg(pgid, sig)
            logger.debug(f"Sent {sig.name} to process group pgid={pgid}")
        except ProcessLookupError:
            raise
        except OSError as e:
            logger.debug(f"killpg failed, falling back to send_signal: {e}")
            self.process.send_signal(sig)

    def _windows_terminate(self) -> None:
        """Send CTRL_BREAK_EVENT on Windows, falling back to terminate()."""
        if self.new_session:
            try:
                os.kill(self.pid, signal.CTRL_BREAK_EVENT)
                logger.debug(f"Sent CTRL_BREAK_EVENT to pid={self.pid}")
                return
            except OSError as e:
                logger.debug(f"CTRL_BREAK_EVENT failed, falling back: {e}")
        self.process.terminate()


@dataclass
class ProcessLauncher:
    """Build, wire and start child processes.

    Example:
        launcher = ProcessLauncher()
        handle = launcher.launch(
            ProcessSpec(argv=["make", "all"], cwd=Path("/workspace")),
            OutputSink.to_file("/tmp/build.log"),
        )
        code = handle.wait()
        handle.stop_pumps(timeout=10)
    """

    chunk_size: int = DEFAULT_CHUNK_SIZE

    def launch(
        self,
        spec: ProcessSpec,
        sink: OutputSink | None = None,
        *,
        new_session: bool = False,
    ) -> RunningProcess:
        """Start the process and its pumps.

        Args:
            spec: Process specification
            sink: Output destination (None = inherit caller's streams)
            new_session: Isolate the child in its own session/process group

        Returns:
            Handle on the running process

        Raises:
            InvalidCommand: If the spec is invalid (nothing is started)
            LaunchFailure: If the output file or the process cannot be created
        """
        spec.validate()
        sink = sink if sink is not None else OutputSink.inherit()

        try:
            opened = sink.open()
        except OSError as e:
            raise LaunchFailure(e, spec.command_line) from e

        try:
            process = subprocess.Popen(
                list(spec.argv),
                stdin=subprocess.PIPE if spec.stdin_bytes is not None else None,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=0,
                **self._build_popen_kwargs(spec, new_session),
            )
        except (OSError, ValueError, TypeError, subprocess.SubprocessError) as e:
            try:
                opened.close()
            except OSError as close_error:
                logger.debug(f"Error closing output after launch failure: {close_error}")
            raise LaunchFailure(e, spec.command_line) from e

        handle = RunningProcess(
            spec=spec,
            process=process,
            sink=opened,
            new_session=new_session,
        )
        handle.start_pumps(self.chunk_size)

        logger.debug(
            f"Started subprocess pid={process.pid} "
            f"argv={spec.argv[0]} cwd={spec.cwd} sink={sink.describe()}"
        )
        return handle

    def _build_popen_kwargs(self, spec: ProcessSpec, new_session: bool) -> dict[str, Any]:
        """Build platform-specific Popen kwargs."""
        kwargs: dict[str, Any] = {}

        if spec.cwd is not None:
            kwargs["cwd"] = str(spec.cwd)

        # Environment
        if spec.env is not None:
            kwargs["env"] = dict(spec.env)

        if new_session:
            if IS_WINDOWS:
                kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
            else:
                # POSIX: start_new_session (equivalent to setsid)
                kwargs["start_new_session"] = True

        return kwargs
