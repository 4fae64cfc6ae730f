"""Runtime module for process launching and shutdown cleanup.

This module provides the process launcher with stream pumps and reliable
termination, and the registry that force-terminates detached children when
the host exits.
"""

from __future__ import annotations

from .process_runner import (
    OutputSink,
    ProcessLauncher,
    ProcessSpec,
    ProcessState,
    RunningProcess,
)
from .registry import ShutdownRegistry

__all__ = [
    "OutputSink",
    "ProcessLauncher",
    "ProcessSpec",
    "ProcessState",
    "RunningProcess",
    "ShutdownRegistry",
]
