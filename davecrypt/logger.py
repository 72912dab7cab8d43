"""Minimal severity-based logging with a replaceable sink."""

from __future__ import annotations

import os
import sys
import threading
from enum import IntEnum
from typing import Callable, Optional


class LoggingSeverity(IntEnum):
    """Severity of a log message."""

    VERBOSE = 0
    INFO = 1
    WARNING = 2
    ERROR = 3
    NONE = 4


LogSink = Callable[[LoggingSeverity, str, int, str], None]

_sink: Optional[LogSink] = None
_sink_lock = threading.Lock()


def set_log_sink(sink: Optional[LogSink]) -> Optional[LogSink]:
    """Install a sink taking (severity, file, line, message); return the previous one."""
    global _sink
    with _sink_lock:
        previous, _sink = _sink, sink
    return previous


def log(severity: LoggingSeverity, message: str) -> None:
    """Send a message to the sink, or print it with its origin when no sink is set."""
    if not message:
        return

    caller = sys._getframe(1)
    file = caller.f_code.co_filename
    line = caller.f_lineno
    severity = LoggingSeverity(severity)

    sink = _sink
    if sink is not None:
        sink(severity, file, line, message)
        return

    if severity is LoggingSeverity.NONE:
        return
    print(f"({os.path.basename(file)}:{line}) {message}", flush=True)