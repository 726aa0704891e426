"""Thread-safe timestamped logging to stdout + file.

A host application (Android bridge, desktop UI, server) can register a sink
callback: while a sink is registered, stdout is suppressed and lines at or
above the sink's minimum level are handed to it instead.  The file sink
always receives ALL levels (including DEBUG).
"""

from __future__ import annotations

import os
import sys
import threading
import traceback
from datetime import datetime
from enum import Enum
from typing import Callable


class LogLevel(Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


_LEVEL_ORDER: dict[LogLevel, int] = {
    LogLevel.DEBUG: 0,
    LogLevel.INFO: 1,
    LogLevel.WARNING: 2,
    LogLevel.ERROR: 3,
}

_lock = threading.Lock()
_log_file = None
_log_path: str | None = None

# Minimum level printed to stdout (the file sink ignores this)
_stdout_min_level: LogLevel = LogLevel.DEBUG

# Host sink support
_sink: Callable[[str, LogLevel], None] | None = None
_sink_min_level: LogLevel = LogLevel.INFO


def parse_level(name: str) -> LogLevel:
    """Map a case-insensitive level name ("info", "WARNING") to a LogLevel."""
    try:
        return LogLevel(name.strip().upper())
    except ValueError:
        raise ValueError(f"Unknown log level: {name!r}") from None


def init_file(path: str) -> None:
    """Open the log file for appending. Creates parent directories if needed."""
    global _log_file, _log_path
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    with _lock:
        if _log_file is not None:
            _log_file.close()
        _log_file = open(path, "a", encoding="utf-8")
        _log_path = path


def close_file() -> None:
    """Close the log file, if one is open."""
    global _log_file, _log_path
    with _lock:
        if _log_file is not None:
            _log_file.close()
        _log_file = None
        _log_path = None


def get_log_path() -> str | None:
    """Return the active log file path, or None if file logging is not enabled."""
    return _log_path


def set_stdout_level(level: LogLevel) -> None:
    global _stdout_min_level
    with _lock:
        _stdout_min_level = level


def set_sink(
    callback: Callable[[str, LogLevel], None],
    min_level: LogLevel = LogLevel.INFO,
) -> None:
    """Register a host sink.  While set, stdout is suppressed and lines
    at *min_level* or above are routed to *callback* instead."""
    global _sink, _sink_min_level
    with _lock:
        _sink = callback
        _sink_min_level = min_level


def clear_sink() -> None:
    """Unregister the host sink and restore stdout output."""
    global _sink
    with _lock:
        _sink = None


def write_line(message: str, level: LogLevel = LogLevel.INFO) -> None:
    timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
    line = f"[{timestamp}] [{level.value}] {message}"
    rank = _LEVEL_ORDER[level]
    # Snapshot the sink under lock, then call it OUTSIDE the lock so a sink
    # that logs (or calls back into the pipeline) cannot deadlock.
    cb = None
    with _lock:
        if _sink is None:
            if rank >= _LEVEL_ORDER[_stdout_min_level]:
                print(line, file=sys.stdout, flush=True)
        elif rank >= _LEVEL_ORDER[_sink_min_level]:
            cb = _sink
        if _log_file is not None:
            _log_file.write(line + "\n")
            _log_file.flush()
    if cb is not None:
        cb(line, level)


def log_exception(ex: BaseException, context: str | None = None) -> None:
    tb = traceback.format_exception(type(ex), ex, ex.__traceback__)
    tb_str = "".join(tb).rstrip()
    if context:
        msg = f"{context}\n{type(ex).__name__}: {ex}\n{tb_str}"
    else:
        msg = f"{type(ex).__name__}: {ex}\n{tb_str}"
    write_line(msg, LogLevel.ERROR)


def debug(message: str) -> None:
    write_line(message, LogLevel.DEBUG)


def info(message: str) -> None:
    write_line(message, LogLevel.INFO)


def warning(message: str) -> None:
    write_line(message, LogLevel.WARNING)


def error(message: str) -> None:
    write_line(message, LogLevel.ERROR)
