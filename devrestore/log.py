"""Console output for informational, error and debug messages."""

from __future__ import annotations

import plistlib
import sys
from dataclasses import dataclass
from typing import Any, TextIO

MAX_PRINT_LEN = 64 * 1024
_ERROR_BUFFER_SIZE = 256


@dataclass
class _LogState:
    info_stream: TextIO | None = None
    error_stream: TextIO | None = None
    debug_stream: TextIO | None = None
    info_disabled: bool = False
    error_disabled: bool = False
    debug_disabled: bool = False
    level: int = 0
    last_error: str = ""


_state = _LogState()


def info(message: str) -> None:
    """Write an informational message (stdout unless redirected)."""
    if _state.info_disabled:
        return
    (_state.info_stream or sys.stdout).write(message)


def error(message: str) -> None:
    """Record ``message`` as the last error and write it (stderr unless redirected)."""
    _state.last_error = message[: _ERROR_BUFFER_SIZE - 1]
    if not _state.error_disabled:
        (_state.error_stream or sys.stderr).write(message)


def debug(message: str) -> None:
    """Write a debug message if debugging is enabled."""
    if _state.debug_disabled or not _state.level:
        return
    (_state.debug_stream or sys.stderr).write(message)


def set_debug_level(level: int) -> None:
    """Set the debug level; zero turns debug output off."""
    _state.level = int(level)


def debug_level() -> int:
    """Return the current debug level."""
    return _state.level


def set_info_stream(stream: TextIO | None) -> None:
    """Redirect informational output to ``stream``; ``None`` silences it."""
    if stream is not None:
        _state.info_disabled = False
        _state.info_stream = stream
    else:
        _state.info_disabled = True


def set_error_stream(stream: TextIO | None) -> None:
    """Redirect error output to ``stream``; ``None`` silences it."""
    if stream is not None:
        _state.error_disabled = False
        _state.error_stream = stream
    else:
        _state.error_disabled = True


def set_debug_stream(stream: TextIO | None) -> None:
    """Redirect debug output to ``stream``; ``None`` silences it."""
    if stream is not None:
        _state.debug_disabled = False
        _state.debug_stream = stream
    else:
        _state.debug_disabled = True


def get_last_error() -> str | None:
    """Return the first line of the last error message, or ``None`` if there was none."""
    if not _state.last_error:
        return None
    return _state.last_error.split("\n", 1)[0]


def debug_plist(plist: Any) -> None:
    """Print a property list as XML, unless it is too large to be useful."""
    data = plistlib.dumps(plist, fmt=plistlib.FMT_XML)
    if len(data) <= MAX_PRINT_LEN:
        info(f"debug_plist: printing {len(data)} bytes plist:\n{data.decode('utf-8')}")
    else:
        info(f"debug_plist: suppressed printing {len(data)} bytes plist...\n")


def print_progress_bar(progress: float) -> None:
    """Draw a 50 column progress bar for a percentage between 0 and 100."""
    if _state.info_disabled or progress < 0:
        return
    progress = min(progress, 100.0)
    bar = "".join("=" if i < progress / 2 else " " for i in range(50))
    info(f"\r[{bar}] {progress:5.1f}%")
    if progress >= 100:
        info("\n")
    (_state.info_stream or sys.stdout).flush()