"""Shared helpers: device modes, file handling and property-list accessors."""

from __future__ import annotations

import copy
import os
import random
import re
import sys
from enum import IntEnum
from typing import Any, Callable, TextIO

from devrestore import log

FLAG_QUIT = 1

CPFM_FLAG_SECURITY_MODE = 1 << 0
CPFM_FLAG_PRODUCTION_MODE = 1 << 1

IBOOT_FLAG_IMAGE4_AWARE = 1 << 2
IBOOT_FLAG_EFFECTIVE_SECURITY_MODE = 1 << 3
IBOOT_FLAG_EFFECTIVE_PRODUCTION_MODE = 1 << 4

USER_AGENT_STRING = "InetURL/1.0"

_U64_MAX = (1 << 64) - 1
_GUID_CHARS = "ABCDEF0123456789"
_TEMP_LETTERS = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
_TEMP_ATTEMPTS = 62 * 62 * 62
_TMP_VARS = ("TMPDIR", "TMP", "TEMP", "TEMPDIR")
_IS_WINDOWS = os.name == "nt"
_PATH_SEPARATORS = ("/", "\\") if _IS_WINDOWS else ("/",)
_BACKSPACE = "\b" if _IS_WINDOWS else "\x7f"
_CANCEL_KEYS = ("\x03", "\x1b") if _IS_WINDOWS else ()


class RestoreError(Exception):
    """Raised when a restore helper cannot complete its work."""


class Mode(IntEnum):
    """The mode a device is in."""

    UNKNOWN = 0
    WTF = 1
    DFU = 2
    RECOVERY = 3
    RESTORE = 4
    NORMAL = 5
    PORTDFU = 6

    @property
    def label(self) -> str:
        return _MODE_LABELS[self]


_MODE_LABELS = {
    Mode.UNKNOWN: "Unknown",
    Mode.WTF: "WTF",
    Mode.DFU: "DFU",
    Mode.RECOVERY: "Recovery",
    Mode.RESTORE: "Restore",
    Mode.NORMAL: "Normal",
    Mode.PORTDFU: "Port DFU",
}


def _fail(message: str) -> RestoreError:
    log.error(message + "\n")
    return RestoreError(message)


def read_file(path: str | os.PathLike) -> bytes:
    """Return the whole contents of the file at ``path``."""
    log.debug(f"Reading data from {os.fspath(path)}\n")
    try:
        with open(path, "rb") as fh:
            return fh.read()
    except OSError as exc:
        raise _fail(f"read_file: cannot open {os.fspath(path)}: {exc.strerror}") from exc


def write_file(path: str | os.PathLike, data: bytes) -> int:
    """Write ``data`` to ``path`` and return the number of bytes written."""
    log.debug(f"Writing data to {os.fspath(path)}\n")
    try:
        with open(path, "wb") as fh:
            written = fh.write(data)
    except OSError as exc:
        raise _fail(f"write_file: Unable to open file {os.fspath(path)}") from exc
    if written != len(data):
        raise _fail(
            f"ERROR: Unable to write entire file: {os.fspath(path)}: {written} of {len(data)}"
        )
    return written


def generate_guid() -> str:
    """Return a random upper-case GUID string in 8-4-4-4-12 form."""
    return "".join(
        "-" if i in (8, 13, 18, 23) else random.choice(_GUID_CHARS) for i in range(36)
    )


def mkdir_with_parents(path: str | os.PathLike, mode: int = 0o755) -> None:
    """Create ``path`` and any missing parent directories; existing ones are fine."""
    path = os.fspath(path)
    try:
        os.mkdir(path, mode)
        return
    except FileExistsError:
        return
    except FileNotFoundError:
        pass
    except OSError as exc:
        raise RestoreError(f"unable to create directory {path}: {exc.strerror}") from exc

    parent = os.path.dirname(path)
    if not parent or parent in (".", path):
        raise RestoreError(f"unable to create directory {path}")
    mkdir_with_parents(parent, mode)
    try:
        os.mkdir(path, mode)
    except FileExistsError:
        pass
    except OSError as exc:
        raise RestoreError(f"unable to create directory {path}: {exc.strerror}") from exc


def _usable_dir(path: str | None) -> bool:
    return bool(path) and os.access(path, os.W_OK | os.X_OK)


def get_temp_filename(prefix: str | None = None) -> str:
    """Create an empty, uniquely named file in the temporary directory and return its path."""
    if prefix is None:
        prefix = "tmp_"
    if any(sep in prefix for sep in _PATH_SEPARATORS):
        raise ValueError(f"prefix must not contain a path separator: {prefix!r}")

    tmpdir = next((os.environ[name] for name in _TMP_VARS if name in os.environ), None)
    if not _usable_dir(tmpdir):
        tmpdir = "C:\\WINDOWS\\TEMP" if _IS_WINDOWS else "/tmp"
    if not _usable_dir(tmpdir):
        raise RestoreError("no usable temporary directory")
    if not tmpdir.endswith(_PATH_SEPARATORS):
        tmpdir += "\\" if _IS_WINDOWS else "/"

    rng = random.SystemRandom()
    for _ in range(_TEMP_ATTEMPTS):
        suffix = "".join(rng.choice(_TEMP_LETTERS) for _ in range(6))
        candidate = tmpdir + prefix + suffix
        try:
            fd = os.open(candidate, os.O_RDWR | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError:
            continue
        except OSError as exc:
            raise RestoreError(f"unable to create temporary file: {exc.strerror}") from exc
        os.close(fd)
        return candidate
    raise RestoreError("unable to create a unique temporary file")


def path_get_basename(path: str) -> str:
    """Return the part of ``path`` after the last path separator."""
    index = max(path.rfind(sep) for sep in _PATH_SEPARATORS)
    return path[index + 1 :]


def _read_key() -> str:
    if _IS_WINDOWS:
        import msvcrt

        return msvcrt.getwch()
    import termios

    fd = sys.stdin.fileno()
    old = termios.tcgetattr(fd)
    new = termios.tcgetattr(fd)
    new[3] &= ~(termios.ICANON | termios.ECHO)
    termios.tcsetattr(fd, termios.TCSANOW, new)
    try:
        return sys.stdin.read(1)
    finally:
        termios.tcsetattr(fd, termios.TCSANOW, old)


def get_user_input(
    maxlen: int,
    secure: bool = False,
    getch: Callable[[], str | None] | None = None,
    out: TextIO | None = None,
) -> str:
    """Read a line of at most ``maxlen - 1`` characters key by key, echoing ``*`` if ``secure``.

    End of input or a cancel key yields an empty string.
    """
    getch = getch or _read_key
    out = out or sys.stdout
    chars: list[str] = []
    cancelled = False
    while True:
        c = getch()
        if not c:
            cancelled = True
            break
        if c in ("\x00", "\r", "\n"):
            break
        if c in _CANCEL_KEYS:
            cancelled = True
            break
        if " " <= c <= "~":
            if len(chars) < maxlen - 1:
                chars.append(c)
            out.write("*" if secure else c)
            out.flush()
        elif c == _BACKSPACE and chars:
            out.write("\b \b")
            out.flush()
            chars.pop()
    out.write("\n")
    out.flush()
    return "" if cancelled else "".join(chars)


_STRTOULL_RE = re.compile(
    r"\s*([+-]?)(?:0[xX]([0-9a-fA-F]+)|(0[0-7]*)|([1-9][0-9]*))"
)


def _strtoull(text: str) -> int:
    match = _STRTOULL_RE.match(text)
    if not match:
        return 0
    sign, hex_digits, oct_digits, dec_digits = match.groups()
    if hex_digits is not None:
        value = int(hex_digits, 16)
    elif oct_digits is not None:
        value = int(oct_digits, 8)
    else:
        value = int(dec_digits)
    if value > _U64_MAX:
        return _U64_MAX
    if sign == "-":
        value = -value & _U64_MAX
    return value


def plist_dict_get_uint(d: dict, key: str) -> int:
    """Read ``d[key]`` as an unsigned integer from an integer, numeric string or little-endian data."""
    node = d.get(key)
    if node is None or isinstance(node, bool):
        return 0
    if isinstance(node, int):
        return node
    if isinstance(node, str):
        return _strtoull(node)
    if isinstance(node, (bytes, bytearray)):
        if len(node) in (1, 2, 4, 8):
            return int.from_bytes(node, "little")
        log.error(
            f"plist_dict_get_uint: ERROR: invalid size {len(node)} "
            "for data to integer conversion\n"
        )
    return 0


def plist_dict_get_bool(d: dict, key: str) -> bool:
    """Read ``d[key]`` as a boolean from a boolean, integer, string or one byte of data."""
    node = d.get(key)
    if node is None:
        return False
    if isinstance(node, bool):
        return node
    if isinstance(node, int):
        return bool(node & 0xFF)
    if isinstance(node, str):
        # Every string except the literal "true" counts as set.
        return node != "true"
    if isinstance(node, (bytes, bytearray)):
        if len(node) == 1:
            return bool(node[0])
        log.error(
            f"plist_dict_get_bool: ERROR: invalid size {len(node)} "
            "for data to boolean conversion\n"
        )
    return False


def _source_key(key: str, alt_source_key: str | None) -> str:
    return alt_source_key if alt_source_key is not None else key


def plist_dict_copy_uint(
    target: dict, source: dict, key: str, alt_source_key: str | None = None
) -> None:
    """Copy an unsigned integer into ``target[key]``; raises KeyError if the source lacks it."""
    skey = _source_key(key, alt_source_key)
    if skey not in source:
        raise KeyError(skey)
    target[key] = plist_dict_get_uint(source, skey)


def plist_dict_copy_bool(
    target: dict, source: dict, key: str, alt_source_key: str | None = None
) -> None:
    """Copy a boolean into ``target[key]``; raises KeyError if the source lacks it."""
    skey = _source_key(key, alt_source_key)
    if skey not in source:
        raise KeyError(skey)
    target[key] = plist_dict_get_bool(source, skey)


def plist_dict_copy_data(
    target: dict, source: dict, key: str, alt_source_key: str | None = None
) -> None:
    """Copy a data item into ``target[key]``; raises KeyError or TypeError otherwise."""
    skey = _source_key(key, alt_source_key)
    if skey not in source:
        raise KeyError(skey)
    node = source[skey]
    if not isinstance(node, (bytes, bytearray)):
        raise TypeError(f"{skey} is not data")
    target[key] = bytes(node)


def plist_dict_copy_string(
    target: dict, source: dict, key: str, alt_source_key: str | None = None
) -> None:
    """Copy a string item into ``target[key]``; raises KeyError or TypeError otherwise."""
    skey = _source_key(key, alt_source_key)
    if skey not in source:
        raise KeyError(skey)
    node = source[skey]
    if not isinstance(node, str):
        raise TypeError(f"{skey} is not a string")
    target[key] = node


def plist_dict_copy_item(
    target: dict, source: dict, key: str, alt_source_key: str | None = None
) -> None:
    """Copy any item deeply into ``target[key]``; raises KeyError if the source lacks it."""
    skey = _source_key(key, alt_source_key)
    if skey not in source:
        raise KeyError(skey)
    target[key] = copy.deepcopy(source[skey])