"""Reading, editing and writing of the ftab firmware container format."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import Union

from devrestore import log

HEADER_SIZE = 48
ENTRY_SIZE = 16
FTAB_MAGIC = int.from_bytes(b"ftab", "big")

_HEADER_LE = struct.Struct("<II")
_COUNT = struct.Struct("<I")
_ENTRY_LE = struct.Struct("<II")
_BE32 = struct.Struct(">I")

Tag = Union[int, str, bytes]


class FtabError(ValueError):
    """Raised when ftab data cannot be parsed."""


def _tag_value(tag: Tag) -> int:
    if isinstance(tag, str):
        tag = tag.encode("ascii")
    if isinstance(tag, (bytes, bytearray)):
        if len(tag) != 4:
            raise ValueError(f"a tag must be four bytes long: {tag!r}")
        return int.from_bytes(tag, "big")
    if not 0 <= tag <= 0xFFFFFFFF:
        raise ValueError(f"tag out of range: {tag:#x}")
    return tag


def _tag_text(tag: int) -> str:
    return tag.to_bytes(4, "big").decode("latin-1")


@dataclass
class FtabEntry:
    """One tagged blob in an ftab container."""

    tag: int
    offset: int
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def name(self) -> str:
        """The tag as four characters."""
        return _tag_text(self.tag)


@dataclass
class Ftab:
    """An ftab container: header values and a list of entries."""

    tag: int
    always_01: int = 1
    always_ff: int = 0xFFFFFFFF
    magic: int = FTAB_MAGIC
    entries: list[FtabEntry] = field(default_factory=list)

    def get_entry(self, tag: Tag) -> bytes:
        """Return the data of the last entry with ``tag``; raises KeyError if there is none."""
        value = _tag_value(tag)
        if not value:
            raise ValueError("tag must not be zero")
        found = None
        for entry in self.entries:
            if entry.tag == value:
                found = entry.data
        if found is None:
            raise KeyError(_tag_text(value))
        return found

    def add_entry(self, tag: Tag, data: bytes) -> None:
        """Append an entry and lay all entry offsets out one after another."""
        value = _tag_value(tag)
        if not value:
            raise ValueError("tag must not be zero")
        if not data:
            raise ValueError("entry data must not be empty")
        self.entries.append(FtabEntry(value, 0, bytes(data)))
        offset = HEADER_SIZE + ENTRY_SIZE * len(self.entries)
        for entry in self.entries:
            entry.offset = offset
            offset += entry.size

    def to_bytes(self) -> bytes:
        """Serialise the container; entry offsets are written as stored."""
        out = bytearray(HEADER_SIZE)
        _HEADER_LE.pack_into(out, 0, self.always_01, self.always_ff)
        _BE32.pack_into(out, 32, self.tag)
        _BE32.pack_into(out, 36, self.magic)
        _COUNT.pack_into(out, 40, len(self.entries))
        for entry in self.entries:
            out += _BE32.pack(entry.tag)
            out += _ENTRY_LE.pack(entry.offset, entry.size)
            out += bytes(4)
        for entry in self.entries:
            out += entry.data
        return bytes(out)


def _fail(message: str) -> FtabError:
    log.error(f"ERROR: parse_ftab: {message}\n")
    return FtabError(message)


def parse_ftab(data: bytes) -> Ftab:
    """Parse an ftab container from ``data``."""
    if not data:
        raise FtabError("no ftab data")
    if len(data) < HEADER_SIZE:
        raise _fail("Buffer too small for ftab data")
    magic = _BE32.unpack_from(data, 36)[0]
    if magic != FTAB_MAGIC:
        raw = int.from_bytes(data[36:40], "little")
        raise _fail(f"Unexpected magic value 0x{raw:08x}")

    always_01, always_ff = _HEADER_LE.unpack_from(data, 0)
    tag = _BE32.unpack_from(data, 32)[0]
    count = _COUNT.unpack_from(data, 40)[0]
    if HEADER_SIZE + ENTRY_SIZE * count > len(data):
        raise _fail("Buffer too small for ftab entries")

    entries = []
    for index in range(count):
        pos = HEADER_SIZE + ENTRY_SIZE * index
        entry_tag = _BE32.unpack_from(data, pos)[0]
        offset, size = _ENTRY_LE.unpack_from(data, pos + 4)
        if offset + size > len(data):
            raise _fail(f"entry {_tag_text(entry_tag)!r} lies outside the buffer")
        entries.append(FtabEntry(entry_tag, offset, bytes(data[offset : offset + size])))

    return Ftab(tag=tag, always_01=always_01, always_ff=always_ff, magic=magic, entries=entries)