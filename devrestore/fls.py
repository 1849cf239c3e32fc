"""Support for the element-based .fls firmware format found in baseband bundles."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import Callable

from devrestore import log

ELEMENT_0C = 0x0C
ELEMENT_10 = 0x10
ELEMENT_14 = 0x14

# Number of header words after type, size and empty for each known element type.
_EXTRA_WORDS = {ELEMENT_0C: 7, ELEMENT_10: 3, ELEMENT_14: 3}
_DATA_SIZE_INDEX = {ELEMENT_0C: 4, ELEMENT_10: 0, ELEMENT_14: 0}
_OFFSET_INDEX = {ELEMENT_0C: 6, ELEMENT_10: 2, ELEMENT_14: 2}

_U32 = struct.Struct("<I")
_SIG_FIELDS = struct.Struct("<II")


class FlsError(ValueError):
    """Raised when fls data is malformed or cannot be modified."""


def _fail(func: str, message: str) -> FlsError:
    log.error(f"ERROR: {func}: {message}\n")
    return FlsError(message)


@dataclass
class FlsElement:
    """One element: its type, header words and payload."""

    element_type: int
    empty: int = 0
    fields: list[int] = field(default_factory=list)
    data: bytes = b""

    def __post_init__(self) -> None:
        wanted = _EXTRA_WORDS.get(self.element_type, 0)
        if len(self.fields) > wanted:
            raise ValueError(
                f"element type {self.element_type:#x} takes {wanted} header words"
            )
        self.fields = list(self.fields) + [0] * (wanted - len(self.fields))

    @property
    def header_size(self) -> int:
        return 12 + 4 * len(self.fields)

    @property
    def size(self) -> int:
        return self.header_size + len(self.data)

    @property
    def data_size(self) -> int | None:
        """The data size recorded in the header, for element types that carry one."""
        index = _DATA_SIZE_INDEX.get(self.element_type)
        return None if index is None else self.fields[index]

    @data_size.setter
    def data_size(self, value: int) -> None:
        index = _DATA_SIZE_INDEX.get(self.element_type)
        if index is None:
            raise AttributeError(f"element type {self.element_type:#x} has no data size")
        self.fields[index] = value & 0xFFFFFFFF

    @property
    def offset(self) -> int | None:
        """The absolute file offset of the payload, for element types that carry one."""
        index = _OFFSET_INDEX.get(self.element_type)
        return None if index is None else self.fields[index]

    @offset.setter
    def offset(self, value: int) -> None:
        index = _OFFSET_INDEX.get(self.element_type)
        if index is None:
            raise AttributeError(f"element type {self.element_type:#x} has no offset")
        self.fields[index] = value & 0xFFFFFFFF

    def to_bytes(self) -> bytes:
        words = (self.element_type, self.size, self.empty, *self.fields)
        return struct.pack(f"<{len(words)}I", *words) + self.data


@dataclass
class FlsFile:
    """A parsed .fls file as a list of elements."""

    elements: list[FlsElement] = field(default_factory=list)

    @property
    def data(self) -> bytes:
        return b"".join(element.to_bytes() for element in self.elements)

    @property
    def size(self) -> int:
        return sum(element.size for element in self.elements)

    @property
    def c_element(self) -> FlsElement | None:
        """The last element of type 0x0c, which holds the signed data."""
        found = None
        for element in self.elements:
            if element.element_type == ELEMENT_0C:
                found = element
        return found

    def _require_c_element(self, func: str) -> FlsElement:
        if not self.elements:
            raise _fail(func, "no data")
        c_element = self.c_element
        if c_element is None:
            raise _fail(func, "no fls_0c_element in fls data")
        return c_element

    def _relayout(self, rewrite: Callable[[FlsElement], None]) -> None:
        position = 0
        for element in self.elements:
            if element.offset is not None:
                element.offset = position + element.header_size
            if element.element_type == ELEMENT_0C:
                rewrite(element)
            position += element.size

    def update_sig_blob(self, sigdata: bytes) -> None:
        """Replace the signature blob at the end of the 0x0c element's data."""
        func = "update_sig_blob"
        c_element = self._require_c_element(func)
        if len(c_element.data) < _SIG_FIELDS.size + 0x10:
            raise _fail(func, "signed data too short")
        datasize, sigoffset = _SIG_FIELDS.unpack_from(c_element.data, 0x10)
        if datasize != c_element.data_size:
            raise _fail(
                func, f"data size mismatch (0x{datasize:x} != 0x{c_element.data_size:x})"
            )
        if sigoffset > datasize:
            raise _fail(
                func,
                f"signature offset greater than data size (0x{sigoffset:x} > 0x{datasize:x})",
            )
        oldsiglen = datasize - sigoffset
        sigdata = bytes(sigdata)

        for element in self.elements:
            if element.element_type != ELEMENT_0C:
                continue
            firstpart = len(element.data) - oldsiglen
            if firstpart < 0 or firstpart + len(sigdata) < 0x14:
                raise _fail(func, "element too short for signature replacement")

        def rewrite(element: FlsElement) -> None:
            element.data_size = element.data_size - oldsiglen + len(sigdata)
            body = bytearray(element.data[: len(element.data) - oldsiglen] + sigdata)
            body[0x10:0x14] = _U32.pack(element.data_size)
            element.data = bytes(body)

        self._relayout(rewrite)

    def insert_ticket(self, ticket: bytes) -> None:
        """Put ``ticket``, padded with 0xFF to four bytes, in front of the 0x0c element's data."""
        self._require_c_element("insert_ticket")
        ticket = bytes(ticket)
        padded = ticket + b"\xff" * (-len(ticket) % 4)

        def rewrite(element: FlsElement) -> None:
            element.data = padded + element.data
            element.data_size = element.data_size + len(padded)

        self._relayout(rewrite)


def parse_fls(data: bytes) -> FlsFile:
    """Split ``data`` into its elements."""
    view = bytes(data)
    elements = []
    position = 0
    while position < len(view):
        if position + 8 > len(view):
            break
        element_type, size = struct.unpack_from("<II", view, position)
        if position + size > len(view):
            break
        words = _EXTRA_WORDS.get(element_type, 0)
        header_size = 12 + 4 * words
        if size < header_size:
            break
        empty, *fields = struct.unpack_from(f"<{1 + words}I", view, position + 8)
        elements.append(
            FlsElement(element_type, empty, fields, view[position + header_size : position + size])
        )
        position += size
    if position != len(view):
        raise _fail("parse_fls", "error parsing elements")
    return FlsFile(elements)