"""Assembly of Ace3 (USB port controller) firmware images from UARP super-binaries."""

from __future__ import annotations

import plistlib
import struct
from datetime import datetime, timedelta, timezone
from typing import Any
from xml.parsers.expat import ExpatError

from devrestore import log
from devrestore.common import RestoreError

ACE3_MAGIC = 0xACE00003
ACE3_HEADER_SIZE = 0x40
TICKET_KEY = "USBPortController1,Ticket"
MANIFEST_PREFIX = "USBPortController"

_CRC_POLY = 0x04C11DB7
_U32_MASK = 0xFFFFFFFF

_UARP_HEADER = struct.Struct(">11I")
# this_size, fourcc, index, five unknown words, offset, size
_TOC_ENTRY = struct.Struct(">I4s8I")
_ACE3_HEADER = struct.Struct("<10I3Q")
_FILL = 0xFFFFFFFFFFFFFFFF

_NS_EPOCH = datetime(2001, 1, 1, tzinfo=timezone.utc)
_DICT_CLASSES = {"NSDictionary", "NSMutableDictionary"}
_LIST_CLASSES = {
    "NSArray",
    "NSMutableArray",
    "NSSet",
    "NSMutableSet",
    "NSOrderedSet",
    "NSMutableOrderedSet",
}
_STRING_CLASSES = {"NSString", "NSMutableString"}
_DATA_CLASSES = {"NSData", "NSMutableData"}
_DATE_CLASSES = {"NSDate"}


class Ace3Error(RestoreError):
    """Raised when an Ace3 image cannot be built from the given firmware."""


def _fail(message: str) -> Ace3Error:
    log.error(message + "\n")
    return Ace3Error(message)


def _reverse8(value: int) -> int:
    return int(f"{value:08b}"[::-1], 2)


def _make_table() -> tuple[int, ...]:
    table = []
    for index in range(256):
        reg = index << 24
        for _ in range(8):
            reg = ((reg << 1) ^ _CRC_POLY) if reg & 0x80000000 else (reg << 1)
            reg &= _U32_MASK
        table.append(reg)
    return tuple(table)


_CRC_TABLE = _make_table()
_REVERSED = tuple(_reverse8(i) for i in range(256))


def crc_buffer(buffer: bytes | None, salt: int = 0xFFFFFFFF) -> int:
    """Compute the Ace3 image checksum over ``buffer`` starting from ``salt``.

    The register shifts most significant bit first with polynomial 0x04C11DB7
    while each input byte is fed least significant bit first.
    """
    if buffer is None:
        return 0xFFFFFFFF
    reg = salt & _U32_MASK
    for byte in bytes(buffer):
        reg = ((reg << 8) & _U32_MASK) ^ _CRC_TABLE[(reg >> 24) ^ _REVERSED[byte]]
    return reg


class _KeyedArchiveDecoder:
    def __init__(self, objects: list) -> None:
        self._objects = objects
        self._cache: dict[int, Any] = {}

    def _lookup(self, uid: plistlib.UID) -> Any:
        index = uid.data
        if not 0 <= index < len(self._objects):
            raise Ace3Error(f"keyed archive reference {index} out of range")
        return self._objects[index]

    def _class_name(self, ref: Any) -> str | None:
        if not isinstance(ref, plistlib.UID):
            return None
        cls = self._lookup(ref)
        if isinstance(cls, dict):
            name = cls.get("$classname")
            return name if isinstance(name, str) else None
        return None

    def decode(self, value: Any) -> Any:
        if isinstance(value, plistlib.UID):
            index = value.data
            if index in self._cache:
                return self._cache[index]
            return self._decode_object(index, self._lookup(value))
        if isinstance(value, list):
            return [self.decode(item) for item in value]
        if isinstance(value, dict):
            return {key: self.decode(item) for key, item in value.items()}
        return value

    def _decode_object(self, index: int, obj: Any) -> Any:
        if obj == "$null":
            return None
        if not (isinstance(obj, dict) and "$class" in obj):
            result = self.decode(obj)
            self._cache[index] = result
            return result

        name = self._class_name(obj["$class"])
        if name in _DICT_CLASSES:
            result: Any = {}
            self._cache[index] = result
            keys = obj.get("NS.keys", [])
            values = obj.get("NS.objects", [])
            for key, item in zip(keys, values):
                result[self.decode(key)] = self.decode(item)
            return result
        if name in _LIST_CLASSES:
            result = []
            self._cache[index] = result
            result.extend(self.decode(item) for item in obj.get("NS.objects", []))
            return result
        if name in _STRING_CLASSES:
            result = self.decode(obj.get("NS.string", ""))
        elif name in _DATA_CLASSES:
            result = bytes(self.decode(obj.get("NS.data", b"")))
        elif name in _DATE_CLASSES:
            result = _NS_EPOCH + timedelta(seconds=float(obj.get("NS.time", 0.0)))
        else:
            result = {}
            self._cache[index] = result
            result.update(
                (key, self.decode(item)) for key, item in obj.items() if key != "$class"
            )
            return result
        self._cache[index] = result
        return result


def decode_keyed_archive(data: bytes) -> Any:
    """Turn an NSKeyedArchiver property list into plain Python objects."""
    try:
        archive = plistlib.loads(bytes(data))
    except (
        plistlib.InvalidFileException,
        ValueError,
        TypeError,
        KeyError,
        IndexError,
        OverflowError,
        struct.error,
        ExpatError,
    ) as exc:
        raise Ace3Error(f"invalid keyed archive: {exc}") from exc
    if not isinstance(archive, dict):
        raise Ace3Error("keyed archive is not a dictionary")
    objects = archive.get("$objects")
    top = archive.get("$top")
    if not isinstance(objects, list) or not isinstance(top, dict):
        raise Ace3Error("keyed archive lacks $objects or $top")
    root = top["root"] if "root" in top else next(iter(top.values()), None)
    return _KeyedArchiveDecoder(objects).decode(root)


def _uint(value: Any) -> int:
    return value if isinstance(value, int) and not isinstance(value, bool) else 0


def _select_payloads(manifest: Any, bdid: int, prev: int) -> tuple[str | None, str | None]:
    payload_4cc = None
    payload_tags = None
    payloads = manifest.get("SuperBinary Payloads") if isinstance(manifest, dict) else None
    if not isinstance(payloads, list):
        return None, None
    for payload in payloads:
        if payload is None:
            break
        if not isinstance(payload, dict):
            continue
        meta = payload.get("Payload MetaData")
        if not isinstance(meta, dict):
            continue
        if meta.get("Personalization Manifest Prefix") != MANIFEST_PREFIX:
            continue
        boardid = meta.get("Personalization Board ID (64 bits)")
        if not isinstance(boardid, int) or isinstance(boardid, bool):
            continue
        if boardid != bdid:
            continue
        fourcc = payload.get("Payload 4CC")
        payload_4cc = fourcc if isinstance(fourcc, str) else None
        matching = meta.get("Personalization Matching Data")
        if isinstance(matching, list):
            for match in matching:
                if not isinstance(match, dict):
                    break
                minrev = _uint(match.get("Personalization Matching Data Product Revision Minimum"))
                maxrev = _uint(match.get("Personalization Matching Data Product Revision Maximum"))
                if minrev <= prev <= maxrev:
                    tags = match.get("Personalization Matching Data Payload Tags")
                    payload_tags = tags if isinstance(tags, str) else None
                    break
        break
    return payload_4cc, payload_tags


def _tag_matches(fourcc: bytes, tag: str) -> bool:
    wanted = tag.encode("latin-1", "replace")[:4]
    return fourcc.split(b"\0", 1)[0] == wanted.split(b"\0", 1)[0]


def _blob(uarp_fw: bytes, offset: int, size: int, what: str) -> bytes:
    if offset + size > len(uarp_fw):
        raise _fail(f"ERROR: {what} payload lies outside the firmware")
    return uarp_fw[offset : offset + size]


def create_binary(uarp_fw: bytes, bdid: int, prev: int, tss: dict | None) -> bytes:
    """Build the personalised Ace3 image for board ``bdid`` at revision ``prev``."""
    uarp_fw = bytes(uarp_fw)
    ticket = (tss or {}).get(TICKET_KEY)
    im4m = bytes(ticket) if isinstance(ticket, (bytes, bytearray)) else b""

    if len(uarp_fw) < _UARP_HEADER.size:
        raise _fail("ERROR: UARP data too short")
    header = _UARP_HEADER.unpack_from(uarp_fw, 0)
    uarp_hdr_size, plist_offset = header[1], header[2]
    toc_size = header[10]
    if plist_offset > len(uarp_fw):
        raise _fail("ERROR: UARP plist offset beyond end of data")

    manifest = decode_keyed_archive(uarp_fw[plist_offset:])
    payload_4cc, payload_tags = _select_payloads(manifest, bdid, prev)
    if payload_4cc is None:
        raise _fail("Failed to get payload 4cc")
    if payload_tags is None:
        raise _fail("Failed to get data payload 4ccs")

    dl = data1 = data2 = (0, 0)
    position = uarp_hdr_size
    while position < toc_size:
        if position + _TOC_ENTRY.size > len(uarp_fw):
            raise _fail("ERROR: UARP table of contents runs past end of data")
        this_size, fourcc, *_unknown, offset, size = _TOC_ENTRY.unpack_from(uarp_fw, position)
        if this_size == 0:
            raise _fail("ERROR: UARP table of contents entry has zero size")
        if _tag_matches(fourcc, payload_4cc):
            dl = (offset, size)
        elif _tag_matches(fourcc, payload_tags):
            data1 = (offset, size)
        elif _tag_matches(fourcc, payload_tags[5:]):
            data2 = (offset, size)
        position += this_size

    data1_blob = _blob(uarp_fw, *data1, "data1")
    data2_blob = _blob(uarp_fw, *data2, "data2")
    dl_blob = _blob(uarp_fw, *dl, "dl")
    content = data1_blob + data2_blob + im4m + dl_blob

    crc = crc_buffer(content, 0xFFFFFFFF)
    hdr = _ACE3_HEADER.pack(
        ACE3_MAGIC,
        0x00203400,
        0x00002800,
        ACE3_HEADER_SIZE,
        len(data1_blob),
        len(data2_blob),
        ACE3_HEADER_SIZE + len(data1_blob) + len(data2_blob),
        (len(im4m) + len(dl_blob)) & _U32_MASK,
        len(content) & _U32_MASK,
        crc,
        _FILL,
        _FILL,
        _FILL,
    )
    return hdr + content