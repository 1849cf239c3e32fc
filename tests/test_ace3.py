import plistlib
import struct
from datetime import datetime, timezone

import pytest

from devrestore.ace3 import Ace3Error, create_binary, crc_buffer, decode_keyed_archive

BDID = 0x26
PREV = 3
DATA1 = b"first-data-payload"
DATA2 = b"second-data"
DL = b"download-payload-bytes"
TICKET = b"IM4M-ticket-bytes"


def _archive(root):
    objects = ["$null"]
    classes = {}

    def cls(name):
        if name not in classes:
            objects.append({"$classname": name, "$classes": [name, "NSObject"]})
            classes[name] = plistlib.UID(len(objects) - 1)
        return classes[name]

    def add(obj):
        if isinstance(obj, dict):
            slot = len(objects)
            objects.append(None)
            keys = [add(k) for k in obj]
            values = [add(v) for v in obj.values()]
            objects[slot] = {"NS.keys": keys, "NS.objects": values, "$class": cls("NSDictionary")}
            return plistlib.UID(slot)
        if isinstance(obj, list):
            slot = len(objects)
            objects.append(None)
            items = [add(v) for v in obj]
            objects[slot] = {"NS.objects": items, "$class": cls("NSArray")}
            return plistlib.UID(slot)
        objects.append(obj)
        return plistlib.UID(len(objects) - 1)

    top = add(root)
    return plistlib.dumps(
        {
            "$archiver": "NSKeyedArchiver",
            "$version": 100000,
            "$top": {"root": top},
            "$objects": objects,
        },
        fmt=plistlib.FMT_BINARY,
    )


def _manifest(bdid=BDID, minrev=1, maxrev=5):
    return {
        "SuperBinary Payloads": [
            {
                "Payload 4CC": "XX01",
                "Payload MetaData": {"Personalization Manifest Prefix": "Other"},
            },
            {
                "Payload 4CC": "PT01",
                "Payload MetaData": {
                    "Personalization Manifest Prefix": "USBPortController",
                    "Personalization Board ID (64 bits)": bdid,
                    "Personalization Matching Data": [
                        {
                            "Personalization Matching Data Product Revision Minimum": minrev,
                            "Personalization Matching Data Product Revision Maximum": maxrev,
                            "Personalization Matching Data Payload Tags": "PD01,PD02",
                        }
                    ],
                },
            },
        ]
    }


def _build_uarp(manifest):
    blobs = [(b"PD02", DATA2), (b"PT01", DL), (b"ZZ99", b"ignored"), (b"PD01", DATA1)]
    toc_end = 0x2C + 0x28 * len(blobs)
    offset = toc_end
    toc = b""
    body = b""
    for index, (tag, data) in enumerate(blobs):
        toc += struct.pack(">I4s8I", 0x28, tag, index, 0, 0, 0, 0, 0, offset, len(data))
        body += data
        offset += len(data)
    header = struct.pack(">11I", 2, 0x2C, offset, 0, 0, 0, 0, 0, 0, 0x2C, toc_end)
    return header + toc + body + _archive(manifest)


def test_crc_of_nothing_is_salt():
    assert crc_buffer(b"", 0x12345678) == 0x12345678


def test_crc_of_none():
    assert crc_buffer(None, 0) == 0xFFFFFFFF


def test_crc_of_zero_bytes_from_zero_is_zero():
    assert crc_buffer(bytes(32), 0) == 0


def test_crc_chains():
    first, second = b"hello ", b"world"
    assert crc_buffer(first + second, 0xFFFFFFFF) == crc_buffer(
        second, crc_buffer(first, 0xFFFFFFFF)
    )


def test_crc_detects_change():
    assert crc_buffer(b"abcd") != crc_buffer(b"abce")


def test_decode_keyed_archive_round_trip():
    value = {"name": "ace", "items": [1, 2, {"nested": True}], "blob": b"\x00\x01"}
    assert decode_keyed_archive(_archive(value)) == value


def test_decode_keyed_archive_special_classes():
    objects = [
        "$null",
        {
            "NS.keys": [plistlib.UID(2), plistlib.UID(3), plistlib.UID(5), plistlib.UID(7)],
            "NS.objects": [plistlib.UID(4), plistlib.UID(0), plistlib.UID(6), plistlib.UID(8)],
            "$class": plistlib.UID(9),
        },
        "text",
        "missing",
        {"NS.string": "hello", "$class": plistlib.UID(10)},
        "raw",
        {"NS.data": b"\x01\x02", "$class": plistlib.UID(11)},
        "when",
        {"NS.time": 0.0, "$class": plistlib.UID(12)},
        {"$classname": "NSMutableDictionary"},
        {"$classname": "NSMutableString"},
        {"$classname": "NSMutableData"},
        {"$classname": "NSDate"},
    ]
    data = plistlib.dumps(
        {"$archiver": "NSKeyedArchiver", "$top": {"root": plistlib.UID(1)}, "$objects": objects},
        fmt=plistlib.FMT_BINARY,
    )
    assert decode_keyed_archive(data) == {
        "text": "hello",
        "missing": None,
        "raw": b"\x01\x02",
        "when": datetime(2001, 1, 1, tzinfo=timezone.utc),
    }


def test_decode_keyed_archive_rejects_garbage():
    with pytest.raises(Ace3Error):
        decode_keyed_archive(b"not a plist at all")


def test_decode_keyed_archive_requires_objects():
    data = plistlib.dumps({"$top": {"root": 1}}, fmt=plistlib.FMT_BINARY)
    with pytest.raises(Ace3Error):
        decode_keyed_archive(data)


def test_create_binary_layout():
    result = create_binary(_build_uarp(_manifest()), BDID, PREV, {"USBPortController1,Ticket": TICKET})
    fields = struct.unpack_from("<10I3Q", result, 0)
    magic, unk4, unk8, hdr_size, d1, d2, im4m_off, im4m_dl, content_size, crc = fields[:10]
    assert magic == 0xACE00003
    assert unk4 == 0x00203400
    assert unk8 == 0x00002800
    assert hdr_size == 0x40
    assert d1 == len(DATA1)
    assert d2 == len(DATA2)
    assert im4m_off == 0x40 + len(DATA1) + len(DATA2)
    assert im4m_dl == len(TICKET) + len(DL)
    assert content_size == len(result) - 0x40
    assert result[40:64] == b"\xff" * 24
    assert result[0x40:] == DATA1 + DATA2 + TICKET + DL
    assert crc == crc_buffer(result[0x40:], 0xFFFFFFFF)


def test_create_binary_without_ticket():
    result = create_binary(_build_uarp(_manifest()), BDID, PREV, {})
    assert result[0x40:] == DATA1 + DATA2 + DL


def test_create_binary_unknown_board():
    with pytest.raises(Ace3Error):
        create_binary(_build_uarp(_manifest()), BDID + 1, PREV, {})


def test_create_binary_revision_out_of_range():
    with pytest.raises(Ace3Error):
        create_binary(_build_uarp(_manifest(minrev=4, maxrev=5)), BDID, PREV, {})


def test_create_binary_bad_archive():
    uarp = _build_uarp(_manifest())
    plist_offset = struct.unpack_from(">I", uarp, 8)[0]
    broken = uarp[:plist_offset] + b"garbage"
    with pytest.raises(Ace3Error):
        create_binary(broken, BDID, PREV, {})


def test_create_binary_too_short():
    with pytest.raises(Ace3Error):
        create_binary(b"\x00" * 8, BDID, PREV, {})