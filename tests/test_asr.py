import hashlib
import io
import plistlib
from unittest import mock

import pytest

from devrestore import asr
from devrestore.asr import AsrClient, AsrError, open_with_timeout


class FakeConnection:
    def __init__(self, incoming=(), short_send=False):
        self.incoming = list(incoming)
        self.sent = []
        self.short_send = short_send
        self.closed = False

    def send(self, data):
        self.sent.append(bytes(data))
        return len(data) - 1 if self.short_send else len(data)

    def receive(self, max_size):
        if not self.incoming:
            return b""
        item = self.incoming.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def close(self):
        self.closed = True


class FakeDevice:
    def __init__(self, connection, failures=0):
        self.connection = connection
        self.failures = failures
        self.ports = []

    def connect(self, port):
        self.ports.append(port)
        if self.failures:
            self.failures -= 1
            raise OSError("refused")
        return self.connection


def xml(obj):
    return plistlib.dumps(obj, fmt=plistlib.FMT_XML)


def test_open_reads_initiate_and_checksum_flag():
    conn = FakeConnection([xml({"Command": "Initiate", "Checksum Chunks": True})])
    client = open_with_timeout(FakeDevice(conn))
    assert client.checksum_chunks is True
    assert client.connection is conn


def test_open_uses_asr_port():
    device = FakeDevice(FakeConnection([xml({"Command": "Initiate"})]))
    client = open_with_timeout(device)
    assert device.ports == [12345]
    assert client.checksum_chunks is False


def test_open_rejects_unexpected_command():
    conn = FakeConnection([xml({"Command": "Other"})])
    with pytest.raises(AsrError):
        open_with_timeout(FakeDevice(conn))
    assert conn.closed


def test_open_without_device_raises():
    with pytest.raises(AsrError):
        open_with_timeout(None)


@mock.patch("devrestore.asr.time.sleep")
def test_open_retries_connection(sleep):
    device = FakeDevice(FakeConnection([xml({"Command": "Initiate"})]), failures=3)
    open_with_timeout(device)
    assert len(device.ports) == 4
    assert sleep.call_count == 3


@mock.patch("devrestore.asr.time.sleep")
def test_open_gives_up_after_ten_attempts(sleep):
    device = FakeDevice(FakeConnection(), failures=100)
    with pytest.raises(AsrError):
        open_with_timeout(device)
    assert len(device.ports) == 10


def test_send_and_receive_round_trip():
    conn = FakeConnection([xml({"Command": "Payload"})])
    client = AsrClient(conn)
    client.send({"Key": 7})
    assert plistlib.loads(conn.sent[0]) == {"Key": 7}
    assert client.receive() == {"Command": "Payload"}


def test_receive_garbage_yields_none():
    client = AsrClient(FakeConnection([b"not a plist"]))
    assert client.receive() is None


def test_receive_error_raises():
    client = AsrClient(FakeConnection([OSError("gone")]))
    with pytest.raises(AsrError):
        client.receive()


def test_short_send_raises():
    client = AsrClient(FakeConnection(short_send=True))
    with pytest.raises(AsrError):
        client.send_buffer(b"abc")


def test_perform_validation_sends_packet_info_and_oob_data():
    conn = FakeConnection(
        [xml({"Command": "OOBData", "OOB Offset": 2, "OOB Length": 3}), xml({"Command": "Payload"})]
    )
    client = AsrClient(conn)
    client.perform_validation(io.BytesIO(b"abcdefgh"))
    info = plistlib.loads(conn.sent[0])
    assert info["Payload"] == {"Port": 1, "Size": 8}
    assert info["FEC Slice Stride"] == 40
    assert info["Packets Per FEC"] == 25
    assert info["Packet Payload Size"] == 1450
    assert info["Stream ID"] == 1 and info["Version"] == 1
    assert "Checksum Chunk Size" not in info
    assert conn.sent[1] == b"cde"
    assert len(conn.sent) == 2


def test_perform_validation_announces_checksum_chunk_size():
    conn = FakeConnection([xml({"Command": "Payload"})])
    client = AsrClient(conn)
    client.checksum_chunks = True
    client.perform_validation(io.BytesIO(b"x"))
    assert plistlib.loads(conn.sent[0])["Checksum Chunk Size"] == asr.ASR_CHECKSUM_CHUNK_SIZE


def test_perform_validation_unknown_command():
    client = AsrClient(FakeConnection([xml({"Command": "Bogus"})]))
    with pytest.raises(AsrError):
        client.perform_validation(io.BytesIO(b"x"))


@mock.patch("devrestore.asr.time.sleep")
def test_perform_validation_gives_up_on_empty_packets(sleep):
    client = AsrClient(FakeConnection())
    with pytest.raises(AsrError):
        client.perform_validation(io.BytesIO(b"x"))
    assert sleep.call_count == 5


def test_oob_request_without_length_raises():
    client = AsrClient(FakeConnection())
    with pytest.raises(AsrError):
        client.handle_oob_data_request({"OOB Offset": 0}, io.BytesIO(b"abc"))


def test_oob_request_beyond_file_raises():
    client = AsrClient(FakeConnection())
    with pytest.raises(AsrError):
        client.handle_oob_data_request({"OOB Offset": 2, "OOB Length": 5}, io.BytesIO(b"abc"))


def test_send_payload_without_checksums():
    data = bytes(range(256)) * 600
    conn = FakeConnection()
    client = AsrClient(conn)
    client.send_payload(io.BytesIO(data))
    assert b"".join(conn.sent) == data
    assert len(conn.sent[0]) == asr.ASR_PAYLOAD_CHUNK_SIZE


def test_send_payload_with_checksums():
    data = b"z" * (asr.ASR_PAYLOAD_CHUNK_SIZE + 10)
    conn = FakeConnection()
    client = AsrClient(conn)
    client.checksum_chunks = True
    client.send_payload(io.BytesIO(data))
    assert len(conn.sent) == 2
    for chunk in conn.sent:
        body, digest = chunk[:-20], chunk[-20:]
        assert hashlib.sha1(body).digest() == digest
    assert b"".join(chunk[:-20] for chunk in conn.sent) == data


def test_send_payload_reports_progress():
    data = b"q" * (asr.ASR_PAYLOAD_CHUNK_SIZE * 3)
    seen = []
    client = AsrClient(FakeConnection())
    client.set_progress_callback(seen.append)
    client.send_payload(io.BytesIO(data))
    assert seen == sorted(seen)
    assert seen[-1] == 1.0
    assert len(seen) == 3


def test_close_is_idempotent_and_context_manager():
    conn = FakeConnection()
    with AsrClient(conn) as client:
        pass
    assert conn.closed
    assert client.connection is None
    client.close()
    with pytest.raises(AsrError):
        client.send_buffer(b"a")