"""Client for the ASR service that streams a filesystem image to a device."""

from __future__ import annotations

import hashlib
import io
import plistlib
import time
from typing import Any, BinaryIO, Callable, Protocol
from xml.parsers.expat import ExpatError

from devrestore import log
from devrestore.common import RestoreError

ASR_VERSION = 1
ASR_STREAM_ID = 1
ASR_PORT = 12345
ASR_BUFFER_SIZE = 65536
ASR_FEC_SLICE_STRIDE = 40
ASR_PACKETS_PER_FEC = 25
ASR_PAYLOAD_PACKET_SIZE = 1450
ASR_PAYLOAD_CHUNK_SIZE = 131072
ASR_CHECKSUM_CHUNK_SIZE = 131072

_CONNECT_ATTEMPTS = 10
_CONNECT_RETRY_DELAY = 2
_RECEIVE_ATTEMPTS = 5
_PAYLOAD_RETRIES = 3

ProgressCallback = Callable[[float], None]


class AsrError(RestoreError):
    """Raised when communication with the ASR service fails."""


class Connection(Protocol):
    """A byte stream to a service on the device."""

    def send(self, data: bytes) -> int: ...

    def receive(self, max_size: int) -> bytes: ...

    def close(self) -> None: ...


class Device(Protocol):
    """A device that can open connections to a port; raises OSError on failure."""

    def connect(self, port: int) -> Connection: ...


def _fail(message: str) -> AsrError:
    log.error(message + "\n")
    return AsrError(message)


def _file_size(file: BinaryIO) -> int:
    position = file.tell()
    size = file.seek(0, io.SEEK_END)
    file.seek(position)
    return size


def _is_uint(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


class AsrClient:
    """An open connection to the ASR service."""

    def __init__(self, connection: Connection) -> None:
        self.connection: Connection | None = connection
        self.checksum_chunks = False
        self.lastprogress = 0
        self.progress_cb: ProgressCallback | None = None

    def __enter__(self) -> AsrClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _connection(self) -> Connection:
        if self.connection is None:
            raise AsrError("ASR connection is closed")
        return self.connection

    def set_progress_callback(self, callback: ProgressCallback | None) -> None:
        """Call ``callback`` with the fraction sent whenever it grows by a percent."""
        self.progress_cb = callback

    def receive(self) -> Any:
        """Receive one XML property list; returns ``None`` if nothing parseable arrived."""
        try:
            data = self._connection().receive(ASR_BUFFER_SIZE)
        except OSError as exc:
            raise _fail("ERROR: Unable to receive data from ASR") from exc
        try:
            request = plistlib.loads(data, fmt=plistlib.FMT_XML) if data else None
        except (plistlib.InvalidFileException, ValueError, ExpatError):
            request = None
        log.debug(f"Received {len(data)} bytes:\n")
        if log.debug_level() and request is not None:
            log.debug_plist(request)
        return request

    def send(self, data: Any) -> None:
        """Send ``data`` as an XML property list."""
        payload = plistlib.dumps(data, fmt=plistlib.FMT_XML)
        try:
            self.send_buffer(payload)
        except AsrError:
            log.error("ERROR: Unable to send plist to ASR\n")
            raise

    def send_buffer(self, data: bytes) -> None:
        """Send raw bytes; raises AsrError unless all of them went out."""
        try:
            sent = self._connection().send(bytes(data))
        except OSError as exc:
            raise _fail(f"ERROR: Unable to send data to ASR. Sent 0 of {len(data)} bytes.") from exc
        if sent != len(data):
            raise _fail(
                f"ERROR: Unable to send data to ASR. Sent {sent} of {len(data)} bytes."
            )

    def close(self) -> None:
        """Close the connection; closing twice is harmless."""
        if self.connection is not None:
            connection, self.connection = self.connection, None
            connection.close()

    def perform_validation(self, file: BinaryIO) -> None:
        """Announce the image and answer out-of-band requests until the device asks for the payload."""
        length = _file_size(file)
        packet_info: dict[str, Any] = {}
        if self.checksum_chunks:
            packet_info["Checksum Chunk Size"] = ASR_CHECKSUM_CHUNK_SIZE
        packet_info["FEC Slice Stride"] = ASR_FEC_SLICE_STRIDE
        packet_info["Packet Payload Size"] = ASR_PAYLOAD_PACKET_SIZE
        packet_info["Packets Per FEC"] = ASR_PACKETS_PER_FEC
        packet_info["Payload"] = {"Port": 1, "Size": length}
        packet_info["Stream ID"] = ASR_STREAM_ID
        packet_info["Version"] = ASR_VERSION

        try:
            self.send(packet_info)
        except AsrError:
            log.error("ERROR: Unable to sent packet information to ASR\n")
            raise

        attempts = 0
        while True:
            try:
                packet = self.receive()
            except AsrError:
                log.error("ERROR: Unable to receive validation packet\n")
                raise
            if packet is None and attempts < _RECEIVE_ATTEMPTS:
                log.info(f"Retrying to receive validation packet... {attempts}\n")
                attempts += 1
                time.sleep(1)
                continue
            attempts = 0

            command = packet.get("Command") if isinstance(packet, dict) else None
            if not isinstance(command, str):
                raise _fail("ERROR: Unable to find command node in validation request")
            if command == "OOBData":
                self.handle_oob_data_request(packet, file)
            elif command == "Payload":
                return
            else:
                raise _fail("ERROR: Unknown command received from ASR")

    def handle_oob_data_request(self, packet: dict, file: BinaryIO) -> None:
        """Send the slice of ``file`` that an OOBData request asks for."""
        oob_length = packet.get("OOB Length")
        if not _is_uint(oob_length):
            raise _fail("ERROR: Unable to find OOB data length")
        oob_offset = packet.get("OOB Offset")
        if not _is_uint(oob_offset):
            raise _fail("ERROR: Unable to find OOB data offset")
        try:
            file.seek(oob_offset, io.SEEK_SET)
        except (OSError, ValueError) as exc:
            raise _fail(f"ERROR: Unable to seek to OOB offset 0x{oob_offset:x}") from exc
        oob_data = file.read(oob_length)
        if len(oob_data) != oob_length:
            raise _fail(
                f"ERROR: Unable to read OOB data from filesystem offset 0x{oob_offset:x}, "
                f"oob_length {oob_length}, read returned {len(oob_data)}"
            )
        try:
            self.send_buffer(oob_data)
        except AsrError:
            log.error("ERROR: Unable to send OOB data to ASR\n")
            raise

    def send_payload(self, file: BinaryIO) -> None:
        """Stream ``file`` in chunks, each followed by its SHA-1 if checksums were requested.

        Failed reads or sends are retried up to three times in total before giving up.
        """
        length = _file_size(file)
        file.seek(0, io.SEEK_SET)
        remaining = length
        sent_bytes = 0
        retry = _PAYLOAD_RETRIES
        while remaining > 0 and retry >= 0:
            size = min(remaining, ASR_PAYLOAD_CHUNK_SIZE)
            chunk = file.read(size)
            if len(chunk) != size:
                log.error("Error reading filesystem\n")
                retry -= 1
                continue
            if self.checksum_chunks:
                chunk += hashlib.sha1(chunk).digest()
            try:
                self.send_buffer(chunk)
            except AsrError:
                log.error("ERROR: Unable to send filesystem payload\n")
                retry -= 1
                continue

            sent_bytes += size
            progress = sent_bytes / length
            if self.progress_cb is not None and int(progress * 100) > self.lastprogress:
                self.progress_cb(progress)
                self.lastprogress = int(progress * 100)
            remaining -= size


def open_with_timeout(device: Device | None) -> AsrClient:
    """Connect to the ASR port, retrying for a while, and wait for its Initiate message."""
    if device is None:
        raise AsrError("no device given")

    log.debug("Connecting to ASR\n")
    connection = None
    for attempt in range(1, _CONNECT_ATTEMPTS + 1):
        try:
            connection = device.connect(ASR_PORT)
            break
        except OSError as exc:
            if attempt >= _CONNECT_ATTEMPTS:
                raise _fail("ERROR: Unable to connect to ASR client") from exc
        time.sleep(_CONNECT_RETRY_DELAY)
        log.debug("Retrying connection...\n")

    client = AsrClient(connection)
    try:
        data = client.receive()
    except AsrError:
        client.close()
        raise
    if not isinstance(data, dict):
        data = {}

    command = data.get("Command")
    if isinstance(command, str) and command != "Initiate":
        log.error("ERROR: unexpected ASR plist received:\n")
        log.debug_plist(data)
        client.close()
        raise AsrError(f"unexpected ASR command: {command}")

    checksum = data.get("Checksum Chunks")
    if isinstance(checksum, bool):
        client.checksum_chunks = checksum
    return client