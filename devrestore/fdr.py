"""Connection proxy service used by the device for factory data requests."""

from __future__ import annotations

import plistlib
import socket
import struct
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol
from xml.parsers.expat import ExpatError

from devrestore import log
from devrestore.common import RestoreError

CTRL_PORT = 0x43A
CTRL_CMD = b"BeginCtrl\x00"
HELLO_CTRL_CMD = b"HelloCtrl\x00"
HELLO_CMD = b"HelloConn\x00"

FDR_SYNC_MSG = 0x1
FDR_PROXY_MSG = 0x105
FDR_PLIST_MSG = 0xBBAA

_CONNECT_ATTEMPTS = 10
_CONNECT_RETRY_DELAY = 2
_POLL_TIMEOUT = 20.0
_PROXY_TIMEOUT = 0.1
_PROXY_BUFFER_SIZE = 1048576
_SYNC_BUFFER_SIZE = 4096
_PROXY_ACK = 5

_U16 = struct.Struct("<H")
_BE16 = struct.Struct(">H")
_LENGTH = struct.Struct("<I")


class FdrError(RestoreError):
    """Raised when communication with the FDR service fails."""


class FdrType(Enum):
    """The kind of FDR connection: the control channel or a worker connection."""

    CTRL = "ctrl"
    CONN = "conn"


class Connection(Protocol):
    """A byte stream to a service on the device.

    ``receive`` raises TimeoutError when ``timeout`` seconds pass without data
    and another OSError when the connection fails.
    """

    def send(self, data: bytes) -> int: ...

    def receive(self, max_size: int, timeout: float | None = None) -> bytes: ...

    def close(self) -> None: ...


class Device(Protocol):
    """A device that can open connections to a port; raises OSError on failure."""

    def connect(self, port: int) -> Connection: ...


@dataclass
class _Session:
    conn_port: int = 0
    ctrl_proto_version: int = 2
    serial: int = 0


_session = _Session()


def _fail(message: str) -> FdrError:
    log.error(message + "\n")
    return FdrError(message)


def _is_uint(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


class FdrClient:
    """One FDR connection, either the control channel or a worker."""

    def __init__(self, connection: Connection, device: Device, fdr_type: FdrType) -> None:
        self.connection: Connection | None = connection
        self.device = device
        self.type = fdr_type
        self.workers: list[threading.Thread] = []

    def __enter__(self) -> FdrClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.disconnect()

    @property
    def _name(self) -> str:
        return f"{id(self):#x}"

    def _conn(self) -> Connection:
        if self.connection is None:
            raise FdrError("FDR connection is closed")
        return self.connection

    def disconnect(self) -> None:
        """Close the connection; closing twice is harmless."""
        connection, self.connection = self.connection, None
        if connection is not None:
            connection.close()

    def _recv_exact(self, size: int) -> bytes:
        connection = self._conn()
        chunks = []
        remaining = size
        while remaining > 0:
            chunk = connection.receive(remaining)
            if not chunk:
                raise ConnectionError("connection closed")
            chunks.append(chunk)
            remaining -= len(chunk)
        return b"".join(chunks)

    def _try_send(self, data: bytes) -> bool:
        try:
            return self._conn().send(data) == len(data)
        except OSError:
            return False

    def _send_all(self, data: bytes) -> int:
        connection = self._conn()
        sent = 0
        while sent < len(data):
            count = connection.send(data[sent:])
            if count <= 0:
                break
            sent += count
        return sent

    def _receive_plist(self) -> Any:
        try:
            (length,) = _LENGTH.unpack(self._recv_exact(_LENGTH.size))
        except OSError as exc:
            raise _fail(f"ERROR: Unable to receive packet length from FDR ({exc})") from exc
        try:
            body = self._recv_exact(length)
        except OSError as exc:
            raise _fail("ERROR: Unable to receive data from FDR") from exc
        log.debug(f"FDR Received {len(body)} bytes\n")
        try:
            return plistlib.loads(body, fmt=plistlib.FMT_BINARY)
        except (
            plistlib.InvalidFileException,
            ValueError,
            TypeError,
            KeyError,
            IndexError,
            OverflowError,
            struct.error,
            ExpatError,
        ):
            return None

    def _send_plist(self, data: Any) -> None:
        body = plistlib.dumps(data, fmt=plistlib.FMT_BINARY)
        log.debug(f"FDR sending {len(body)} bytes:\n")
        if log.debug_level():
            log.debug_plist(data)
        header = _LENGTH.pack(len(body))
        try:
            sent = self._conn().send(header)
        except OSError:
            sent = 0
        if sent != len(header):
            raise _fail(
                f"ERROR: FDR unable to send data length. Sent {sent} of {len(header)} bytes."
            )
        try:
            sent = self._conn().send(body)
        except OSError:
            sent = 0
        if sent != len(body):
            raise _fail(f"ERROR: FDR unable to send data. Sent {sent} of {len(body)} bytes.")
        log.debug(f"FDR Sent {sent} bytes\n")

    def _ctrl_handshake(self) -> None:
        log.debug("About to do ctrl handshake\n")
        _session.ctrl_proto_version = 2
        if not self._try_send(CTRL_CMD):
            log.debug(
                "Hmm... looks like the device doesn't like the newer protocol, using the old one\n"
            )
            _session.ctrl_proto_version = 1
            if not self._try_send(HELLO_CTRL_CMD):
                raise _fail("ERROR: FDR unable to send BeginCtrl.")

        if _session.ctrl_proto_version == 2:
            try:
                self._send_plist(
                    {"Command": CTRL_CMD.rstrip(b"\x00").decode("ascii"), "CtrlProtoVersion": 2}
                )
            except FdrError:
                log.error("ERROR: FDR could not send Begin command.\n")
                raise
            try:
                reply = self._receive_plist()
            except FdrError:
                log.error("ERROR: FDR did not get Begin command reply.\n")
                raise
            if log.debug_level() and reply is not None:
                log.debug_plist(reply)
            port = reply.get("ConnPort") if isinstance(reply, dict) else None
            if not _is_uint(port):
                raise _fail("ERROR: Could not get FDR ConnPort value")
            _session.conn_port = port
        else:
            try:
                reply = self._recv_exact(len(HELLO_CTRL_CMD))
            except OSError as exc:
                raise _fail("ERROR: Could not receive reply to HelloCtrl command") from exc
            if reply != HELLO_CTRL_CMD:
                text = reply[:9].decode("latin-1")
                raise _fail(f"ERROR: Did not receive HelloCtrl as reply, but {text}")
            try:
                cport = self._recv_exact(_U16.size)
            except OSError as exc:
                raise _fail("ERROR: Failed to receive conn port") from exc
            _session.conn_port = _U16.unpack(cport)[0]

        log.debug(f"Ctrl handshake done (ConnPort = {_session.conn_port})\n")

    def _sync_handshake(self) -> None:
        if not self._try_send(HELLO_CMD):
            raise _fail("ERROR: FDR unable to send Hello.")

        if _session.ctrl_proto_version == 2:
            try:
                reply = self._receive_plist()
            except FdrError:
                log.error("ERROR: FDR did not get HelloConn reply.\n")
                raise
            if not isinstance(reply, dict):
                reply = {}
            command = reply.get("Command")
            identifier = reply.get("Identifier")
            if command != "HelloConn":
                raise _fail("ERROR: Did not receive HelloConn reply...")
            if isinstance(identifier, str):
                log.debug(f"Got device identifier {identifier}\n")
        else:
            try:
                reply = self._recv_exact(len(HELLO_CMD))
            except OSError as exc:
                raise _fail("ERROR: Could not receive reply to HelloConn command") from exc
            if reply != HELLO_CMD:
                text = reply[:9].decode("latin-1")
                raise _fail(f"ERROR: Did not receive HelloConn as reply, but {text}")

    def poll_and_handle_message(self) -> bool:
        """Wait for one message and handle it.

        Returns True when a proxied connection was closed by the remote end,
        False otherwise (including a timeout). Raises FdrError on failure.
        """
        connection = self._conn()
        try:
            data = connection.receive(_U16.size, timeout=_POLL_TIMEOUT)
        except TimeoutError:
            data = b""
        except OSError as exc:
            if self.connection is not None:
                log.error(f"ERROR: Unable to receive message from FDR {self._name} ({exc})\n")
            raise FdrError(f"unable to receive message from FDR: {exc}") from exc
        if len(data) != _U16.size:
            log.debug(f"FDR {self._name} timeout waiting for command\n")
            return False

        (cmd,) = _U16.unpack(data)
        if cmd == FDR_SYNC_MSG:
            log.debug(f"FDR {self._name} got sync message\n")
            return self._handle_sync_cmd()
        if cmd == FDR_PROXY_MSG:
            log.debug(f"FDR {self._name} got proxy message\n")
            return self._handle_proxy_cmd()
        if cmd == FDR_PLIST_MSG:
            log.debug(f"FDR {self._name} got plist message\n")
            return self._handle_plist_cmd()

        log.error(
            f"WARNING: FDR {self._name} received unknown packet {cmd:#x} of size {len(data)}\n"
        )
        return False

    def _handle_sync_cmd(self) -> bool:
        try:
            data = self._conn().receive(_SYNC_BUFFER_SIZE)
        except OSError:
            data = b""
        if len(data) != 2:
            raise _fail("ERROR: Unexpected data from FDR")
        try:
            worker = connect(self.device, FdrType.CONN)
        except FdrError:
            log.error("ERROR: Failed to connect to FDR port\n")
            raise
        log.debug("FDR connected in reply to sync message, starting command thread\n")
        thread = threading.Thread(target=run_listener, args=(worker,), daemon=True)
        try:
            thread.start()
        except RuntimeError as exc:
            worker.disconnect()
            raise _fail("ERROR: Failed to start FDR command thread") from exc
        self.workers.append(thread)
        return False

    def _handle_plist_cmd(self) -> bool:
        try:
            packet = self._receive_plist()
        except FdrError:
            log.error(f"ERROR: FDR {self._name} could not receive plist command.\n")
            raise
        command = packet.get("Command") if isinstance(packet, dict) else None
        if not isinstance(command, str):
            raise _fail(f"ERROR: FDR {self._name} Could not find Command in plist command")

        if command != "Ping":
            raise _fail(f"WARNING: FDR {self._name} received unknown plist command: {command}")
        try:
            self._send_plist({"Pong": True})
        except FdrError:
            log.error(f"ERROR: FDR {self._name} could not send Ping command reply.\n")
            raise
        # The device closes this connection; the next receive fails and ends the worker.
        return False

    def _handle_proxy_cmd(self) -> bool:
        connection = self._conn()
        try:
            buf = connection.receive(_PROXY_BUFFER_SIZE)
        except OSError as exc:
            raise _fail(
                f"ERROR: FDR {self._name} failed to read data for proxy command"
            ) from exc
        log.debug(f"Got proxy command with {len(buf)} bytes\n")

        # Always acknowledge; a failure later aborts the restore anyway.
        ack = _U16.pack(_PROXY_ACK)
        if not self._try_send(ack):
            raise _fail(f"ERROR: FDR {self._name} unable to send ack.")

        if len(buf) < 3:
            log.debug(f"FDR {self._name} proxy command data too short, retrying\n")
            return self.poll_and_handle_message()

        try:
            sent = self._send_all(buf)
        except OSError:
            sent = 0
        if sent != len(buf):
            raise _fail(
                f"ERROR: FDR {self._name} unable to send data. Sent {sent} of {len(buf)} bytes."
            )

        host = None
        port = 0
        # Connect request: 0 3 hostlen <host> <port>
        if buf[0] == 0 and buf[1] == 3:
            (port,) = _BE16.unpack_from(buf, len(buf) - 2)
            host = buf[3 : len(buf) - 2].split(b"\x00", 1)[0].decode("latin-1")
            log.debug(f"FDR {self._name} Proxy connect request to {host}:{port}\n")

        if host is None or buf[2] == 0:
            return False

        try:
            sock = socket.create_connection((host, port))
        except OSError as exc:
            raise _fail(f"ERROR: Failed to connect socket: {exc.strerror or exc}") from exc
        with sock:
            sock.settimeout(_PROXY_TIMEOUT)
            return self._forward(connection, sock)

    def _forward(self, connection: Connection, sock: socket.socket) -> bool:
        while True:
            try:
                payload = connection.receive(_PROXY_BUFFER_SIZE, timeout=_PROXY_TIMEOUT)
            except TimeoutError:
                payload = b""
            except OSError as exc:
                raise _fail(
                    f"ERROR: FDR {self._name} Unable to receive proxy payload ({exc})"
                ) from exc
            if payload:
                log.debug(
                    f"FDR {self._name} got payload of {len(payload)} bytes, "
                    "now trying to proxy it\n"
                )
                try:
                    sock.sendall(payload)
                except OSError as exc:
                    raise _fail(f"ERROR: Sending proxy payload failed: {exc}") from exc

            try:
                reply = sock.recv(_PROXY_BUFFER_SIZE)
            except TimeoutError:
                reply = None
            except ConnectionResetError:
                return True
            except OSError as exc:
                log.error(f"ERROR: FDR {self._name} receiving proxy payload failed: {exc}\n")
                return False
            if reply == b"":
                return True

            if reply:
                log.debug(
                    f"FDR {self._name} Received {len(reply)} bytes reply data, sending to device\n"
                )
                try:
                    sent = self._send_all(reply)
                except OSError:
                    sent = 0
                if sent != len(reply):
                    raise _fail(
                        f"ERROR: FDR {self._name} unable to send data. "
                        f"Sent {sent} of {len(reply)} bytes."
                    )
            else:
                _session.serial += 1


def connect(device: Device, fdr_type: FdrType) -> FdrClient:
    """Open an FDR connection of ``fdr_type`` and perform its handshake."""
    port = (_session.conn_port if fdr_type is FdrType.CONN else CTRL_PORT) & 0xFFFF
    log.debug(f"Connecting to FDR client at port {port}\n")

    connection = None
    for attempt in range(1, _CONNECT_ATTEMPTS + 1):
        try:
            connection = device.connect(port)
            break
        except OSError as exc:
            if attempt >= _CONNECT_ATTEMPTS:
                raise _fail(f"ERROR: Unable to connect to FDR client ({exc})") from exc
        time.sleep(_CONNECT_RETRY_DELAY)
        log.debug("Retrying connection...\n")

    client = FdrClient(connection, device, fdr_type)
    try:
        if fdr_type is FdrType.CTRL:
            client._ctrl_handshake()
        else:
            client._sync_handshake()
    except FdrError:
        client.disconnect()
        raise
    return client


def run_listener(fdr: FdrClient) -> None:
    """Handle messages on ``fdr`` until it fails, then close it.

    The control channel keeps going after every handled message; a worker
    also stops once its proxied connection has been closed.
    """
    try:
        while fdr.connection is not None:
            log.debug(f"FDR {id(fdr):#x} waiting for message...\n")
            try:
                closed = fdr.poll_and_handle_message()
            except FdrError:
                break
            if fdr.type is FdrType.CTRL:
                continue
            if closed:
                break
    finally:
        log.debug(f"FDR {id(fdr):#x} terminating...\n")
        fdr.disconnect()