"""Logger that forwards DNS messages as dnstap over a frame stream connection."""

from __future__ import annotations

import ipaddress
import logging
import socket
import struct
from dataclasses import dataclass
from typing import Optional

from .base import QUERY, Logger, Message

CONTENT_TYPE = b"protobuf:dnstap.Dnstap"

CONTROL_ACCEPT = 0x01
CONTROL_START = 0x02
CONTROL_STOP = 0x03
CONTROL_READY = 0x04
CONTROL_FINISH = 0x05
CONTROL_FIELD_CONTENT_TYPE = 0x01

DNSTAP_MESSAGE = 1

MESSAGE_TYPES = {
    "AUTH_QUERY": 1,
    "AUTH_RESPONSE": 2,
    "RESOLVER_QUERY": 3,
    "RESOLVER_RESPONSE": 4,
    "CLIENT_QUERY": 5,
    "CLIENT_RESPONSE": 6,
    "FORWARDER_QUERY": 7,
    "FORWARDER_RESPONSE": 8,
    "STUB_QUERY": 9,
    "STUB_RESPONSE": 10,
    "TOOL_QUERY": 11,
    "TOOL_RESPONSE": 12,
    "UPDATE_QUERY": 13,
    "UPDATE_RESPONSE": 14,
}
SOCKET_FAMILIES = {"INET": 1, "INET6": 2}
SOCKET_PROTOCOLS = {"UDP": 1, "TCP": 2, "DOT": 3, "DOH": 4}


def _varint(value: int) -> bytes:
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _bytes_field(number: int, data: bytes) -> bytes:
    return _varint(number << 3 | 2) + _varint(len(data)) + data


def _varint_field(number: int, value: int) -> bytes:
    return _varint(number << 3) + _varint(value)


def _fixed32_field(number: int, value: int) -> bytes:
    return _varint(number << 3 | 5) + struct.pack("<I", value & 0xFFFFFFFF)


def _parse_ip(text: str) -> Optional[bytes]:
    try:
        address = ipaddress.ip_address(text)
    except ValueError:
        return None
    if isinstance(address, ipaddress.IPv4Address):
        return ipaddress.IPv6Address(f"::ffff:{address}").packed
    return address.packed


def _port(text: str, what: str) -> int:
    try:
        return int(text) & 0xFFFFFFFF
    except ValueError:
        raise ValueError(f"error to encode dnstap {what} port {text!r}") from None


def encode_dnstap(identity: str, message: Message) -> bytes:
    """Encode the message as a serialized dnstap protobuf; ValueError on a bad port."""
    rport = _port(message.response_port, "response")
    qport = _port(message.query_port, "query")
    tsec = message.time_sec & 0xFFFFFFFFFFFFFFFF
    body = _varint_field(1, MESSAGE_TYPES.get(message.operation, 0))
    body += _varint_field(2, SOCKET_FAMILIES.get(message.family, 0))
    body += _varint_field(3, SOCKET_PROTOCOLS.get(message.protocol, 0))
    query_address = _parse_ip(message.query_ip)
    if query_address is not None:
        body += _bytes_field(4, query_address)
    response_address = _parse_ip(message.response_ip)
    if response_address is not None:
        body += _bytes_field(5, response_address)
    body += _varint_field(6, qport)
    body += _varint_field(7, rport)
    if message.msg_type == QUERY:
        body += _varint_field(8, tsec)
        body += _fixed32_field(9, message.time_nsec)
        body += _bytes_field(10, message.payload)
    else:
        body += _varint_field(12, tsec)
        body += _fixed32_field(13, message.time_nsec)
        body += _bytes_field(14, message.payload)
    return (
        _bytes_field(1, identity.encode())
        + _bytes_field(2, b"-")
        + _bytes_field(14, body)
        + _varint_field(15, DNSTAP_MESSAGE)
    )


class FrameStreamSender:
    """The sending side of a bidirectional frame stream connection."""

    def __init__(
        self,
        sock: socket.socket,
        content_type: bytes = CONTENT_TYPE,
        bidirectional: bool = True,
        timeout: float = 5.0,
    ):
        self.sock = sock
        self.content_type = content_type
        self.bidirectional = bidirectional
        self.timeout = timeout

    def _control(self, kind: int, with_type: bool) -> bytes:
        payload = struct.pack("!I", kind)
        if with_type:
            payload += struct.pack("!II", CONTROL_FIELD_CONTENT_TYPE, len(self.content_type))
            payload += self.content_type
        return struct.pack("!II", 0, len(payload)) + payload

    def _recv_exact(self, size: int) -> bytes:
        data = bytearray()
        while len(data) < size:
            chunk = self.sock.recv(size - len(data))
            if not chunk:
                raise ConnectionError("frame stream closed by peer")
            data += chunk
        return bytes(data)

    def _recv_control(self) -> int:
        self.sock.settimeout(self.timeout)
        escape, length = struct.unpack("!II", self._recv_exact(8))
        if escape != 0:
            raise ConnectionError("control frame expected")
        payload = self._recv_exact(length)
        if len(payload) < 4:
            raise ConnectionError("control frame too short")
        return struct.unpack("!I", payload[:4])[0]

    def init_sender(self) -> None:
        """Run the READY/ACCEPT/START handshake."""
        if self.bidirectional:
            self.sock.sendall(self._control(CONTROL_READY, True))
            kind = self._recv_control()
            if kind != CONTROL_ACCEPT:
                raise ConnectionError(f"unexpected control frame {kind}, accept expected")
        self.sock.sendall(self._control(CONTROL_START, True))

    def send_frame(self, data: bytes) -> None:
        self.sock.sendall(struct.pack("!I", len(data)) + data)

    def reset_sender(self) -> None:
        """Send STOP and, when bidirectional, wait for FINISH."""
        self.sock.sendall(self._control(CONTROL_STOP, False))
        if self.bidirectional:
            kind = self._recv_control()
            if kind != CONTROL_FINISH:
                raise ConnectionError(f"unexpected control frame {kind}, finish expected")


@dataclass
class DnstapConfig:
    remote_address: str = "127.0.0.1"
    remote_port: int = 6000
    sock_path: str = ""
    retry_interval: float = 5
    tls_support: bool = False
    tls_insecure: bool = False
    server_id: str = "dnscollector"


class DnstapSender(Logger):
    """Forwards messages as dnstap frames, reconnecting when the link breaks."""

    name = "logger dnstap sender"

    def __init__(self, config: Optional[DnstapConfig] = None, *, log: Optional[logging.Logger] = None):
        super().__init__(log)
        self.config = config or DnstapConfig()

    def _connect(self) -> socket.socket:
        cfg = self.config
        if cfg.sock_path:
            transport, address = "unix", cfg.sock_path
        else:
            transport, address = "tcp", f"{cfg.remote_address}:{cfg.remote_port}"
        self._info("connecting to %s", address)
        return self._dial(transport, address, tls=cfg.tls_support, tls_insecure=cfg.tls_insecure)

    def _session(self, conn: socket.socket) -> bool:
        """Stream messages; True when stopped, False when a reconnect is needed."""
        fs = FrameStreamSender(conn)
        try:
            fs.init_sender()
        except OSError as exc:
            self._error("sender protocol initialization error %s", exc)
            return False
        self._info("framestream initialized")
        conn.settimeout(None)
        for message in self.messages():
            try:
                data = encode_dnstap(self.config.server_id, message)
            except ValueError as exc:
                self._error("%s", exc)
                continue
            try:
                fs.send_frame(data)
            except OSError as exc:
                self._error("send frame error %s", exc)
                return False
        self._info("closing framestream")
        try:
            fs.reset_sender()
        except OSError as exc:
            self._error("reset framestream error %s", exc)
        return True

    def run(self) -> None:
        self._info("running in background...")
        try:
            while not self._stopping.is_set():
                try:
                    self._conn = self._connect()
                except (OSError, ValueError) as exc:
                    self._error("connect error: %s", exc)
                if self._conn is not None:
                    self._info("connected with remote")
                    if self._session(self._conn):
                        break
                    self._release()
                self._info("retry to connect in %d seconds", self.config.retry_interval)
                self._stopping.wait(self.config.retry_interval)
        finally:
            self._release()
        self._info("run terminated")

    def stop(self) -> None:
        super().stop()
        self._release()