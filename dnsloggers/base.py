"""Shared pieces for the DNS message loggers: the message model and the worker base."""

from __future__ import annotations

import json
import logging
import queue
import socket
import ssl
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from operator import attrgetter
from typing import Any, Callable, Iterator, Optional

QUERY = "QUERY"
REPLY = "REPLY"
QUEUE_SIZE = 512
DEFAULT_TEXT_FORMAT = (
    "timestamp identity operation rcode qip qport family protocol length qname qtype"
)

_STOP = object()


def _format_timestamp(sec: int, nsec: int) -> str:
    moment = datetime.fromtimestamp(sec, tz=timezone.utc)
    return f"{moment:%Y-%m-%dT%H:%M:%S}.{nsec:09d}Z"


_DIRECTIVES: dict[str, Callable[["Message"], str]] = {
    "timestamp": lambda m: _format_timestamp(m.time_sec, m.time_nsec),
    "identity": attrgetter("identity"),
    "operation": attrgetter("operation"),
    "family": attrgetter("family"),
    "protocol": attrgetter("protocol"),
    "qip": attrgetter("query_ip"),
    "qport": attrgetter("query_port"),
    "rip": attrgetter("response_ip"),
    "rport": attrgetter("response_port"),
    "qname": attrgetter("qname"),
    "qtype": attrgetter("qtype"),
    "rcode": attrgetter("rcode"),
    "length": lambda m: str(m.length),
    "type": attrgetter("msg_type"),
}


@dataclass
class Message:
    """A DNS message as seen by the collector, with its network context."""

    identity: str = "-"
    operation: str = "-"
    time_sec: int = 0
    time_nsec: int = 0
    family: str = "-"
    protocol: str = "-"
    query_ip: str = "-"
    query_port: str = "-"
    response_ip: str = "-"
    response_port: str = "-"
    msg_type: str = QUERY
    qname: str = "-"
    qtype: str = "-"
    rcode: str = "-"
    length: int = 0
    payload: bytes = b""

    @property
    def timestamp(self) -> str:
        return _format_timestamp(self.time_sec, self.time_nsec)

    def field_value(self, directive: str) -> str:
        """Return the text value of one format directive."""
        try:
            getter = _DIRECTIVES[directive]
        except KeyError:
            raise ValueError(f"unsupported text directive: {directive}") from None
        return getter(self)

    def to_text(self, fields: list[str], delimiter: str = "\n") -> str:
        """Render the message as space separated directive values."""
        return " ".join(self.field_value(d) for d in fields) + delimiter

    def to_dict(self) -> dict[str, Any]:
        return {
            "network": {
                "family": self.family,
                "protocol": self.protocol,
                "query-ip": self.query_ip,
                "query-port": self.query_port,
                "response-ip": self.response_ip,
                "response-port": self.response_port,
            },
            "dns": {
                "type": self.msg_type,
                "qname": self.qname,
                "qtype": self.qtype,
                "rcode": self.rcode,
                "length": self.length,
            },
            "dnstap": {
                "operation": self.operation,
                "identity": self.identity,
                "time-sec": self.time_sec,
                "time-nsec": self.time_nsec,
                "timestamp-rfc3339ns": self.timestamp,
            },
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        network = data.get("network", {})
        dns = data.get("dns", {})
        dnstap = data.get("dnstap", {})
        return cls(
            identity=dnstap.get("identity", "-"),
            operation=dnstap.get("operation", "-"),
            time_sec=dnstap.get("time-sec", 0),
            time_nsec=dnstap.get("time-nsec", 0),
            family=network.get("family", "-"),
            protocol=network.get("protocol", "-"),
            query_ip=network.get("query-ip", "-"),
            query_port=network.get("query-port", "-"),
            response_ip=network.get("response-ip", "-"),
            response_port=network.get("response-port", "-"),
            msg_type=dns.get("type", QUERY),
            qname=dns.get("qname", "-"),
            qtype=dns.get("qtype", "-"),
            rcode=dns.get("rcode", "-"),
            length=dns.get("length", 0),
        )


def resolve_text_format(value: str, fallback: str) -> list[str]:
    """Split the logger's own text format, or the fallback when it is empty."""
    return value.split() if value else fallback.split()


def _split_address(address: str) -> tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ValueError(f"missing port in address {address!r}")
    return host.strip("[]") or "localhost", int(port)


class Logger:
    """A background worker fed with messages through a bounded queue."""

    name = "logger"

    def __init__(self, log: Optional[logging.Logger] = None, queue_size: int = QUEUE_SIZE):
        self.log = log or logging.getLogger("dnsloggers")
        self.queue: queue.Queue = queue.Queue(maxsize=queue_size)
        self._stopping = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._conn: Optional[socket.socket] = None
        self._info("enabled")

    def _info(self, msg: str, *args: Any) -> None:
        self.log.info(f"{self.name} - {msg}", *args)

    def _error(self, msg: str, *args: Any) -> None:
        self.log.error(f"{self.name} - {msg}", *args)

    def send(self, message: Message) -> None:
        """Queue a message, blocking while the queue is full."""
        self.queue.put(message)

    def messages(self) -> Iterator[Message]:
        """Yield queued messages until the logger is told to stop."""
        while True:
            item = self.queue.get()
            if item is _STOP:
                return
            yield item

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError(f"{self.name} already started")
        self._stopping.clear()
        self._thread = threading.Thread(target=self.run, name=self.name, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Ask the worker to finish and wait until it has."""
        self._info("stopping...")
        self._stopping.set()
        thread, self._thread = self._thread, None
        if thread is None:
            return
        while thread.is_alive():
            try:
                self.queue.put(_STOP, timeout=0.1)
                break
            except queue.Full:
                continue
        thread.join()
        self._info("stopped")

    def run(self) -> None:
        """Consume and discard messages until stopped."""
        self._info("running in background...")
        for _ in self.messages():
            pass
        self._info("run terminated")

    def __enter__(self) -> "Logger":
        self.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.stop()

    @staticmethod
    def _dial(
        transport: str,
        address: str,
        *,
        tls: bool = False,
        tls_insecure: bool = False,
        timeout: float = 5.0,
    ) -> socket.socket:
        host: Optional[str] = None
        if transport == "unix":
            sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            try:
                sock.settimeout(timeout)
                sock.connect(address)
            except OSError:
                sock.close()
                raise
        else:
            host, port = _split_address(address)
            if transport.startswith("udp"):
                family, kind, proto, _, sockaddr = socket.getaddrinfo(
                    host, port, type=socket.SOCK_DGRAM
                )[0]
                sock = socket.socket(family, kind, proto)
                try:
                    sock.settimeout(timeout)
                    sock.connect(sockaddr)
                except OSError:
                    sock.close()
                    raise
            else:
                sock = socket.create_connection((host, port), timeout=timeout)
        if tls:
            context = ssl.create_default_context()
            if tls_insecure:
                context.check_hostname = False
                context.verify_mode = ssl.CERT_NONE
            sock = context.wrap_socket(sock, server_hostname=host)
        return sock

    def _release(self) -> None:
        conn, self._conn = self._conn, None
        if conn is not None:
            self._info("closing connection")
            conn.close()

    def _forward(self, conn: socket.socket, encode: Callable[[Message], Optional[bytes]]) -> bool:
        """Send messages on a connection; True when stopped, False when the link broke."""
        for message in self.messages():
            data = encode(message)
            if data is None:
                continue
            try:
                conn.sendall(data)
            except OSError as exc:
                self._error("connection error: %s", exc)
                return False
        return True

    def _reconnecting_run(
        self,
        dial: Callable[[], socket.socket],
        encode: Callable[[Message], Optional[bytes]],
        retry_interval: float,
    ) -> None:
        self._info("running in background...")
        try:
            while not self._stopping.is_set():
                try:
                    self._conn = dial()
                except (OSError, ValueError) as exc:
                    self._error("connect error: %s", exc)
                if self._conn is not None:
                    self._info("connected")
                    if self._forward(self._conn, encode):
                        break
                    self._release()
                self._info("retry to connect in %d seconds", retry_interval)
                self._stopping.wait(retry_interval)
        finally:
            self._release()
        self._info("run terminated")


class FakeLogger(Logger):
    """A logger that accepts messages and never reads them."""

    name = "fake logger"

    def run(self) -> None:
        """Return at once, leaving queued messages untouched."""
        return