"""Logger that pushes DNS messages to a Loki server as protobuf streams."""

from __future__ import annotations

import base64
import logging
import queue
import ssl
import time
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Optional

from .base import _STOP, DEFAULT_TEXT_FORMAT, Logger, Message, resolve_text_format

_DEFAULT_PASSWORD = ""


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


def _len_field(number: int, data: bytes) -> bytes:
    return _varint(number << 3 | 2) + _varint(len(data)) + data


def _int_field(number: int, value: int) -> bytes:
    if value == 0:
        return b""
    return _varint(number << 3) + _varint(value & 0xFFFFFFFFFFFFFFFF)


def snappy_encode(data: bytes) -> bytes:
    """Encode data as a snappy block made of literal chunks."""
    out = bytearray(_varint(len(data)))
    for start in range(0, len(data), 65536):
        chunk = data[start:start + 65536]
        n = len(chunk) - 1
        if n < 60:
            out.append(n << 2)
        elif n < 1 << 8:
            out.append(60 << 2)
            out += n.to_bytes(1, "little")
        elif n < 1 << 16:
            out.append(61 << 2)
            out += n.to_bytes(2, "little")
        elif n < 1 << 24:
            out.append(62 << 2)
            out += n.to_bytes(3, "little")
        else:
            out.append(63 << 2)
            out += n.to_bytes(4, "little")
        out += chunk
    return bytes(out)


@dataclass
class LokiConfig:
    server_url: str = "http://localhost:3100/loki/api/v1/push"
    job_name: str = "dnscollector"
    mode: str = "text"
    text_format: str = ""
    flush_interval: float = 5
    batch_size: int = 1024 * 1024
    retry_interval: float = 10
    proxy_url: str = ""
    tls_insecure: bool = False
    basic_auth_login: str = ""
    basic_auth_pwd: str = _DEFAULT_PASSWORD
    tenant_id: str = ""
    timeout: float = 5.0


@dataclass
class LokiStream:
    """The pending log entries of one identity."""

    name: str
    job_name: str
    entries: list[tuple[int, str]] = field(default_factory=list)
    size: int = 0

    @property
    def labels(self) -> str:
        return f'{{job="{self.job_name}", identity="{self.name}"}}'

    def add(self, timestamp_ns: int, line: str) -> None:
        self.entries.append((timestamp_ns, line))
        self.size += len(line)

    def encode(self) -> bytes:
        """Return the snappy-compressed protobuf push request for the pending entries."""
        body = _len_field(1, self.labels.encode())
        for timestamp_ns, line in self.entries:
            seconds, nanos = divmod(timestamp_ns, 1_000_000_000)
            stamp = _int_field(1, seconds) + _int_field(2, nanos)
            entry = _len_field(1, stamp) + _len_field(2, line.encode())
            body += _len_field(2, entry)
        return snappy_encode(_len_field(1, body))

    def reset(self) -> None:
        self.entries.clear()
        self.size = 0


class LokiClient(Logger):
    """Batches messages per identity and pushes them over HTTP."""

    name = "logger loki"

    def __init__(
        self,
        config: Optional[LokiConfig] = None,
        *,
        log: Optional[logging.Logger] = None,
        default_text_format: str = DEFAULT_TEXT_FORMAT,
    ):
        super().__init__(log)
        self.config = config or LokiConfig()
        self.text_format = resolve_text_format(self.config.text_format, default_text_format)
        self.streams: dict[str, LokiStream] = {}
        handlers: list[urllib.request.BaseHandler] = []
        if self.config.proxy_url:
            proxy = self.config.proxy_url
            handlers.append(urllib.request.ProxyHandler({"http": proxy, "https": proxy}))
        else:
            handlers.append(urllib.request.ProxyHandler({}))
        context = ssl.create_default_context()
        if self.config.tls_insecure:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        handlers.append(urllib.request.HTTPSHandler(context=context))
        self._opener = urllib.request.build_opener(*handlers)

    def _line(self, message: Message) -> str:
        if self.config.mode == "text":
            return message.to_text(self.text_format, "")
        if self.config.mode == "json":
            return message.to_json() + "\n"
        return ""

    def send_entries(self, data: bytes) -> None:
        """POST an encoded push request; raises OSError on failure."""
        cfg = self.config
        request = urllib.request.Request(cfg.server_url, data=data, method="POST")
        request.add_header("Content-Type", "application/x-protobuf")
        request.add_header("User-Agent", "dnscollector")
        if cfg.tenant_id:
            request.add_header("X-Scope-OrgID", cfg.tenant_id)
        credentials = f"{cfg.basic_auth_login}:{cfg.basic_auth_pwd}".encode()
        request.add_header("Authorization", "Basic " + base64.b64encode(credentials).decode())
        try:
            with self._opener.open(request, timeout=cfg.timeout) as response:
                response.read()
        except urllib.error.HTTPError as exc:
            body = exc.read(1024).decode(errors="replace")
            line = body.splitlines()[0] if body else ""
            raise OSError(
                f"server returned HTTP status {exc.code} {exc.reason} ({exc.code}): {line}"
            ) from None

    def _push(self, stream: LokiStream) -> bool:
        try:
            self.send_entries(stream.encode())
        except OSError as exc:
            self._error("error sending log entries - %s", exc)
            return False
        stream.reset()
        return True

    def _retry_wait(self) -> None:
        self._info("retry in %d seconds", self.config.retry_interval)
        self._stopping.wait(self.config.retry_interval)

    def run(self) -> None:
        self._info("running in background...")
        interval = self.config.flush_interval
        deadline = time.monotonic() + interval
        while True:
            try:
                item = self.queue.get(timeout=max(0.0, deadline - time.monotonic()))
            except queue.Empty:
                item = None
            if item is _STOP:
                break
            if item is not None:
                stream = self.streams.get(item.identity)
                if stream is None:
                    stream = self.streams[item.identity] = LokiStream(
                        item.identity, self.config.job_name
                    )
                stream.add(item.time_sec * 1_000_000_000 + item.time_nsec, self._line(item))
                if stream.size >= self.config.batch_size and not self._push(stream):
                    self._retry_wait()
            if time.monotonic() >= deadline:
                for stream in self.streams.values():
                    if stream.entries and not self._push(stream):
                        self._retry_wait()
                        break
                deadline = time.monotonic() + interval
        self._info("run terminated")

    def stop(self) -> None:
        super().stop()