"""Logger that writes DNS messages as points to an InfluxDB v2 server."""

from __future__ import annotations

import gzip
import logging
import queue
import ssl
import time
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Optional

from .base import _STOP, Logger, Message

MEASUREMENT = "dns"


def _escape_measurement(value: str) -> str:
    return value.replace(",", r"\,").replace(" ", r"\ ")


def _escape_tag(value: str) -> str:
    return value.replace(",", r"\,").replace("=", r"\=").replace(" ", r"\ ")


def _quote_field(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def to_line_protocol(message: Message) -> str:
    """Render a message as one InfluxDB line protocol record."""
    tags = {
        "Identity": message.identity,
        "QueryIP": message.query_ip,
        "Qname": message.qname,
    }
    fields = {
        "Operation": message.operation,
        "Family": message.family,
        "Protocol": message.protocol,
        "Qtype": message.qtype,
        "Rcode": message.rcode,
    }
    tag_part = "".join(
        f",{_escape_tag(key)}={_escape_tag(value)}"
        for key, value in sorted(tags.items())
        if value
    )
    field_part = ",".join(
        f"{_escape_tag(key)}={_quote_field(value)}" for key, value in sorted(fields.items())
    )
    timestamp = message.time_sec * 1_000_000_000 + message.time_nsec
    return f"{_escape_measurement(MEASUREMENT)}{tag_part} {field_part} {timestamp}"


@dataclass
class InfluxDBConfig:
    server_url: str = "http://localhost:8086"
    auth_token: str = ""
    organization: str = ""
    bucket: str = ""
    tls_support: bool = False
    tls_insecure: bool = False
    batch_size: int = 5000
    flush_interval: float = 1.0
    timeout: float = 5.0


class InfluxDBClient(Logger):
    """Batches messages as points and writes them through the HTTP write API."""

    name = "logger to influxdb"

    def __init__(self, config: Optional[InfluxDBConfig] = None, *, log: Optional[logging.Logger] = None):
        super().__init__(log)
        self.config = config or InfluxDBConfig()

    def _write_url(self) -> str:
        query = urllib.parse.urlencode(
            {"org": self.config.organization, "bucket": self.config.bucket, "precision": "ns"}
        )
        return f"{self.config.server_url.rstrip('/')}/api/v2/write?{query}"

    def _ssl_context(self) -> Optional[ssl.SSLContext]:
        if not self.config.tls_support:
            return None
        context = ssl.create_default_context()
        if self.config.tls_insecure:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context

    def write_points(self, lines: list[str]) -> None:
        """Send a batch of line protocol records; raises OSError on failure."""
        if not lines:
            return
        body = gzip.compress("\n".join(lines).encode())
        request = urllib.request.Request(self._write_url(), data=body, method="POST")
        request.add_header("Authorization", f"Token {self.config.auth_token}")
        request.add_header("Content-Type", "text/plain; charset=utf-8")
        request.add_header("Content-Encoding", "gzip")
        request.add_header("User-Agent", "dnscollector")
        with urllib.request.urlopen(
            request, timeout=self.config.timeout, context=self._ssl_context()
        ) as response:
            response.read()

    def _flush(self, batch: list[str]) -> None:
        try:
            self.write_points(batch)
        except OSError as exc:
            self._error("write error: %s", exc)
        batch.clear()

    def run(self) -> None:
        self._info("running in background...")
        batch: list[str] = []
        interval = self.config.flush_interval
        deadline = time.monotonic() + interval
        while True:
            timeout = max(0.0, deadline - time.monotonic())
            try:
                item = self.queue.get(timeout=timeout)
            except queue.Empty:
                item = None
            if item is _STOP:
                break
            if item is not None:
                batch.append(to_line_protocol(item))
                if len(batch) >= self.config.batch_size:
                    self._flush(batch)
            if time.monotonic() >= deadline:
                self._flush(batch)
                deadline = time.monotonic() + interval
        self._flush(batch)
        self._info("run terminated")