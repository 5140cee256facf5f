"""Logger that counts DNS messages and exposes them as Prometheus metrics over HTTP."""

from __future__ import annotations

import base64
import binascii
import logging
import ssl
import threading
from collections import Counter
from dataclasses import dataclass, field
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Optional
from urllib.parse import urlsplit

from .base import QUERY, Logger, Message

PASSWORD = "password"
CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


@dataclass
class PrometheusConfig:
    listen_ip: str = "0.0.0.0"
    listen_port: int = 8081
    prom_prefix: str = "dnscollector"
    tls_support: bool = False
    cert_file: str = ""
    key_file: str = ""
    basic_auth_login: str = "admin"
    basic_auth_pwd: str = PASSWORD


@dataclass
class _CounterFamily:
    name: str
    help: str
    labels: tuple[str, ...]
    samples: Counter = field(default_factory=Counter)


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _escape_help(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n")


class Prometheus(Logger):
    """Counts queries, replies and return codes per stream and serves them on /metrics."""

    name = "prometheus"

    def __init__(
        self,
        config: Optional[PrometheusConfig] = None,
        *,
        version: str = "",
        log: Optional[logging.Logger] = None,
    ):
        super().__init__(log)
        self.config = config or PrometheusConfig()
        self.version = version
        prefix = self.config.prom_prefix
        self._lock = threading.Lock()
        self._queries = _CounterFamily(
            f"{prefix}_queries_total", "The total number of received queries", ("stream",)
        )
        self._replies = _CounterFamily(
            f"{prefix}_replies_total", "The total number of received replies", ("stream",)
        )
        self._rcodes = _CounterFamily(
            f"{prefix}_rcodes_total",
            "The total number of hit per return codes",
            ("stream", "rcode"),
        )
        self._server: Optional[ThreadingHTTPServer] = None
        self._api_thread: Optional[threading.Thread] = None
        self.server_address: Optional[tuple[str, int]] = None

    def record(self, message: Message) -> None:
        """Count one message in the per-stream metrics."""
        stream = message.identity
        with self._lock:
            if message.msg_type == QUERY:
                self._queries.samples[(stream,)] += 1
            else:
                self._replies.samples[(stream,)] += 1
            self._rcodes.samples[(stream, message.rcode)] += 1

    def render_metrics(self) -> str:
        """Return all non-empty metric families in the Prometheus text format."""
        lines: list[str] = []
        with self._lock:
            families = sorted((self._queries, self._replies, self._rcodes), key=lambda f: f.name)
            for family in families:
                if not family.samples:
                    continue
                lines.append(f"# HELP {family.name} {_escape_help(family.help)}")
                lines.append(f"# TYPE {family.name} counter")
                for values, count in sorted(family.samples.items()):
                    labels = ",".join(
                        f'{key}="{_escape_label(value)}"'
                        for key, value in zip(family.labels, values)
                    )
                    lines.append(f"{family.name}{{{labels}}} {count}")
        return "\n".join(lines) + "\n" if lines else ""

    def check_basic_auth(self, header: Optional[str]) -> bool:
        """Check an Authorization header against the configured credentials."""
        if not header:
            return False
        scheme, _, encoded = header.partition(" ")
        if scheme.lower() != "basic" or not encoded:
            return False
        try:
            decoded = base64.b64decode(encoded.strip(), validate=True).decode()
        except (binascii.Error, UnicodeDecodeError):
            return False
        login, sep, supplied = decoded.partition(":")
        if not sep:
            return False
        return login == self.config.basic_auth_login and supplied == self.config.basic_auth_pwd

    def _handler_class(self) -> type:
        owner = self

        class _MetricsHandler(BaseHTTPRequestHandler):
            def do_GET(self) -> None:
                if urlsplit(self.path).path != "/metrics":
                    self.send_error(404)
                    return
                body = owner.render_metrics().encode()
                self.send_response(200)
                self.send_header("Content-Type", CONTENT_TYPE)
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def log_message(self, format: str, *args: Any) -> None:
                owner.log.debug("prometheus - " + format, *args)

        return _MetricsHandler

    def _bind(self) -> ThreadingHTTPServer:
        if self._server is not None:
            return self._server
        self._info("starting prometheus metrics...")
        address = (self.config.listen_ip, self.config.listen_port)
        server = ThreadingHTTPServer(address, self._handler_class())
        if self.config.tls_support:
            self._info("tls support enabled")
            context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
            try:
                context.load_cert_chain(self.config.cert_file, self.config.key_file)
            except (OSError, ssl.SSLError):
                server.server_close()
                raise
            server.socket = context.wrap_socket(server.socket, server_side=True)
        server.daemon_threads = True
        self._server = server
        host, port = server.server_address[:2]
        self.server_address = (host, port)
        self._info("is listening on %s:%d", host, port)
        return server

    def listen_and_serve(self) -> None:
        """Serve the metrics endpoint until the server is shut down."""
        server = self._bind()
        server.serve_forever()
        self._info("terminated")

    def run(self) -> None:
        self._info("running in background...")
        self._bind()
        self._api_thread = threading.Thread(
            target=self.listen_and_serve, name=f"{self.name} api", daemon=True
        )
        self._api_thread.start()
        for message in self.messages():
            self.record(message)
        self._info("run terminated")

    def stop(self) -> None:
        super().stop()
        server, self._server = self._server, None
        api, self._api_thread = self._api_thread, None
        if server is not None:
            if api is not None:
                server.shutdown()
                api.join()
            server.server_close()
        self._info("stopped")