"""Logger that sends DNS messages to a local or remote syslog server."""

from __future__ import annotations

import logging
import os
import socket
import sys
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .base import DEFAULT_TEXT_FORMAT, Logger, Message, resolve_text_format

_PRIORITIES = {
    "WARNING": 4,
    "NOTICE": 5,
    "INFO": 6,
    "DEBUG": 7,
    "DAEMON": 24,
    "LOCAL0": 128,
    "LOCAL1": 136,
    "LOCAL2": 144,
    "LOCAL3": 152,
    "LOCAL4": 160,
    "LOCAL5": 168,
    "LOCAL6": 176,
    "LOCAL7": 184,
}

_LOCAL_SOCKETS = ("/dev/log", "/var/run/syslog", "/var/run/log")


def get_priority(name: str) -> int:
    """Return the syslog code of a severity or facility name."""
    key = name.upper()
    try:
        return _PRIORITIES[key]
    except KeyError:
        raise ValueError(f"invalid syslog priority: {key}") from None


@dataclass
class SyslogConfig:
    mode: str = "text"
    severity: str = "INFO"
    facility: str = "DAEMON"
    transport: str = "local"
    remote_address: str = "127.0.0.1:514"
    tls_support: bool = False
    tls_insecure: bool = False
    text_format: str = ""


class Syslog(Logger):
    """Writes each message as a syslog record."""

    name = "logger to syslog"

    def __init__(
        self,
        config: Optional[SyslogConfig] = None,
        *,
        log: Optional[logging.Logger] = None,
        default_text_format: str = DEFAULT_TEXT_FORMAT,
    ):
        super().__init__(log)
        self.config = config or SyslogConfig()
        if self.config.mode not in ("text", "json"):
            raise ValueError("invalid mode text or json expected")
        try:
            self.severity = get_priority(self.config.severity)
        except ValueError as exc:
            raise ValueError(f"invalid severity: {exc}") from None
        try:
            self.facility = get_priority(self.config.facility)
        except ValueError as exc:
            raise ValueError(f"invalid facility: {exc}") from None
        self.priority = self.facility | self.severity
        self.text_format = resolve_text_format(self.config.text_format, default_text_format)
        self._sock: Optional[socket.socket] = None
        self._local = False
        self._hostname = socket.gethostname()
        self._tag = os.path.basename(sys.argv[0]) or "dnscollector"

    def format(self, message: Message) -> str:
        """Render the message body for the configured mode."""
        if self.config.mode == "text":
            return message.to_text(self.text_format, "\n")
        return message.to_json() + "\n"

    def connect(self) -> None:
        """Open the connection to the syslog daemon or server."""
        transport = self.config.transport
        if transport == "local":
            self._sock = self._connect_local()
            self._local = True
            return
        network = transport.removesuffix("+tls")
        tls = self.config.tls_support or transport.endswith("+tls")
        self._sock = self._dial(
            network,
            self.config.remote_address,
            tls=tls,
            tls_insecure=self.config.tls_insecure,
        )
        self._local = False

    @staticmethod
    def _connect_local() -> socket.socket:
        for path in _LOCAL_SOCKETS:
            for kind in (socket.SOCK_DGRAM, socket.SOCK_STREAM):
                sock = socket.socket(socket.AF_UNIX, kind)
                try:
                    sock.connect(path)
                except OSError:
                    sock.close()
                    continue
                return sock
        raise OSError("unix syslog delivery error")

    def _frame(self, body: str) -> bytes:
        if not body.endswith("\n"):
            body += "\n"
        pid = os.getpid()
        now = datetime.now()
        if self._local:
            stamp = f"{now:%b} {now.day:2d} {now:%H:%M:%S}"
            record = f"<{self.priority}>{stamp} {self._tag}[{pid}]: {body}"
        else:
            stamp = now.astimezone().isoformat(timespec="seconds")
            record = f"<{self.priority}>{stamp} {self._hostname} {self._tag}[{pid}]: {body}"
        return record.encode()

    def run(self) -> None:
        self._info("running in background...")
        try:
            self.connect()
        except OSError as exc:
            self._error("failed to connect to syslog: %s", exc)
            raise
        for message in self.messages():
            try:
                self._sock.sendall(self._frame(self.format(message)))
            except OSError as exc:
                self._error("write error: %s", exc)
        self._info("run terminated")

    def stop(self) -> None:
        super().stop()
        sock, self._sock = self._sock, None
        if sock is not None:
            self._info("closing connection")
            sock.close()