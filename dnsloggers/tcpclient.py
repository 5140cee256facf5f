"""Logger that streams DNS messages to a TCP or unix socket server."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .base import DEFAULT_TEXT_FORMAT, Logger, Message, resolve_text_format


@dataclass
class TcpClientConfig:
    transport: str = "tcp"
    remote_address: str = "127.0.0.1"
    remote_port: int = 9999
    sock_path: str = ""
    retry_interval: int = 5
    tls_support: bool = False
    tls_insecure: bool = False
    mode: str = "json"
    text_format: str = ""
    delimiter: str = "\n"


class TcpClient(Logger):
    """Sends messages as delimited text or JSON, reconnecting when the link breaks."""

    name = "logger to tcp client"

    def __init__(
        self,
        config: Optional[TcpClientConfig] = None,
        *,
        log: Optional[logging.Logger] = None,
        default_text_format: str = DEFAULT_TEXT_FORMAT,
    ):
        super().__init__(log)
        self.config = config or TcpClientConfig()
        self.text_format = resolve_text_format(self.config.text_format, default_text_format)

    def encode(self, message: Message) -> bytes:
        """Return the bytes written for one message."""
        delimiter = self.config.delimiter
        if self.config.mode == "text":
            return message.to_text(self.text_format, delimiter).encode()
        if self.config.mode == "json":
            return (message.to_json() + "\n" + delimiter).encode()
        return b""

    def _connect(self):
        cfg = self.config
        if cfg.sock_path:
            transport, address = "unix", cfg.sock_path
        else:
            transport, address = cfg.transport, f"{cfg.remote_address}:{cfg.remote_port}"
        self._info("connecting to %s", address)
        return self._dial(
            transport, address, tls=cfg.tls_support, tls_insecure=cfg.tls_insecure
        )

    def run(self) -> None:
        self._reconnecting_run(self._connect, self.encode, self.config.retry_interval)

    def stop(self) -> None:
        super().stop()
        self._release()