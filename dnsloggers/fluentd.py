"""Logger that forwards DNS messages to a fluentd server in forward mode."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import msgpack

from .base import Logger, Message


def encode_event(tag: str, message: Message) -> bytes:
    """Encode a forward-protocol message: [tag, time, record]."""
    return (
        b"\x93"
        + msgpack.packb(tag)
        + msgpack.packb(message.time_sec)
        + msgpack.packb(message.to_dict())
    )


@dataclass
class FluentdConfig:
    transport: str = "tcp"
    remote_address: str = "127.0.0.1"
    remote_port: int = 24224
    sock_path: str = ""
    retry_interval: int = 5
    tls_support: bool = False
    tls_insecure: bool = False
    tag: str = "dns.collector"


class FluentdClient(Logger):
    """Sends each message as a msgpack event, reconnecting when the link breaks."""

    name = "logger to fluentd"

    def __init__(self, config: Optional[FluentdConfig] = None, *, log: Optional[logging.Logger] = None):
        super().__init__(log)
        self.config = config or FluentdConfig()

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

    def _encode(self, message: Message) -> Optional[bytes]:
        try:
            return encode_event(self.config.tag, message)
        except (TypeError, ValueError, OverflowError) as exc:
            self._error("msgpack error: %s", exc)
            return None

    def run(self) -> None:
        self._reconnecting_run(self._connect, self._encode, self.config.retry_interval)

    def stop(self) -> None:
        super().stop()
        self._release()