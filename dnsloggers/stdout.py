"""Logger that prints DNS messages to standard output."""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from typing import Optional, TextIO

from .base import DEFAULT_TEXT_FORMAT, Logger, Message, resolve_text_format


@dataclass
class StdoutConfig:
    mode: str = "text"
    text_format: str = ""


class StdOut(Logger):
    """Writes each message as a text line or a JSON document."""

    name = "logger to stdout"

    def __init__(
        self,
        config: Optional[StdoutConfig] = None,
        *,
        output: Optional[TextIO] = None,
        log: Optional[logging.Logger] = None,
        default_text_format: str = DEFAULT_TEXT_FORMAT,
    ):
        super().__init__(log)
        self.config = config or StdoutConfig()
        self.output = output if output is not None else sys.stdout
        self.text_format = resolve_text_format(self.config.text_format, default_text_format)

    def format(self, message: Message) -> str:
        """Render a message for the configured mode; empty for an unknown mode."""
        if self.config.mode == "text":
            return message.to_text(self.text_format)
        if self.config.mode == "json":
            return message.to_json() + "\n"
        return ""

    def run(self) -> None:
        self._info("running in background...")
        for message in self.messages():
            line = self.format(message)
            if line:
                self.output.write(line)
                self.output.flush()
        self._info("run terminated")