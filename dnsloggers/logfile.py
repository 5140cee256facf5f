"""Logger that appends DNS messages to a rotating, optionally compressed file."""

from __future__ import annotations

import gzip
import logging
import os
import queue
import re
import shutil
import subprocess
import time
from dataclasses import dataclass
from typing import BinaryIO, Optional

from .base import _STOP, DEFAULT_TEXT_FORMAT, Logger, Message, resolve_text_format

COMPRESS_SUFFIX = ".gz"


@dataclass
class LogFileConfig:
    file_path: str = "dnscollector.log"
    max_size: int = 100
    max_files: int = 10
    flush_interval: float = 10
    compress: bool = False
    compress_interval: float = 5
    post_rotate_command: str = ""
    post_rotate_delete: bool = False
    mode: str = "text"
    text_format: str = ""


class LogFile(Logger):
    """Writes messages to a file, rotating it once it would exceed its maximum size."""

    name = "logger to file"

    def __init__(
        self,
        config: Optional[LogFileConfig] = None,
        *,
        log: Optional[logging.Logger] = None,
        default_text_format: str = DEFAULT_TEXT_FORMAT,
    ):
        super().__init__(log)
        self.config = config or LogFileConfig()
        path = self.config.file_path
        self.filedir = os.path.dirname(path) or "."
        self.filename = os.path.basename(path)
        self.fileprefix, self.fileext = os.path.splitext(self.filename)
        self.text_format = resolve_text_format(self.config.text_format, default_text_format)
        self.size = 0
        self._file: Optional[BinaryIO] = None
        self.open_file()

    @property
    def max_size(self) -> int:
        """Maximum file size in bytes."""
        return 1024 * 1024 * self.config.max_size

    def open_file(self) -> None:
        """Open the log file for appending and record its current size."""
        self._file = open(self.config.file_path, "ab")
        self.size = os.stat(self.config.file_path).st_size

    def write(self, data: bytes) -> None:
        """Append data, rotating the file first when it would grow too large."""
        if self.size + len(data) > self.max_size:
            try:
                self.rotate()
            except OSError as exc:
                self._error("failed to rotate file: %s", exc)
                return
        written = self._file.write(data)
        self.size += written

    def flush(self) -> None:
        if self._file is not None and not self._file.closed:
            self._file.flush()

    def _archive_pattern(self, anchored_end: bool) -> re.Pattern:
        pattern = rf"^{re.escape(self.fileprefix)}-(?P<ts>\d+){re.escape(self.fileext)}"
        return re.compile(pattern + ("$" if anchored_end else ""))

    def _plain_files(self) -> list[str]:
        with os.scandir(self.filedir) as entries:
            return [entry.name for entry in entries if not entry.is_dir()]

    def cleanup(self) -> None:
        """Remove the oldest rotated files beyond the configured maximum."""
        if self.config.max_files == 0:
            return
        pattern = self._archive_pattern(anchored_end=False)
        stamps = sorted(
            int(match.group("ts"))
            for match in map(pattern.match, self._plain_files())
            if match
        )
        excess = len(stamps) - self.config.max_files
        for stamp in stamps[: max(excess, 0)]:
            target = os.path.join(self.filedir, f"{self.fileprefix}-{stamp}{self.fileext}")
            if not os.path.exists(target):
                target += COMPRESS_SUFFIX
            try:
                os.remove(target)
            except OSError:
                pass

    def compress(self) -> None:
        """Gzip every rotated file and remove the uncompressed original."""
        try:
            names = self._plain_files()
        except OSError as exc:
            self._error("unable to list all files: %s", exc)
            return
        pattern = self._archive_pattern(anchored_end=True)
        for name in filter(pattern.match, names):
            src = os.path.join(self.filedir, name)
            dst = src + COMPRESS_SUFFIX
            try:
                mode = os.stat(src).st_mode
                with open(src, "rb") as source, gzip.open(dst, "wb") as target:
                    shutil.copyfileobj(source, target)
                os.chmod(dst, mode)
                os.remove(src)
            except OSError as exc:
                self._error("compress - failed to compress log file: %s", exc)
                try:
                    os.remove(dst)
                except OSError:
                    pass

    def post_rotate_command(self, filename: str) -> None:
        """Run the configured command on a rotated file, deleting it on success if asked."""
        command = self.config.post_rotate_command
        if not command:
            return
        try:
            result = subprocess.run([command, filename], capture_output=True)
        except OSError as exc:
            self._error("postrotate command error: %s", exc)
            return
        if result.returncode != 0:
            self._error("postrotate command error: exit status %d", result.returncode)
            self._error("postrotate output: %s", result.stdout.decode(errors="replace"))
        elif self.config.post_rotate_delete:
            try:
                os.remove(filename)
            except OSError:
                pass

    def rotate(self) -> None:
        """Close the current file, rename it with a timestamp and open a fresh one."""
        self.flush()
        self._file.close()
        archived = os.path.join(
            self.filedir, f"{self.fileprefix}-{time.time_ns()}{self.fileext}"
        )
        os.rename(self.config.file_path, archived)
        self.post_rotate_command(archived)
        try:
            self.cleanup()
        except OSError as exc:
            self._error("unable to cleanup log files: %s", exc)
            raise
        self.open_file()

    def _encode(self, message: Message) -> bytes:
        if self.config.mode == "text":
            return message.to_text(self.text_format, "\n").encode()
        if self.config.mode == "json":
            return (message.to_json() + "\n").encode()
        return b""

    def run(self) -> None:
        self._info("running in background...")
        flush_interval = self.config.flush_interval
        compress_interval = self.config.compress_interval
        now = time.monotonic()
        next_flush = now + flush_interval
        next_compress = now + compress_interval
        while True:
            timeout = max(0.0, min(next_flush, next_compress) - time.monotonic())
            try:
                item = self.queue.get(timeout=timeout)
            except queue.Empty:
                item = None
            if item is _STOP:
                self._info("channel closed")
                break
            if item is not None:
                data = self._encode(item)
                if data:
                    self.write(data)
            now = time.monotonic()
            if now >= next_flush:
                self.flush()
                next_flush = now + flush_interval
            if now >= next_compress:
                if self.config.compress:
                    self.compress()
                next_compress = now + compress_interval
        self.flush()
        self._info("run terminated")

    def stop(self) -> None:
        super().stop()
        if self._file is not None and not self._file.closed:
            self._info("closing file")
            self._file.close()