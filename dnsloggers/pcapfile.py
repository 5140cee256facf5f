"""Logger that writes DNS messages as synthetic packets into a rotating pcap file."""

from __future__ import annotations

import gzip
import ipaddress
import logging
import os
import queue
import re
import shutil
import struct
import subprocess
import time
from dataclasses import dataclass
from typing import BinaryIO, Optional

from .base import _STOP, REPLY, Logger, Message
from .logfile import COMPRESS_SUFFIX

PCAP_MAGIC = 0xA1B2C3D4
PCAP_VERSION_MAJOR = 2
PCAP_VERSION_MINOR = 4
SNAPLEN = 65536
LINKTYPE_ETHERNET = 1
ETHERTYPE_IPV4 = 0x0800
ETHERTYPE_IPV6 = 0x86DD
IPPROTO_TCP = 6
IPPROTO_UDP = 17
TCP_FLAG_PSH = 0x08
TCP_WINDOW = 65535
IPV4_TTL = 64
MIN_FRAME_SIZE = 60

_FILE_HEADER = struct.Struct("<IHHiIII")
_RECORD_HEADER = struct.Struct("<IIII")


def _port(value: str) -> int:
    try:
        return int(value) & 0xFFFF
    except ValueError:
        return 0


def endpoints(message: Message) -> tuple[str, int, str, int]:
    """Return (source ip, source port, destination ip, destination port) for a message."""
    default_ip = "::" if message.family == "INET6" else "0.0.0.0"
    src_ip, src_port = default_ip, 53
    dst_ip, dst_port = default_ip, 53
    if message.query_ip != "-":
        src_ip, src_port = message.query_ip, _port(message.query_port)
    if message.response_ip != "-":
        dst_ip, dst_port = message.response_ip, _port(message.response_port)
    if message.msg_type == REPLY:
        src_ip, src_port, dst_ip, dst_port = dst_ip, dst_port, src_ip, src_port
    return src_ip, src_port, dst_ip, dst_port


def _checksum(data: bytes) -> int:
    if len(data) % 2:
        data += b"\x00"
    total = sum(struct.unpack(f"!{len(data) // 2}H", data))
    while total >> 16:
        total = (total & 0xFFFF) + (total >> 16)
    return ~total & 0xFFFF


def _address_bytes(text: str, ipv6: bool) -> bytes:
    address = ipaddress.ip_address(text)
    if ipv6:
        if isinstance(address, ipaddress.IPv4Address):
            address = ipaddress.IPv6Address(f"::ffff:{address}")
        return address.packed
    if not isinstance(address, ipaddress.IPv4Address):
        raise ValueError(f"invalid IPv4 address: {text}")
    return address.packed


def _pseudo_header(src: bytes, dst: bytes, proto: int, length: int, ipv6: bool) -> bytes:
    if ipv6:
        return src + dst + struct.pack("!I3xB", length, proto)
    return src + dst + struct.pack("!xBH", proto, length)


def _udp_segment(src: bytes, dst: bytes, sport: int, dport: int, data: bytes, ipv6: bool) -> bytes:
    length = 8 + len(data)
    segment = struct.pack("!HHHH", sport, dport, length, 0) + data
    csum = _checksum(_pseudo_header(src, dst, IPPROTO_UDP, length, ipv6) + segment)
    if csum == 0:
        csum = 0xFFFF
    return segment[:6] + struct.pack("!H", csum) + segment[8:]


def _tcp_segment(src: bytes, dst: bytes, sport: int, dport: int, data: bytes, ipv6: bool) -> bytes:
    segment = struct.pack(
        "!HHIIBBHHH", sport, dport, 0, 0, 5 << 4, TCP_FLAG_PSH, TCP_WINDOW, 0, 0
    ) + data
    csum = _checksum(_pseudo_header(src, dst, IPPROTO_TCP, len(segment), ipv6) + segment)
    return segment[:16] + struct.pack("!H", csum) + segment[18:]


def _ipv4_header(src: bytes, dst: bytes, proto: int, payload_length: int) -> bytes:
    header = struct.pack(
        "!BBHHHBBH4s4s", 0x45, 0, 20 + payload_length, 0, 0, IPV4_TTL, proto, 0, src, dst
    )
    return header[:10] + struct.pack("!H", _checksum(header)) + header[12:]


def _ipv6_header(src: bytes, dst: bytes, proto: int, payload_length: int) -> bytes:
    return struct.pack("!IHBB", 6 << 28, payload_length, proto, 0) + src + dst


def build_packet(message: Message) -> Optional[bytes]:
    """Build an Ethernet frame carrying the message; None for unsupported family or protocol."""
    if message.family not in ("INET", "INET6") or message.protocol not in ("UDP", "TCP"):
        return None
    ipv6 = message.family == "INET6"
    src_ip, src_port, dst_ip, dst_port = endpoints(message)
    src = _address_bytes(src_ip, ipv6)
    dst = _address_bytes(dst_ip, ipv6)
    if message.protocol == "UDP":
        proto = IPPROTO_UDP
        segment = _udp_segment(src, dst, src_port, dst_port, message.payload, ipv6)
    else:
        proto = IPPROTO_TCP
        data = struct.pack("!H", message.length & 0xFFFF) + message.payload
        segment = _tcp_segment(src, dst, src_port, dst_port, data, ipv6)
    if ipv6:
        ethertype = ETHERTYPE_IPV6
        network = _ipv6_header(src, dst, proto, len(segment))
    else:
        ethertype = ETHERTYPE_IPV4
        network = _ipv4_header(src, dst, proto, len(segment))
    frame = bytes(12) + struct.pack("!H", ethertype) + network + segment
    return frame.ljust(MIN_FRAME_SIZE, b"\x00")


@dataclass
class PcapFileConfig:
    file_path: str = "dnscollector.pcap"
    max_size: int = 100
    max_files: int = 10
    compress: bool = False
    compress_interval: float = 5
    post_rotate_command: str = ""
    post_rotate_delete: bool = False


class PcapWriter(Logger):
    """Writes messages as packets to a pcap file, rotating it when it grows too large."""

    name = "logger to pcap file"

    def __init__(self, config: Optional[PcapFileConfig] = None, *, log: Optional[logging.Logger] = None):
        super().__init__(log)
        self.config = config or PcapFileConfig()
        path = self.config.file_path
        self.filedir = os.path.dirname(path) or "."
        self.filename = os.path.basename(path)
        self.fileprefix, self.fileext = os.path.splitext(self.filename)
        self.size = 0
        self._file: Optional[BinaryIO] = None
        self.open_file()

    @property
    def max_size(self) -> int:
        """Maximum file size in bytes."""
        return 1024 * 1024 * self.config.max_size

    def open_file(self) -> None:
        """Open the capture file for appending, writing the pcap header to a new file."""
        self._file = open(self.config.file_path, "ab", buffering=0)
        self.size = os.stat(self.config.file_path).st_size
        if self.size == 0:
            self._file.write(
                _FILE_HEADER.pack(
                    PCAP_MAGIC, PCAP_VERSION_MAJOR, PCAP_VERSION_MINOR, 0, 0, SNAPLEN, LINKTYPE_ETHERNET
                )
            )

    def write(self, message: Message, packet: bytes) -> None:
        """Append one packet stamped with the message time, rotating first if needed."""
        if self.size + len(packet) > self.max_size:
            try:
                self.rotate()
            except OSError as exc:
                self._error("failed to rotate file: %s", exc)
                return
        total_ns = message.time_sec * 1_000_000_000 + message.time_nsec
        seconds, nanos = divmod(total_ns, 1_000_000_000)
        record = _RECORD_HEADER.pack(seconds, nanos // 1000, len(packet), len(packet))
        self._file.write(record + packet)
        self.size += len(packet)

    def _archive_pattern(self, anchored_end: bool) -> re.Pattern:
        pattern = rf"^{re.escape(self.fileprefix)}-(?P<ts>\d+){re.escape(self.fileext)}"
        return re.compile(pattern + ("$" if anchored_end else ""))

    def _plain_files(self) -> list[str]:
        with os.scandir(self.filedir) as entries:
            return [entry.name for entry in entries if not entry.is_dir()]

    def cleanup(self) -> None:
        """Remove the oldest rotated files beyond the configured maximum."""
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
        """Gzip every rotated capture and remove the uncompressed original."""
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
                self._error("compress - failed to compress pcap file: %s", exc)
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
        self._file.close()
        archived = os.path.join(
            self.filedir, f"{self.fileprefix}-{int(time.time())}{self.fileext}"
        )
        os.rename(self.config.file_path, archived)
        self.post_rotate_command(archived)
        try:
            self.cleanup()
        except OSError as exc:
            self._error("unable to cleanup pcap files: %s", exc)
            raise
        try:
            self.open_file()
        except OSError as exc:
            self._error("unable to re-create pcap file: %s", exc)

    def _handle(self, message: Message) -> None:
        try:
            packet = build_packet(message)
        except (ValueError, struct.error) as exc:
            self._error("unable to build packet: %s", exc)
            return
        if packet is not None:
            self.write(message, packet)

    def run(self) -> None:
        self._info("running in background...")
        interval = self.config.compress_interval
        deadline = time.monotonic() + interval
        while True:
            try:
                item = self.queue.get(timeout=max(0.0, deadline - time.monotonic()))
            except queue.Empty:
                item = None
            if item is _STOP:
                self._info("channel closed")
                break
            if item is not None:
                self._handle(item)
            if time.monotonic() >= deadline:
                if self.config.compress:
                    self.compress()
                deadline = time.monotonic() + interval
        self._info("run terminated")

    def stop(self) -> None:
        super().stop()
        if self._file is not None and not self._file.closed:
            self._info("closing file")
            self._file.close()