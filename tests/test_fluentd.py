import socket

import msgpack
import pytest

from dnsloggers.base import Message
from dnsloggers.fluentd import FluentdClient, FluentdConfig, encode_event


def fake_message():
    return Message(
        identity="collector",
        operation="CLIENT_QUERY",
        time_sec=1000,
        family="INET",
        protocol="UDP",
        query_ip="1.2.3.4",
        query_port="1234",
        response_ip="4.3.2.1",
        response_port="53",
        qname="dns.collector",
        qtype="A",
        rcode="NOERROR",
    )


@pytest.fixture
def server():
    with socket.create_server(("127.0.0.1", 0)) as srv:
        srv.settimeout(5)
        yield srv


def read_event(conn):
    unpacker = msgpack.Unpacker(raw=False)
    while True:
        chunk = conn.recv(4096)
        if not chunk:
            raise AssertionError("connection closed before an event arrived")
        unpacker.feed(chunk)
        for event in unpacker:
            return event


def test_fluent_client_run(server):
    port = server.getsockname()[1]
    g = FluentdClient(FluentdConfig(remote_port=port))
    g.start()
    try:
        conn, _ = server.accept()
        with conn:
            conn.settimeout(5)
            dm = fake_message()
            g.send(dm)
            tag, when, record = read_event(conn)
    finally:
        g.stop()
    assert tag == "dns.collector"
    assert when == dm.time_sec
    assert Message.from_dict(record).qname == dm.qname


def test_encode_event_starts_with_array_of_three():
    assert encode_event("dns.collector", fake_message())[:1] == b"\x93"


def test_encode_event_round_trip():
    dm = fake_message()
    tag, when, record = msgpack.unpackb(encode_event("dns.collector", dm))
    assert (tag, when) == ("dns.collector", dm.time_sec)
    assert Message.from_dict(record) == dm