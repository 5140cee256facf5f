import base64
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import urlsplit

import pytest

from dnsloggers.base import Message
from dnsloggers.lokiclient import LokiClient, LokiConfig, LokiStream, snappy_encode


def fake_message():
    return Message(
        identity="collector",
        operation="CLIENT_QUERY",
        family="INET",
        protocol="UDP",
        query_ip="1.2.3.4",
        query_port="1234",
        response_ip="4.3.2.1",
        response_port="53",
        qname="dns.collector",
        qtype="A",
        rcode="NOERROR",
        length=12,
    )


@pytest.fixture
def server():
    received = []
    event = threading.Event()
    status = {"code": 204}

    class Handler(BaseHTTPRequestHandler):
        def do_POST(self):
            body = self.rfile.read(int(self.headers["Content-Length"]))
            received.append((self.path, dict(self.headers), body))
            self.send_response(status["code"])
            self.send_header("Content-Length", "4")
            self.end_headers()
            self.wfile.write(b"oops")
            event.set()

        def log_message(self, *args):
            pass

    httpd = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    yield httpd.server_address[1], received, event, status
    httpd.shutdown()
    httpd.server_close()


def test_snappy_empty():
    assert snappy_encode(b"") == b"\x00"


def test_snappy_short_literal():
    assert snappy_encode(b"abc") == b"\x03\x08abc"


def test_snappy_long_literal():
    data = b"x" * 100
    assert snappy_encode(data) == b"\x64\xf0\x63" + data


def test_stream_add_and_reset():
    stream = LokiStream("collector", "job")
    stream.add(1_000_000_001, "hello")
    assert stream.size == 5
    assert stream.labels == '{job="job", identity="collector"}'
    encoded = stream.encode()
    assert b"hello" in encoded and b'identity="collector"' in encoded
    stream.reset()
    assert stream.entries == [] and stream.size == 0


def test_loki_client_run(server):
    port, received, event, _ = server
    config = LokiConfig(server_url=f"http://127.0.0.1:{port}/loki/api/v1/push", batch_size=1)
    client = LokiClient(config)
    client.start()
    client.send(fake_message())
    assert event.wait(5)
    client.stop()
    path, headers, body = received[0]
    assert path == urlsplit(client.config.server_url).path
    assert headers["Content-Type"] == "application/x-protobuf"
    assert b"dns.collector" in body


def test_send_entries_basic_auth_and_tenant(server):
    port, received, event, _ = server
    password = "password"
    config = LokiConfig(
        server_url=f"http://127.0.0.1:{port}/push",
        basic_auth_login="admin",
        basic_auth_pwd=password,
        tenant_id="tenant1",
    )
    client = LokiClient(config)
    client.send_entries(b"data")
    _, headers, body = received[0]
    assert body == b"data"
    assert headers["X-Scope-OrgID"] == client.config.tenant_id
    expected_auth = f"{client.config.basic_auth_login}:{client.config.basic_auth_pwd}".encode()
    assert headers["Authorization"] == "Basic " + base64.b64encode(expected_auth).decode()


def test_send_entries_error_status(server):
    port, _, _, status = server
    status["code"] = 500
    client = LokiClient(LokiConfig(server_url=f"http://127.0.0.1:{port}/push"))
    with pytest.raises(OSError, match="500"):
        client.send_entries(b"data")