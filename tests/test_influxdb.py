import gzip
import threading
import urllib.error
import urllib.parse
from http.server import BaseHTTPRequestHandler, HTTPServer

import pytest

from dnsloggers.base import Message
from dnsloggers.influxdb import InfluxDBClient, InfluxDBConfig, to_line_protocol


@pytest.fixture
def message():
    return Message(
        identity="collector",
        operation="CLIENT_QUERY",
        time_sec=1600000000,
        time_nsec=123,
        family="INET",
        protocol="UDP",
        query_ip="1.2.3.4",
        query_port="1234",
        qname="dns.collector",
        qtype="A",
        rcode="NOERROR",
    )


class _Receiver(BaseHTTPRequestHandler):
    def do_POST(self):
        length = int(self.headers["Content-Length"])
        body = self.rfile.read(length)
        self.server.requests.append((self.path, self.headers, body))
        self.send_response(self.server.status)
        self.end_headers()

    def log_message(self, *args):
        pass


@pytest.fixture
def server():
    httpd = HTTPServer(("127.0.0.1", 0), _Receiver)
    httpd.requests = []
    httpd.status = 204
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    yield httpd
    httpd.shutdown()
    httpd.server_close()
    thread.join()


def make_client(server, **kwargs):
    host, port = server.server_address
    config = InfluxDBConfig(
        server_url=f"http://{host}:{port}",
        auth_token="token",
        organization="org",
        bucket="bucket",
        **kwargs,
    )
    return InfluxDBClient(config)


def test_line_protocol(message):
    assert to_line_protocol(message) == (
        "dns,Identity=collector,Qname=dns.collector,QueryIP=1.2.3.4 "
        'Family="INET",Operation="CLIENT_QUERY",Protocol="UDP",Qtype="A",Rcode="NOERROR" '
        "1600000000000000123"
    )


def test_line_protocol_escaping(message):
    message.qname = "my domain,x=1"
    message.rcode = 'a"b'
    line = to_line_protocol(message)
    assert r"Qname=my\ domain\,x\=1" in line
    assert r'Rcode="a\"b"' in line


def test_line_protocol_skips_empty_tag(message):
    message.identity = ""
    assert to_line_protocol(message).startswith("dns,Qname=dns.collector,QueryIP=1.2.3.4 ")


def test_influxdb_run(server, message):
    client = make_client(server, flush_interval=60)
    client.start()
    client.send(message)
    client.stop()
    assert len(server.requests) == 1
    path, headers, body = server.requests[0]
    parsed = urllib.parse.urlparse(path)
    assert parsed.path == "/api/v2/write"
    assert urllib.parse.parse_qs(parsed.query) == {
        "org": ["org"],
        "bucket": ["bucket"],
        "precision": ["ns"],
    }
    assert headers.get("Authorization") == "Token token"
    assert headers.get("Content-Encoding") == "gzip"
    assert gzip.decompress(body).decode() == to_line_protocol(message)


def test_batch_size_triggers_write(server, message):
    client = make_client(server, flush_interval=60, batch_size=2)
    client.start()
    client.send(message)
    client.send(message)
    client.send(message)
    client.stop()
    bodies = [gzip.decompress(body).decode() for _, _, body in server.requests]
    assert [len(b.split("\n")) for b in bodies] == [2, 1]


def test_write_points_http_error(server, message):
    server.status = 401
    client = make_client(server)
    with pytest.raises(urllib.error.HTTPError) as info:
        client.write_points([to_line_protocol(message)])
    assert info.value.code == 401


def test_write_points_empty_sends_nothing(server):
    client = make_client(server)
    client.write_points([])
    assert server.requests == []