import base64
import time
import urllib.error
import urllib.request

import pytest

from dnsloggers.base import QUERY, REPLY, Message
from dnsloggers.prometheus import Prometheus, PrometheusConfig

PREFIX = "dnstest"
LOGIN = "admin"


def _auth_header(login, secret):
    return "Basic " + base64.b64encode(f"{login}:{secret}".encode()).decode()


def _message(identity="ns1", msg_type=QUERY, rcode="NOERROR"):
    return Message(identity=identity, msg_type=msg_type, rcode=rcode, qname="dns.collector")


@pytest.fixture
def prom():
    password = "password"
    return Prometheus(
        PrometheusConfig(
            listen_ip="127.0.0.1",
            listen_port=0,
            prom_prefix=PREFIX,
            basic_auth_login=LOGIN,
            basic_auth_pwd=password,
        ),
        version="dev",
    )


def test_empty_metrics(prom):
    assert prom.render_metrics() == ""


def test_record_queries_and_replies(prom):
    queries = 3
    for _ in range(queries):
        prom.record(_message())
    prom.record(_message(msg_type=REPLY))
    lines = prom.render_metrics().splitlines()
    assert f'{PREFIX}_queries_total{{stream="ns1"}} {queries}' in lines
    assert f'{PREFIX}_replies_total{{stream="ns1"}} 1' in lines


def test_record_rcodes_per_stream(prom):
    prom.record(_message(identity="a", rcode="NXDOMAIN"))
    prom.record(_message(identity="b", rcode="NOERROR"))
    lines = prom.render_metrics().splitlines()
    assert f'{PREFIX}_rcodes_total{{stream="a",rcode="NXDOMAIN"}} 1' in lines
    assert f'{PREFIX}_rcodes_total{{stream="b",rcode="NOERROR"}} 1' in lines


def test_help_and_type_lines(prom):
    prom.record(_message())
    lines = prom.render_metrics().splitlines()
    assert f"# HELP {PREFIX}_queries_total The total number of received queries" in lines
    assert f"# TYPE {PREFIX}_queries_total counter" in lines
    assert not any(line.startswith(f"# HELP {PREFIX}_replies_total") for line in lines)


def test_families_sorted_by_name(prom):
    prom.record(_message(msg_type=REPLY))
    prom.record(_message())
    names = [line.split()[2] for line in prom.render_metrics().splitlines() if line.startswith("# TYPE")]
    assert names == sorted(names)
    assert len(names) == 3


def test_label_values_escaped(prom):
    prom.record(_message(identity='x"y'))
    assert f'{PREFIX}_queries_total{{stream="x\\"y"}} 1' in prom.render_metrics().splitlines()


def test_basic_auth(prom):
    password = "password"
    assert prom.check_basic_auth(_auth_header(LOGIN, password)) is True
    assert prom.check_basic_auth(_auth_header(LOGIN, "secret")) is False
    assert prom.check_basic_auth(None) is False
    assert prom.check_basic_auth("Bearer token") is False
    assert prom.check_basic_auth("Basic !!!") is False


def test_http_metrics_endpoint(prom):
    with prom:
        deadline = time.monotonic() + 5
        while prom.server_address is None and time.monotonic() < deadline:
            time.sleep(0.01)
        prom.send(_message())
        expected = f'{PREFIX}_queries_total{{stream="ns1"}} 1'
        while expected not in prom.render_metrics() and time.monotonic() < deadline:
            time.sleep(0.01)
        port = prom.server_address[1]
        with urllib.request.urlopen(f"http://127.0.0.1:{port}/metrics", timeout=5) as response:
            body = response.read().decode()
            status = response.status
        with pytest.raises(urllib.error.HTTPError) as excinfo:
            urllib.request.urlopen(f"http://127.0.0.1:{port}/other", timeout=5)
        excinfo.value.close()
    assert status == 200
    assert expected in body.splitlines()
    assert excinfo.value.code == 404