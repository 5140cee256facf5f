import io
import json

from dnsloggers.base import Message
from dnsloggers.stdout import StdOut, StdoutConfig


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
    )


def test_stdout_print():
    buffer = io.StringIO()
    g = StdOut(output=buffer)
    dm = fake_message()
    g.send(dm)
    g.start()
    g.stop()
    assert buffer.getvalue() == dm.to_text(g.text_format)


def test_stdout_json_mode():
    buffer = io.StringIO()
    g = StdOut(StdoutConfig(mode="json"), output=buffer)
    g.send(fake_message())
    g.start()
    g.stop()
    lines = buffer.getvalue().splitlines()
    assert len(lines) == 1
    assert json.loads(lines[0])["dns"]["qname"] == "dns.collector"


def test_own_text_format_overrides_default():
    g = StdOut(StdoutConfig(text_format="qname rcode"), output=io.StringIO())
    assert g.text_format == ["qname", "rcode"]
    assert g.format(fake_message()) == "dns.collector NOERROR\n"


def test_unknown_mode_writes_nothing():
    buffer = io.StringIO()
    g = StdOut(StdoutConfig(mode="xml"), output=buffer)
    g.send(fake_message())
    g.start()
    g.stop()
    assert buffer.getvalue() == ""