from itertools import islice

import pytest

from dnsloggers.base import FakeLogger, Logger, Message, resolve_text_format


def fake_message(**overrides):
    values = dict(
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
    values.update(overrides)
    return Message(**values)


def test_resolve_text_format_prefers_own_value():
    assert resolve_text_format("qname qtype", "identity") == ["qname", "qtype"]


def test_resolve_text_format_falls_back_when_empty():
    assert resolve_text_format("", "identity  rcode") == ["identity", "rcode"]


def test_resolve_text_format_blank_value_gives_no_fields():
    assert resolve_text_format("   ", "identity") == []


def test_to_text_joins_directives():
    msg = fake_message()
    assert msg.to_text(["qname", "qtype", "qip"]) == "dns.collector A 1.2.3.4\n"


def test_to_text_custom_delimiter():
    msg = fake_message()
    assert msg.to_text(["rcode"], delimiter="") == "NOERROR"


def test_timestamp_directive_has_nanoseconds():
    msg = fake_message(time_sec=0, time_nsec=5)
    assert msg.to_text(["timestamp"]) == "1970-01-01T00:00:00.000000005Z\n"


def test_unknown_directive_raises():
    with pytest.raises(ValueError):
        fake_message().to_text(["nosuchfield"])


def test_dict_round_trip():
    msg = fake_message(time_sec=10, time_nsec=20, length=42)
    assert Message.from_dict(msg.to_dict()) == msg


def test_json_is_compact():
    assert '"qname":"dns.collector"' in fake_message().to_json()


def test_logger_drains_queue_on_stop():
    with Logger() as logger:
        logger.send(fake_message())
        logger.send(fake_message(qname="other"))
    assert logger.queue.empty()


def test_logger_cannot_start_twice():
    logger = Logger()
    logger.start()
    try:
        with pytest.raises(RuntimeError):
            logger.start()
    finally:
        logger.stop()


def test_fake_logger_keeps_messages():
    logger = FakeLogger()
    first, second = fake_message(), fake_message(qname="second")
    logger.send(first)
    logger.send(second)
    logger.start()
    logger.stop()
    assert list(islice(logger.messages(), 2)) == [first, second]