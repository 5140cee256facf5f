# dnsloggers

Output backends for a stream of collected DNS messages. Each backend takes
messages one by one and delivers them somewhere: standard output, a syslog
daemon, a remote TCP or Unix socket collector, a Fluentd forwarder, a
rotating log file, an InfluxDB bucket, a rotating pcap capture, a Prometheus
endpoint, a Loki server or a dnstap receiver.

## The message model

`dnsloggers.base.Message` is a dataclass holding one DNS message and its
network context: `identity`, `operation`, `time_sec`, `time_nsec`,
`family`, `protocol`, `query_ip`, `query_port`, `response_ip`,
`response_port`, `msg_type` (`"QUERY"` or `"REPLY"`), `qname`, `qtype`,
`rcode`, `length` and the raw `payload`.

- `to_text(fields, delimiter="\n")` joins the values of text directives
  with spaces. The directives are `timestamp`, `identity`, `operation`,
  `family`, `protocol`, `qip`, `qport`, `rip`, `rport`, `qname`, `qtype`,
  `rcode`, `length` and `type`; an unknown one raises `ValueError`.
- `to_dict()` / `to_json()` give the nested `network`, `dns` and `dnstap`
  document, and `Message.from_dict()` reads it back.

`DEFAULT_TEXT_FORMAT` is the format used when a backend has none of its own,
and `resolve_text_format(value, fallback)` applies that rule.

## How a logger works

Every backend is a `Logger` from `dnsloggers.base`. A logger owns a bounded
queue (512 messages by default) and a background thread:

- `start()` launches the thread, which runs `run()`;
- `send(message)` queues a `Message`, blocking while the queue is full;
- `stop()` asks the worker to finish after the messages already queued and
  waits until it has.

A logger is also a context manager that starts on entry and stops on exit:

```python
from dnsloggers.base import Message
from dnsloggers.stdout import StdOut, StdoutConfig

with StdOut(StdoutConfig(mode="json")) as out:
    out.send(Message(identity="ns1", operation="CLIENT_QUERY", qname="example.com", qtype="A"))
```

Backends that talk over a socket (`TcpClient`, `FluentdClient`,
`DnstapSender`) reconnect on their own after a failure, waiting for the
configured retry interval before trying again. `FakeLogger` accepts
messages and never reads them.

## Backends

| Module | Class | Config | Destination |
| --- | --- | --- | --- |
| `dnsloggers.stdout` | `StdOut` | `StdoutConfig` | standard output (or any text stream), as text or JSON lines |
| `dnsloggers.syslog` | `Syslog` | `SyslogConfig` | the local syslog socket, or a remote server over UDP, TCP or TLS |
| `dnsloggers.tcpclient` | `TcpClient` | `TcpClientConfig` | a TCP or Unix socket, text or JSON followed by a delimiter |
| `dnsloggers.fluentd` | `FluentdClient` | `FluentdConfig` | a Fluentd forward input, msgpack encoded |
| `dnsloggers.logfile` | `LogFile` | `LogFileConfig` | a file with size-based rotation, retention and gzip compression |
| `dnsloggers.influxdb` | `InfluxDBClient` | `InfluxDBConfig` | the InfluxDB v2 HTTP write API, gzip-compressed line protocol in batches |
| `dnsloggers.pcapfile` | `PcapWriter` | `PcapFileConfig` | a pcap file with synthesised Ethernet, IPv4/IPv6 and UDP/TCP headers |
| `dnsloggers.prometheus` | `Prometheus` | `PrometheusConfig` | an HTTP `/metrics` endpoint with query, reply and rcode counters per stream |
| `dnsloggers.lokiclient` | `LokiClient` | `LokiConfig` | the Loki push API, protobuf with snappy compression, one stream per identity |
| `dnsloggers.dnstap` | `DnstapSender` | `DnstapConfig` | a dnstap receiver over bidirectional Frame Streams (TCP or Unix socket) |

Notes on some of them:

- `Syslog` validates its configuration when built: the mode must be `text`
  or `json`, and the severity and facility must be known names, otherwise
  `ValueError` is raised.
- `InfluxDBClient` and `LokiClient` send a batch when it reaches the
  configured batch size and, in any case, every flush interval.
- `Prometheus.record(message)` counts a message,
  `render_metrics()` returns the text exposition, and
  `check_basic_auth(header)` compares an `Authorization` header with the
  configured login and password. The HTTP server is started by `run()`.

## Building blocks

Some of the encoders are usable on their own:

- `dnsloggers.syslog.get_priority(name)` maps a severity or facility name
  such as `"INFO"` or `"LOCAL0"` to its syslog value and raises
  `ValueError` for unknown names.
- `dnsloggers.fluentd.encode_event(tag, message)` builds one Fluentd forward
  event `[tag, time, record]`.
- `dnsloggers.influxdb.to_line_protocol(message)` renders a message as a
  point in the `dns` measurement.
- `dnsloggers.pcapfile.endpoints(message)` returns the source and
  destination addresses and ports (swapped for replies), and
  `build_packet(message)` the Ethernet frame written to the capture, or
  `None` for an unsupported family or protocol.
- `dnsloggers.lokiclient.snappy_encode(data)` produces a snappy block, and
  `LokiStream` collects the pending entries of one identity.
- `dnsloggers.dnstap.encode_dnstap(identity, message)` serialises a dnstap
  protobuf message, and `FrameStreamSender` performs the Frame Streams
  handshake (`init_sender`, `send_frame`, `reset_sender`).

## Log files and pcap files

`LogFile` and `PcapWriter` rotate their output once a write would take it
beyond the configured maximum size (in megabytes). A rotated file is renamed
to `<prefix>-<timestamp><ext>`, the optional post-rotate command is run with
its path as argument (and the file removed afterwards when
`post_rotate_delete` is set and the command succeeds), and only the newest
`max_files` rotated files are kept; for `LogFile`, a `max_files` of 0 keeps
them all. With `compress` enabled, rotated files are gzip-compressed every
`compress_interval` seconds.

## What this package does not do

It is a library of output backends only. It has no command-line program,
does not read a configuration file, and does not capture or decode DNS
traffic itself: the caller builds `Message` objects and hands them to the
loggers.