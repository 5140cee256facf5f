"""Output backends that deliver DNS messages to stdout, syslog, sockets, files and services."""

__version__ = "0.1.0"