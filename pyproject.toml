[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "dnsloggers"
version = "0.1.0"
description = "Output backends for DNS traffic: stdout, syslog, TCP, Fluentd, log files, InfluxDB, pcap, Prometheus, Loki and dnstap."
requires-python = ">=3.10"
dependencies = [
    "msgpack",
]
keywords = [
    "dns",
    "dnstap",
    "logging",
    "syslog",
    "fluentd",
    "loki",
    "influxdb",
    "prometheus",
    "pcap",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Name Service (DNS)",
    "Topic :: System :: Logging",
    "Topic :: System :: Networking :: Monitoring",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["dnsloggers"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
