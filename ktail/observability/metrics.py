"""Prometheus metrics for ktail.

All collectors live in the default registry so that ``--metrics-port``
exposes them without extra wiring.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, start_http_server

watch_events_total = Counter(
    "ktail_watch_events_total",
    "Pod watch notifications received, by type.",
    ["type"],
)

malformed_events_total = Counter(
    "ktail_malformed_events_total",
    "Watch notifications that could not be decoded into a pod.",
    ["reason"],
)

tailers_active = Gauge(
    "ktail_tailers_active",
    "Containers that currently have a registered tailer.",
)

tailer_starts_total = Counter(
    "ktail_tailer_starts_total",
    "Tailers launched since process start.",
)

tailer_errors_total = Counter(
    "ktail_tailer_errors_total",
    "Tailers that terminated with an error.",
)

log_lines_total = Counter(
    "ktail_log_lines_total",
    "Log lines delivered to the event callback.",
)


def start_metrics_server(port: int) -> None:
    """Expose the default registry over HTTP on *port*."""
    start_http_server(port)
