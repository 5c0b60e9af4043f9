"""Formatting of tailed log lines for the terminal."""

from __future__ import annotations

import json
import zlib
from datetime import UTC

import click

from ktail.models.pods import LogEvent

_POD_COLORS = ("cyan", "green", "yellow", "blue", "magenta", "bright_cyan", "bright_green", "bright_magenta")


def pod_color(pod_name: str) -> str:
    """Stable color for a pod, so its lines are recognisable across a session."""
    return _POD_COLORS[zlib.crc32(pod_name.encode("utf-8")) % len(_POD_COLORS)]


class LineFormatter:
    """Renders ``LogEvent`` values as ``text`` or ``json`` lines."""

    def __init__(self, output: str = "text", timestamps: bool = False, multi_namespace: bool = False) -> None:
        self._output = output
        self._timestamps = timestamps
        self._multi_namespace = multi_namespace

    def format(self, event: LogEvent) -> str:
        if self._output == "json":
            return self._format_json(event)
        return self._format_text(event)

    def _format_text(self, event: LogEvent) -> str:
        pod_name = event.pod.name
        if self._multi_namespace:
            pod_name = f"{event.pod.namespace}/{pod_name}"
        prefix = click.style(f"{pod_name}:{event.container.name}", fg=pod_color(event.pod.name))
        if self._timestamps and event.timestamp is not None:
            stamp = event.timestamp.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
            prefix = f"{click.style(stamp, dim=True)} {prefix}"
        return f"{prefix} {event.message}"

    def _format_json(self, event: LogEvent) -> str:
        record: dict[str, object] = {
            "namespace": event.pod.namespace,
            "pod": event.pod.name,
            "container": event.container.name,
            "message": event.message,
        }
        if event.timestamp is not None:
            record["timestamp"] = event.timestamp.isoformat()
        return json.dumps(record, ensure_ascii=False)
