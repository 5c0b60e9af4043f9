"""Configuration data structures."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class LogConfig:
    """Logging configuration."""

    level: str = "warning"
    format: str = "auto"


@dataclass
class KtailConfig:
    """Top-level ktail configuration."""

    namespace: str = "default"
    all_namespaces: bool = False
    selector: str = ""
    output: str = "text"
    timestamps: bool = False
    quiet: bool = False
    kubeconfig: str = ""
    context: str = ""
    watch_timeout_seconds: int = 300
    shutdown_timeout_seconds: float = 10.0
    tailer_max_retries: int = 5
    metrics_port: int = 0
    log: LogConfig = field(default_factory=LogConfig)

    @property
    def effective_namespace(self) -> str:
        """Namespace to watch; empty string means every namespace."""
        return "" if self.all_namespaces else self.namespace
