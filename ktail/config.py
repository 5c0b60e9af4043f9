"""Configuration loading from environment variables."""

from __future__ import annotations

import os

from ktail.models.config import KtailConfig, LogConfig
from ktail.observability.logging import LOG_FORMATS

OUTPUT_FORMATS = ("text", "json")


def _env(key: str, default: str = "") -> str:
    return os.environ.get(f"KTAIL_{key}", default)


def _env_bool(key: str, default: bool = False) -> bool:
    val = _env(key, str(default).lower())
    return val.lower() in ("true", "1", "yes")


def _env_int(key: str, default: int, min_val: int | None = None, max_val: int | None = None) -> int:
    val = int(_env(key, str(default)))
    if min_val is not None:
        val = max(val, min_val)
    if max_val is not None:
        val = min(val, max_val)
    return val


def _env_float(key: str, default: float) -> float:
    return float(_env(key, str(default)))


def validate_log_level(value: str) -> str:
    valid = {"debug", "info", "warning", "error"}
    if value.lower() not in valid:
        raise ValueError(f"Invalid log level: {value}. Must be one of {valid}")
    return value.lower()


def validate_log_format(value: str) -> str:
    if value.lower() not in LOG_FORMATS:
        raise ValueError(f"Invalid log format: {value}. Must be one of {LOG_FORMATS}")
    return value.lower()


def validate_output(value: str) -> str:
    if value.lower() not in OUTPUT_FORMATS:
        raise ValueError(f"Invalid output format: {value}. Must be one of {OUTPUT_FORMATS}")
    return value.lower()


def load_config() -> KtailConfig:
    """Load configuration from KTAIL_* environment variables."""
    return KtailConfig(
        namespace=_env("NAMESPACE", "default"),
        all_namespaces=_env_bool("ALL_NAMESPACES", False),
        selector=_env("SELECTOR", ""),
        output=validate_output(_env("OUTPUT", "text")),
        timestamps=_env_bool("TIMESTAMPS", False),
        quiet=_env_bool("QUIET", False),
        kubeconfig=_env("KUBECONFIG", ""),
        context=_env("CONTEXT", ""),
        watch_timeout_seconds=_env_int("WATCH_TIMEOUT", 300, min_val=30, max_val=3600),
        shutdown_timeout_seconds=_env_float("SHUTDOWN_TIMEOUT", 10.0),
        tailer_max_retries=_env_int("TAILER_MAX_RETRIES", 5, min_val=0, max_val=20),
        metrics_port=_env_int("METRICS_PORT", 0, min_val=0, max_val=65535),
        log=LogConfig(
            level=validate_log_level(_env("LOG_LEVEL", "warning")),
            format=validate_log_format(_env("LOG_FORMAT", "auto")),
        ),
    )
