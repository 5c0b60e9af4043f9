"""Tests for the ktail CLI: filters, callbacks, line formatting and option handling."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from unittest.mock import AsyncMock, patch

import click
from click.testing import CliRunner

from ktail.cli.main import ContainerFilter, apply_overrides, build_callbacks, cli
from ktail.models.config import KtailConfig
from ktail.models.pods import ContainerSpec, LogEvent, PodSnapshot
from ktail.output import LineFormatter, pod_color

_POD = PodSnapshot(namespace="shop", name="cart-5d9f-abcde", labels={"app": "cart"}, containers=(ContainerSpec("app"),))
_SIDECAR = ContainerSpec("istio-proxy")
_TS = datetime(2026, 2, 18, 12, 0, 0, 250000, tzinfo=UTC)


def _event(message: str = "checkout ok", timestamp: datetime | None = _TS) -> LogEvent:
    return LogEvent(pod=_POD, container=_POD.containers[0], timestamp=timestamp, message=message)


class _Echo:
    def __init__(self) -> None:
        self.out: list[str] = []
        self.err: list[str] = []

    def __call__(self, message: str, err: bool = False) -> None:
        (self.err if err else self.out).append(click.unstyle(message))


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------


class TestContainerFilter:
    def test_no_patterns_includes_everything(self) -> None:
        assert ContainerFilter.compile([], []).matches(_POD, _SIDECAR)

    def test_include_matches_pod_or_pod_container(self) -> None:
        assert ContainerFilter.compile(["^cart-"], []).matches(_POD, _SIDECAR)
        assert ContainerFilter.compile(["/app$"], []).matches(_POD, _POD.containers[0])
        assert not ContainerFilter.compile(["/app$"], []).matches(_POD, _SIDECAR)
        assert not ContainerFilter.compile(["^billing"], []).matches(_POD, _SIDECAR)

    def test_exclude_wins_over_include(self) -> None:
        f = ContainerFilter.compile(["cart"], ["istio-proxy"])
        assert f.matches(_POD, _POD.containers[0])
        assert not f.matches(_POD, _SIDECAR)


# ---------------------------------------------------------------------------
# Callbacks
# ---------------------------------------------------------------------------


class TestCallbacks:
    def test_enter_exit_notices_go_to_stderr(self) -> None:
        echo = _Echo()
        callbacks = build_callbacks(ContainerFilter(), LineFormatter(), echo=echo)

        assert callbacks.on_enter(_POD, _SIDECAR) is True
        callbacks.on_exit(_POD, _SIDECAR)

        assert echo.err == ["+ shop/cart-5d9f-abcde/istio-proxy", "- shop/cart-5d9f-abcde/istio-proxy"]
        assert echo.out == []

    def test_quiet_suppresses_notices_but_not_errors(self) -> None:
        echo = _Echo()
        callbacks = build_callbacks(ContainerFilter(), LineFormatter(), quiet=True, echo=echo)

        callbacks.on_enter(_POD, _SIDECAR)
        callbacks.on_exit(_POD, _SIDECAR)
        callbacks.on_error(_POD, _SIDECAR, RuntimeError("stream broke"))

        assert echo.err == ["! shop/cart-5d9f-abcde/istio-proxy: stream broke"]

    def test_filtered_container_is_rejected_silently(self) -> None:
        echo = _Echo()
        callbacks = build_callbacks(ContainerFilter.compile([], ["istio"]), LineFormatter(), echo=echo)

        assert callbacks.on_enter(_POD, _SIDECAR) is False
        assert echo.err == []

    def test_log_lines_go_to_stdout(self) -> None:
        echo = _Echo()
        callbacks = build_callbacks(ContainerFilter(), LineFormatter(), echo=echo)

        callbacks.on_event(_event())

        assert echo.out == ["cart-5d9f-abcde:app checkout ok"]


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------


class TestLineFormatter:
    def test_text_with_timestamps(self) -> None:
        line = click.unstyle(LineFormatter(timestamps=True).format(_event()))
        assert line == "2026-02-18T12:00:00.250000Z cart-5d9f-abcde:app checkout ok"

    def test_text_without_timestamp_value(self) -> None:
        line = click.unstyle(LineFormatter(timestamps=True).format(_event(timestamp=None)))
        assert line == "cart-5d9f-abcde:app checkout ok"

    def test_multi_namespace_prefix(self) -> None:
        line = click.unstyle(LineFormatter(multi_namespace=True).format(_event()))
        assert line.startswith("shop/cart-5d9f-abcde:app ")

    def test_json(self) -> None:
        record = json.loads(LineFormatter(output="json").format(_event("naïve")))
        assert record == {
            "namespace": "shop",
            "pod": "cart-5d9f-abcde",
            "container": "app",
            "message": "naïve",
            "timestamp": "2026-02-18T12:00:00.250000+00:00",
        }

    def test_pod_color_is_stable(self) -> None:
        assert pod_color("cart-5d9f-abcde") == pod_color("cart-5d9f-abcde")


# ---------------------------------------------------------------------------
# Command
# ---------------------------------------------------------------------------


class TestCommand:
    def test_apply_overrides_skips_unset_options(self) -> None:
        config = KtailConfig(namespace="from-env", quiet=True)

        apply_overrides(config, namespace=None, quiet=None, selector="app=x", log_level="INFO")

        assert config.namespace == "from-env"
        assert config.quiet is True
        assert config.selector == "app=x"
        assert config.log.level == "info"

    def test_invalid_selector_is_usage_error(self) -> None:
        result = CliRunner().invoke(cli, ["-l", "app in (a"])
        assert result.exit_code == 2
        assert "selector" in result.output

    def test_invalid_pattern_is_usage_error(self) -> None:
        result = CliRunner().invoke(cli, ["cart["])
        assert result.exit_code == 2
        assert "invalid pattern" in result.output

    def test_runs_app_with_resolved_configuration(self) -> None:
        run_app = AsyncMock(return_value=0)
        with patch("ktail.cli.main.run_app", run_app):
            result = CliRunner().invoke(
                cli,
                ["^cart", "-n", "shop", "-l", "app=cart", "-o", "json", "-q"],
                env={"KTAIL_NAMESPACE": "ignored"},
            )

        assert result.exit_code == 0, result.output
        config, selector, callbacks = run_app.await_args.args
        assert config.namespace == "shop"
        assert config.output == "json"
        assert config.quiet is True
        assert str(selector) == "app=cart"
        assert callbacks.on_enter(_POD, _SIDECAR) is True

    def test_startup_failure_exit_code(self) -> None:
        with patch("ktail.cli.main.run_app", AsyncMock(return_value=1)):
            result = CliRunner().invoke(cli, [])
        assert result.exit_code == 1

    def test_bad_environment_is_usage_error(self) -> None:
        result = CliRunner().invoke(cli, [], env={"KTAIL_OUTPUT": "yaml"})
        assert result.exit_code == 2
        assert "KTAIL_" in result.output
