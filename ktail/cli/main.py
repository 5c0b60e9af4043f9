"""``ktail`` command: tail the logs of every matching container.

    ktail [PATTERN]... [-n NAMESPACE | -A] [-l SELECTOR] [-x PATTERN]...

Patterns are regular expressions matched against the pod name and against
``pod/container``; with no pattern every container is included.  Log lines
go to stdout; container enter/exit notices and errors go to stderr.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

import click

from ktail import __version__
from ktail.app import main as run_app
from ktail.config import OUTPUT_FORMATS, load_config, validate_log_level
from ktail.controller.controller import Callbacks
from ktail.models.config import KtailConfig
from ktail.models.pods import ContainerSpec, LogEvent, PodSnapshot
from ktail.observability.logging import get_logger
from ktail.output import LineFormatter
from ktail.selectors import LabelSelector, SelectorError

_log = get_logger("cli")


@dataclass
class ContainerFilter:
    """Include/exclude regex patterns applied on admission."""

    include: list[re.Pattern[str]] = field(default_factory=list)
    exclude: list[re.Pattern[str]] = field(default_factory=list)

    @classmethod
    def compile(cls, include: Sequence[str], exclude: Sequence[str]) -> ContainerFilter:
        """Compile pattern strings; raises ``re.error`` on bad syntax."""
        return cls(
            include=[re.compile(p) for p in include],
            exclude=[re.compile(p) for p in exclude],
        )

    def matches(self, pod: PodSnapshot, container: ContainerSpec) -> bool:
        candidates = (pod.name, f"{pod.name}/{container.name}")
        if any(p.search(c) for p in self.exclude for c in candidates):
            return False
        if not self.include:
            return True
        return any(p.search(c) for p in self.include for c in candidates)


def build_callbacks(
    container_filter: ContainerFilter,
    formatter: LineFormatter,
    quiet: bool = False,
    echo: Callable[..., None] = click.echo,
) -> Callbacks:
    """Callbacks that print lines to stdout and lifecycle notices to stderr."""

    def on_event(event: LogEvent) -> None:
        echo(formatter.format(event))

    def on_enter(pod: PodSnapshot, container: ContainerSpec) -> bool:
        if not container_filter.matches(pod, container):
            return False
        if not quiet:
            echo(click.style(f"+ {pod.namespace}/{pod.name}/{container.name}", fg="green"), err=True)
        return True

    def on_exit(pod: PodSnapshot, container: ContainerSpec) -> None:
        if not quiet:
            echo(click.style(f"- {pod.namespace}/{pod.name}/{container.name}", fg="red"), err=True)

    def on_error(pod: PodSnapshot, container: ContainerSpec, error: BaseException) -> None:
        _log.error("container_tail_failed", namespace=pod.namespace, pod=pod.name, container=container.name, error=str(error))
        echo(click.style(f"! {pod.namespace}/{pod.name}/{container.name}: {error}", fg="red", bold=True), err=True)

    return Callbacks(on_event=on_event, on_enter=on_enter, on_exit=on_exit, on_error=on_error)


def apply_overrides(config: KtailConfig, **options: object) -> KtailConfig:
    """Copy every CLI option that was given (not None) onto *config*.

    Flags only ever switch a setting on, so an unset flag is passed as None.
    """
    for name, value in options.items():
        if value is None:
            continue
        if name == "log_level":
            config.log.level = validate_log_level(str(value))
        else:
            setattr(config, name, value)
    return config


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.argument("patterns", nargs=-1)
@click.option("-n", "--namespace", default=None, help="Namespace to watch (default: KTAIL_NAMESPACE or 'default').")
@click.option("-A", "--all-namespaces", "all_namespaces", is_flag=True, default=False, help="Watch every namespace.")
@click.option("-l", "--selector", default=None, help="Label selector, e.g. 'app=web,tier!=cache'.")
@click.option("-x", "--exclude", multiple=True, help="Regex of pods or pod/container to skip. Repeatable.")
@click.option("--context", default=None, help="Kubeconfig context to use.")
@click.option("--kubeconfig", default=None, type=click.Path(dir_okay=False), help="Path to a kubeconfig file.")
@click.option("-o", "--output", default=None, type=click.Choice(OUTPUT_FORMATS), help="Line format.")
@click.option("-t", "--timestamps", is_flag=True, default=False, help="Prefix lines with their timestamp.")
@click.option("-q", "--quiet", is_flag=True, default=False, help="Do not announce containers entering or leaving.")
@click.option("--log-level", default=None, type=click.Choice(["debug", "info", "warning", "error"]))
@click.option("--metrics-port", default=None, type=click.IntRange(0, 65535), help="Serve Prometheus metrics.")
@click.version_option(__version__, prog_name="ktail")
@click.pass_context
def cli(
    ctx: click.Context,
    patterns: tuple[str, ...],
    namespace: str | None,
    all_namespaces: bool,
    selector: str | None,
    exclude: tuple[str, ...],
    context: str | None,
    kubeconfig: str | None,
    output: str | None,
    timestamps: bool,
    quiet: bool,
    log_level: str | None,
    metrics_port: int | None,
) -> None:
    """Tail the logs of every container in pods matching PATTERN."""
    try:
        config = load_config()
    except ValueError as exc:
        raise click.UsageError(f"invalid KTAIL_* environment: {exc}") from exc

    apply_overrides(
        config,
        namespace=namespace,
        all_namespaces=all_namespaces or None,
        selector=selector,
        context=context,
        kubeconfig=kubeconfig,
        output=output,
        timestamps=timestamps or None,
        quiet=quiet or None,
        log_level=log_level,
        metrics_port=metrics_port,
    )

    try:
        label_selector = LabelSelector.parse(config.selector)
    except SelectorError as exc:
        raise click.BadParameter(str(exc), param_hint="'-l' / '--selector'") from exc

    try:
        container_filter = ContainerFilter.compile(patterns, exclude)
    except re.error as exc:
        raise click.BadParameter(f"invalid pattern: {exc}", param_hint="PATTERN / '-x'") from exc

    formatter = LineFormatter(
        output=config.output,
        timestamps=config.timestamps,
        multi_namespace=config.all_namespaces,
    )
    callbacks = build_callbacks(container_filter, formatter, quiet=config.quiet)
    ctx.exit(asyncio.run(run_app(config, label_selector, callbacks)))
