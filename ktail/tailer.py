"""Container tailers.

A tailer streams the log of exactly one container and hands every line
to a callback.  The controller only relies on the ``ContainerTailer``
protocol; ``KubernetesContainerTailer`` is the implementation backed by
the pod log endpoint.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

import aiohttp
from kubernetes_asyncio.client.exceptions import ApiException

from ktail.models.pods import ContainerSpec, LogEvent, PodSnapshot
from ktail.observability.logging import get_logger

_log = get_logger("tailer")

_RE_TIMESTAMP = re.compile(
    r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})$"
)

_HTTP_BAD_REQUEST = 400
_HTTP_NOT_FOUND = 404

# 400 bodies that mean the container will come up; any other 400 is final.
_WAITING_MARKERS = ("is waiting to start", "ContainerCreating", "PodInitializing")


class ContainerTailer(Protocol):
    """Independently startable and stoppable log stream for one container."""

    async def run(self) -> None:
        """Stream until the log ends or ``stop()`` is called; raise on failure."""

    def stop(self) -> None:
        """Request ``run()`` to return.  Idempotent."""


TailerFactory = Callable[[PodSnapshot, ContainerSpec, Callable[[LogEvent], None], bool], ContainerTailer]


class TailerError(Exception):
    """Raised when a tailer gives up after repeated failures."""


def split_timestamp(line: str) -> tuple[datetime | None, str]:
    """Split a ``timestamps=true`` log line into its RFC 3339 time and message.

    Kubelet timestamps carry nanoseconds; they are truncated to microseconds.
    Lines without a leading timestamp are returned unchanged with ``None``.
    """
    head, sep, rest = line.partition(" ")
    m = _RE_TIMESTAMP.match(head)
    if m is None:
        return None, line
    base, fraction, zone = m.groups()
    micros = (fraction or "0")[:6].ljust(6, "0")
    zone = "+00:00" if zone == "Z" else zone
    try:
        ts = datetime.fromisoformat(f"{base}.{micros}{zone}")
    except ValueError:
        return None, line
    return ts, rest if sep else ""


class KubernetesContainerTailer:
    """Follow one container's log through ``read_namespaced_pod_log``.

    Args:
        api:            kubernetes-asyncio ``CoreV1Api``.
        pod:            Pod snapshot owning the container.
        container:      Container to tail.
        on_event:       Called once per log line.
        from_beginning: Stream the whole retained log.  When False only output
                        produced after construction is emitted.
        max_retries:    Consecutive failed attempts tolerated before ``run()``
                        raises ``TailerError``.
    """

    def __init__(
        self,
        api: Any,
        pod: PodSnapshot,
        container: ContainerSpec,
        on_event: Callable[[LogEvent], None],
        from_beginning: bool,
        max_retries: int = 5,
        backoff_base: float = 1.0,
        backoff_max: float = 30.0,
    ) -> None:
        self._api = api
        self._pod = pod
        self._container = container
        self._on_event = on_event
        self._max_retries = max_retries
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max

        self._since: datetime | None = None if from_beginning else datetime.now(tz=UTC)
        self._last_timestamp: datetime | None = None
        self._resume_after: datetime | None = None
        self._response: Any = None
        self._stopped = asyncio.Event()

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    def stop(self) -> None:
        if self._stopped.is_set():
            return
        self._stopped.set()
        response = self._response
        if response is not None:
            response.close()

    async def run(self) -> None:
        failures = 0
        idle_rounds = 0
        while not self._stopped.is_set():
            try:
                received = await self._stream_once()
            except ApiException as exc:
                if self._stopped.is_set():
                    return
                if exc.status == _HTTP_NOT_FOUND:
                    _log.info("tailer_target_gone", pod=self._pod.name, container=self._container.name)
                    return
                if exc.status == _HTTP_BAD_REQUEST:
                    if not _is_waiting(exc):
                        _log.info("tailer_target_rejected", target=self._describe(), reason=_error_text(exc)[:200])
                        return
                    idle_rounds += 1
                    await self._sleep(idle_rounds)
                    continue
                failures += 1
                if failures > self._max_retries:
                    raise TailerError(f"giving up on {self._describe()}: {exc.status} {exc.reason}") from exc
                _log.warning("tailer_request_failed", target=self._describe(), status=exc.status, attempt=failures)
                await self._sleep(failures)
            except (aiohttp.ClientError, TimeoutError) as exc:
                if self._stopped.is_set():
                    return
                failures += 1
                if failures > self._max_retries:
                    raise TailerError(f"giving up on {self._describe()}: {exc}") from exc
                _log.warning("tailer_connection_error", target=self._describe(), error=str(exc), attempt=failures)
                await self._sleep(failures)
            else:
                failures = 0
                if self._stopped.is_set():
                    return
                # The kubelet ends follow streams when the container exits or
                # restarts; reconnect, slowing down while nothing new arrives.
                idle_rounds = 0 if received else idle_rounds + 1
                _log.debug("tailer_stream_ended", target=self._describe(), lines=received)
                if idle_rounds:
                    await self._sleep(idle_rounds)

    async def _stream_once(self) -> int:
        kwargs: dict[str, Any] = {
            "container": self._container.name,
            "follow": True,
            "timestamps": True,
            "_preload_content": False,
        }
        self._resume_after = self._last_timestamp
        since = self._resume_after or self._since
        if since is not None:
            elapsed = datetime.now(tz=UTC) - since
            kwargs["since_seconds"] = max(1, int(elapsed / timedelta(seconds=1)) + 1)

        response = await self._api.read_namespaced_pod_log(self._pod.name, self._pod.namespace, **kwargs)
        self._response = response
        try:
            if not 200 <= response.status <= 299:
                body = await response.text()
                exc = ApiException(status=response.status, reason=body[:200])
                exc.body = body
                raise exc
            if self._stopped.is_set():
                return 0
            received = 0
            async for raw_line in response.content:
                event = self._parse(raw_line)
                if event is not None:
                    received += 1
                    self._on_event(event)
                if self._stopped.is_set():
                    break
            return received
        finally:
            self._response = None
            response.release()

    def _parse(self, raw_line: bytes) -> LogEvent | None:
        text = raw_line.decode("utf-8", errors="replace").rstrip("\r\n")
        ts, message = split_timestamp(text)
        if ts is not None:
            if self._resume_after is not None and ts <= self._resume_after:
                return None
            if self._since is not None and ts < self._since:
                return None
            self._last_timestamp = ts
        return LogEvent(pod=self._pod, container=self._container, timestamp=ts, message=message)

    async def _sleep(self, attempt: int) -> None:
        delay = min(self._backoff_base * (2 ** (attempt - 1)), self._backoff_max)
        try:
            await asyncio.wait_for(self._stopped.wait(), timeout=delay)
        except TimeoutError:
            pass

    def _describe(self) -> str:
        return f"{self._pod.namespace}/{self._pod.name}/{self._container.name}"


def _error_text(exc: ApiException) -> str:
    body = exc.body
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    return " ".join(part for part in (str(exc.reason or ""), str(body or "")) if part)


def _is_waiting(exc: ApiException) -> bool:
    text = _error_text(exc)
    return any(marker in text for marker in _WAITING_MARKERS)


def kubernetes_tailer_factory(api: Any, max_retries: int = 5) -> TailerFactory:
    """Build a controller tailer factory bound to *api*."""

    def _factory(
        pod: PodSnapshot,
        container: ContainerSpec,
        on_event: Callable[[LogEvent], None],
        from_beginning: bool,
    ) -> ContainerTailer:
        return KubernetesContainerTailer(
            api,
            pod,
            container,
            on_event,
            from_beginning=from_beginning,
            max_retries=max_retries,
        )

    return _factory
