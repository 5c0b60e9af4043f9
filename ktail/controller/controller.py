"""Reconciliation controller.

Consumes pod watch events and keeps exactly one running tailer per
admitted container:

* Startup lists every pod first and admits its containers in discovery
  mode (tail only new output), then follows the watch stream, where newly
  added containers are tailed from the beginning.
* ``PodAdded`` admits each container of a matching pod: selector check,
  duplicate check, ``on_enter`` gate, then a tailer task is launched.
* ``PodDeleted`` evicts each container: the entry is removed from the
  registry, its tailer is stopped and ``on_exit`` fires.
* ``PodUpdated`` is ignored; tail targets depend only on pod and
  container names.

Admission holds the registry lock across ``on_enter``, tailer
construction and task launch, so admissions are serialized against each
other and against evictions.
"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from ktail.controller.registry import TailerEntry, TailerRegistry
from ktail.models.events import MalformedEvent, PodAdded, PodDeleted, PodUpdated, WatchEvent
from ktail.models.pods import ContainerKey, ContainerSpec, LogEvent, PodSnapshot
from ktail.observability.logging import get_logger
from ktail.observability.metrics import (
    log_lines_total,
    malformed_events_total,
    tailer_errors_total,
    tailer_starts_total,
)
from ktail.selectors import LabelSelector
from ktail.tailer import TailerFactory

_log = get_logger("controller")

_DEFAULT_SHUTDOWN_TIMEOUT = 10.0

LogEventFunc = Callable[[LogEvent], None]
ContainerEnterFunc = Callable[[PodSnapshot, ContainerSpec], bool]
ContainerExitFunc = Callable[[PodSnapshot, ContainerSpec], None]
ContainerErrorFunc = Callable[[PodSnapshot, ContainerSpec, BaseException], None]


def _ignore_event(event: LogEvent) -> None:
    return None


def _always_enter(pod: PodSnapshot, container: ContainerSpec) -> bool:
    return True


def _ignore_exit(pod: PodSnapshot, container: ContainerSpec) -> None:
    return None


def _ignore_error(pod: PodSnapshot, container: ContainerSpec, error: BaseException) -> None:
    return None


@dataclass
class Callbacks:
    """Hooks the caller integrates against.

    Only ``on_enter``'s return value affects the controller; the others are
    notifications.  Exceptions raised by any hook are logged and contained.
    """

    on_event: LogEventFunc = _ignore_event
    on_enter: ContainerEnterFunc = _always_enter
    on_exit: ContainerExitFunc = _ignore_exit
    on_error: ContainerErrorFunc = _ignore_error


class PodSource(Protocol):
    """What the controller needs from a watch source."""

    async def list_pods(self) -> list[PodSnapshot]: ...

    def events(self) -> Any: ...

    def stop(self) -> None: ...


class StartupError(Exception):
    """Raised by ``Controller.run`` when the initial pod listing fails."""

    def __init__(self, cause: BaseException) -> None:
        super().__init__(f"initial pod listing failed: {cause}")
        self.cause = cause


class Controller:
    """Keeps the tailer registry in line with the pods seen by *source*.

    Args:
        source:           Watch source providing ``list_pods()`` and ``events()``.
        tailer_factory:   ``(pod, container, on_event, from_beginning) -> ContainerTailer``.
        namespace:        Namespace being watched, for logging only.
        selector:         Label selector every admitted pod must match.
        callbacks:        Lifecycle hooks.
        registry:         Registry to use; a fresh one by default.
        shutdown_timeout: Seconds ``shutdown()`` waits for tailer tasks.
    """

    def __init__(
        self,
        source: PodSource,
        tailer_factory: TailerFactory,
        namespace: str = "",
        selector: LabelSelector | None = None,
        callbacks: Callbacks | None = None,
        registry: TailerRegistry | None = None,
        shutdown_timeout: float = _DEFAULT_SHUTDOWN_TIMEOUT,
    ) -> None:
        self._source = source
        self._tailer_factory = tailer_factory
        self._namespace = namespace
        self._selector = selector or LabelSelector()
        self._callbacks = callbacks or Callbacks()
        self._registry = registry if registry is not None else TailerRegistry()
        self._shutdown_timeout = shutdown_timeout
        # Tasks of evicted tailers that may still be winding down.
        self._retired: set[asyncio.Task[None]] = set()

    @property
    def registry(self) -> TailerRegistry:
        return self._registry

    # ------------------------------------------------------------------
    # Event loop
    # ------------------------------------------------------------------

    async def run(self, stop_event: asyncio.Event | None = None) -> None:
        """List, admit discovered containers, then follow the watch stream.

        Returns when the stream ends or *stop_event* is set.  Every tailer is
        shut down before returning, including on error or cancellation.

        Raises:
            StartupError: if the initial listing fails.
        """
        stop_event = stop_event or asyncio.Event()
        try:
            try:
                pods = await self._source.list_pods()
            except Exception as exc:
                _log.error("initial_listing_failed", namespace=self._namespace or "*", error=str(exc))
                raise StartupError(exc) from exc

            for pod in pods:
                await self._on_add(pod, discovery=True)
            _log.info("initial_listing_processed", pods=len(pods), tailers=len(self._registry))

            consumer = asyncio.create_task(self._consume(), name="ktail-watch-loop")
            stopper = asyncio.create_task(stop_event.wait(), name="ktail-stop-wait")
            try:
                done, _ = await asyncio.wait({consumer, stopper}, return_when=asyncio.FIRST_COMPLETED)
                if consumer in done:
                    consumer.result()
            finally:
                self._source.stop()
                for task in (consumer, stopper):
                    task.cancel()
                await asyncio.gather(consumer, stopper, return_exceptions=True)
        finally:
            await self.shutdown()

    async def _consume(self) -> None:
        async for event in self._source.events():
            await self.handle(event)
        _log.info("watch_stream_ended")

    async def handle(self, event: WatchEvent) -> None:
        """Apply one watch event."""
        match event:
            case PodAdded(pod=pod):
                await self._on_add(pod, discovery=False)
            case PodUpdated(new=pod):
                _log.debug("pod_update_ignored", namespace=pod.namespace, pod=pod.name)
            case PodDeleted(pod=pod):
                await self._on_delete(pod)
            case MalformedEvent(event_type=event_type, reason=reason, detail=detail):
                malformed_events_total.labels(reason=reason).inc()
                _log.warning("malformed_watch_event", event_type=event_type, reason=reason, detail=detail)

    async def _on_add(self, pod: PodSnapshot, discovery: bool) -> None:
        if not self._selector.matches(pod.labels):
            return
        for container in pod.containers:
            await self._add_container(pod, container, discovery)

    async def _on_delete(self, pod: PodSnapshot) -> None:
        for container in pod.containers:
            await self._delete_container(pod, container)

    # ------------------------------------------------------------------
    # Admission and eviction
    # ------------------------------------------------------------------

    async def _add_container(self, pod: PodSnapshot, container: ContainerSpec, discovery: bool) -> None:
        key = ContainerKey.of(pod, container)
        async with self._registry.lock:
            if self._registry.contains(key):
                return

            if not self._call_on_enter(pod, container):
                _log.debug("container_rejected", key=str(key))
                return

            # The tailer and on_error see this copy, never the caller's object.
            target_pod, target_container = copy.deepcopy(pod), copy.deepcopy(container)
            tailer = self._tailer_factory(target_pod, target_container, self._emit, not discovery)
            entry = TailerEntry(key=key, pod=target_pod, container=target_container, tailer=tailer)
            self._registry.try_insert(entry)
            entry.task = asyncio.create_task(self._run_tailer(entry), name=f"tailer:{key}")

        _log.info("container_admitted", key=str(key), discovery=discovery)

    async def _delete_container(self, pod: PodSnapshot, container: ContainerSpec) -> None:
        key = ContainerKey.of(pod, container)
        async with self._registry.lock:
            entry = self._registry.remove(key)
            if entry is None:
                return
            self._stop_entry(entry)

        _log.info("container_evicted", key=str(key))
        self._notify("on_exit", pod, container)

    def _stop_entry(self, entry: TailerEntry) -> None:
        try:
            entry.tailer.stop()
        except Exception as exc:
            _log.error("tailer_stop_failed", key=str(entry.key), error=str(exc))
        task = entry.task
        if task is not None and not task.done():
            self._retired.add(task)
            task.add_done_callback(self._retired.discard)

    async def _run_tailer(self, entry: TailerEntry) -> None:
        tailer_starts_total.inc()
        _log.debug("tailer_started", key=str(entry.key))
        try:
            await entry.tailer.run()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            tailer_errors_total.inc()
            _log.warning("tailer_failed", key=str(entry.key), error=str(exc))
            self._notify("on_error", entry.pod, entry.container, exc)
        else:
            _log.debug("tailer_finished", key=str(entry.key))

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def shutdown(self, timeout: float | None = None) -> None:
        """Stop every tailer and wait for their tasks, up to *timeout* seconds.

        Tasks still running at the deadline are cancelled.  Safe to call
        more than once.
        """
        timeout = self._shutdown_timeout if timeout is None else timeout
        async with self._registry.lock:
            entries = self._registry.drain()
            for entry in entries:
                self._stop_entry(entry)

        for entry in entries:
            self._notify("on_exit", entry.pod, entry.container)

        pending = set(self._retired)
        if not pending:
            return
        _log.info("waiting_for_tailers", count=len(pending), timeout=timeout)
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        if still_running:
            _log.warning("tailer_shutdown_timed_out", count=len(still_running), timeout=timeout)
            for task in still_running:
                task.cancel()
            await asyncio.gather(*still_running, return_exceptions=True)

    # ------------------------------------------------------------------
    # Callback plumbing
    # ------------------------------------------------------------------

    def _call_on_enter(self, pod: PodSnapshot, container: ContainerSpec) -> bool:
        try:
            return bool(self._callbacks.on_enter(pod, container))
        except Exception as exc:
            _log.error("callback_failed", callback="on_enter", pod=pod.name, container=container.name, error=str(exc))
            return False

    def _notify(self, name: str, pod: PodSnapshot, container: ContainerSpec, *args: Any) -> None:
        try:
            getattr(self._callbacks, name)(pod, container, *args)
        except Exception as exc:
            _log.error("callback_failed", callback=name, pod=pod.name, container=container.name, error=str(exc))

    def _emit(self, event: LogEvent) -> None:
        log_lines_total.inc()
        try:
            self._callbacks.on_event(event)
        except Exception as exc:
            _log.error("callback_failed", callback="on_event", pod=event.pod.name, error=str(exc))
