"""Pod list/watch source backed by kubernetes-asyncio.

``PodWatchSource`` performs one full listing, then follows the watch API
from the listing's resourceVersion.  It keeps its own record of every pod
it has reported, which it uses for two things:

* ``PodUpdated.old`` carries the previously reported snapshot.
* When the server answers ``410 Gone`` the source relists and emits the
  difference as synthetic events: ``PodAdded`` for every listed pod and
  ``PodDeleted`` for every recorded pod that vanished meanwhile.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from typing import Any

import aiohttp
from kubernetes_asyncio import watch
from kubernetes_asyncio.client.exceptions import ApiException

from ktail.models.events import (
    MalformedEvent,
    PodAdded,
    PodDeleted,
    PodUpdated,
    WatchEvent,
    decode_watch_event,
)
from ktail.models.pods import PodSnapshot
from ktail.observability.logging import get_logger
from ktail.observability.metrics import malformed_events_total, watch_events_total

_log = get_logger("collector.pod_source")

_HTTP_GONE = 410

PodKey = tuple[str, str]


def _pod_key(pod: PodSnapshot) -> PodKey:
    return (pod.namespace, pod.name)


class PodWatchSource:
    """List + watch pods in one namespace, or in all namespaces when empty.

    Args:
        api:                   kubernetes-asyncio ``CoreV1Api``.
        namespace:             Namespace to watch; ``""`` watches every namespace.
        label_selector:        Server-side label selector string.
        watch_timeout_seconds: Server-side timeout for each watch request.
        backoff_base:          First reconnect delay after a failure, in seconds.
        backoff_max:           Upper bound for the reconnect delay.
        watch_factory:         Builds the ``Watch`` object; replaced in tests.
    """

    def __init__(
        self,
        api: Any,
        namespace: str = "",
        label_selector: str = "",
        watch_timeout_seconds: int = 300,
        backoff_base: float = 1.0,
        backoff_max: float = 30.0,
        watch_factory: Callable[[], Any] = watch.Watch,
    ) -> None:
        self._api = api
        self._namespace = namespace
        self._label_selector = label_selector
        self._watch_timeout = watch_timeout_seconds
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._watch_factory = watch_factory

        self._known: dict[PodKey, PodSnapshot] = {}
        self._resource_version = ""
        self._active_watch: Any = None
        self._stopped = asyncio.Event()

    @property
    def resource_version(self) -> str:
        return self._resource_version

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    async def list_pods(self) -> list[PodSnapshot]:
        """Perform a full listing and make it the baseline for ``events()``."""
        pods, resource_version = await self._list()
        self._known = {_pod_key(pod): pod for pod in pods}
        self._resource_version = resource_version
        _log.info(
            "pods_listed",
            namespace=self._namespace or "*",
            count=len(pods),
            resource_version=resource_version,
        )
        return pods

    async def _list(self) -> tuple[list[PodSnapshot], str]:
        kwargs: dict[str, Any] = {}
        if self._label_selector:
            kwargs["label_selector"] = self._label_selector
        if self._namespace:
            result = await self._api.list_namespaced_pod(self._namespace, **kwargs)
        else:
            result = await self._api.list_pod_for_all_namespaces(**kwargs)

        raw = self._api.api_client.sanitize_for_serialization(result)
        pods: list[PodSnapshot] = []
        for item in raw.get("items") or []:
            try:
                pods.append(PodSnapshot.from_raw(item))
            except ValueError as exc:
                malformed_events_total.labels(reason="invalid_pod").inc()
                _log.warning("malformed_listed_pod", error=str(exc))
        resource_version = str((raw.get("metadata") or {}).get("resourceVersion") or "")
        return pods, resource_version

    # ------------------------------------------------------------------
    # Watching
    # ------------------------------------------------------------------

    async def events(self) -> AsyncIterator[WatchEvent]:
        """Yield decoded watch events until ``stop()`` is called.

        Must be preceded by ``list_pods()``; the watch starts from the
        listing's resourceVersion.
        """
        failures = 0
        while not self._stopped.is_set():
            try:
                async for event in self._watch_once():
                    failures = 0
                    yield event
            except ApiException as exc:
                if self._stopped.is_set():
                    break
                if exc.status == _HTTP_GONE:
                    _log.info("watch_expired_relisting", resource_version=self._resource_version)
                    try:
                        resynced = await self._resync()
                    except (ApiException, aiohttp.ClientError, TimeoutError) as list_exc:
                        failures += 1
                        _log.warning("relist_failed", error=str(list_exc), attempt=failures)
                        await self._backoff(failures)
                        continue
                    for event in resynced:
                        yield event
                    continue
                failures += 1
                _log.warning("watch_failed", status=exc.status, reason=exc.reason, attempt=failures)
                await self._backoff(failures)
            except (aiohttp.ClientError, TimeoutError) as exc:
                if self._stopped.is_set():
                    break
                failures += 1
                _log.warning("watch_connection_error", error=str(exc), attempt=failures)
                await self._backoff(failures)
            else:
                _log.debug("watch_stream_closed", resource_version=self._resource_version)

    async def _watch_once(self) -> AsyncIterator[WatchEvent]:
        """Run one watch request until the server closes it."""
        w = self._watch_factory()
        self._active_watch = w
        kwargs: dict[str, Any] = {
            "timeout_seconds": self._watch_timeout,
            "allow_watch_bookmarks": True,
        }
        if self._resource_version:
            kwargs["resource_version"] = self._resource_version
        if self._label_selector:
            kwargs["label_selector"] = self._label_selector

        if self._namespace:
            stream = w.stream(self._api.list_namespaced_pod, self._namespace, **kwargs)
        else:
            stream = w.stream(self._api.list_pod_for_all_namespaces, **kwargs)

        try:
            async with stream:
                async for raw_event in stream:
                    event = self._decode(raw_event)
                    if event is not None:
                        yield event
                    if self._stopped.is_set():
                        return
        finally:
            self._active_watch = None

    def _decode(self, raw_event: dict[str, Any]) -> WatchEvent | None:
        event_type = str(raw_event.get("type", ""))
        raw = raw_event.get("raw_object")
        watch_events_total.labels(type=event_type.lower() or "unknown").inc()

        if event_type == "ERROR":
            status = raw if isinstance(raw, dict) else {}
            raise ApiException(
                status=int(status.get("code") or 500),
                reason=f"{status.get('reason', '')}: {status.get('message', '')}",
            )

        self._advance_resource_version(raw)
        if event_type == "BOOKMARK":
            return None

        event = decode_watch_event(event_type, raw)
        match event:
            case PodAdded(pod=pod):
                self._known[_pod_key(pod)] = pod
            case PodUpdated(new=pod):
                event = PodUpdated(old=self._known.get(_pod_key(pod)), new=pod)
                self._known[_pod_key(pod)] = pod
            case PodDeleted(pod=pod):
                self._known.pop(_pod_key(pod), None)
            case MalformedEvent():
                pass
        return event

    def _advance_resource_version(self, raw: Any) -> None:
        if not isinstance(raw, dict):
            return
        resource_version = (raw.get("metadata") or {}).get("resourceVersion")
        if resource_version:
            self._resource_version = str(resource_version)

    async def _resync(self) -> list[WatchEvent]:
        """Relist and return the events that reconcile the recorded state."""
        pods, resource_version = await self._list()
        listed = {_pod_key(pod): pod for pod in pods}
        events: list[WatchEvent] = [
            PodDeleted(pod=old)
            for key, old in self._known.items()
            if key not in listed or listed[key].uid != old.uid
        ]
        events.extend(PodAdded(pod=pod) for pod in pods)
        self._known = listed
        self._resource_version = resource_version
        _log.info(
            "pods_resynced",
            listed=len(pods),
            deleted=len(events) - len(pods),
            resource_version=resource_version,
        )
        return events

    async def _backoff(self, failures: int) -> None:
        delay = min(self._backoff_base * (2 ** (failures - 1)), self._backoff_max)
        try:
            await asyncio.wait_for(self._stopped.wait(), timeout=delay)
        except TimeoutError:
            pass

    def stop(self) -> None:
        """Make ``events()`` finish; idempotent."""
        self._stopped.set()
        if self._active_watch is not None:
            self._active_watch.stop()
