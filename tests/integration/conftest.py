"""Shared fixtures for ktail integration tests.

Provides an in-memory pod source, scripted tailers and a callback
recorder so the controller can be exercised end to end without a
Kubernetes cluster.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

import pytest

from ktail.controller.controller import Callbacks, Controller
from ktail.models.events import WatchEvent
from ktail.models.pods import ContainerKey, ContainerSpec, LogEvent, PodSnapshot
from ktail.selectors import LabelSelector

# ---------------------------------------------------------------------------
# Pod factory helpers
# ---------------------------------------------------------------------------


def make_pod(
    name: str = "p1",
    labels: dict[str, str] | None = None,
    containers: tuple[str, ...] = ("c1", "c2"),
    namespace: str = "ns",
    uid: str = "",
) -> PodSnapshot:
    """Create a PodSnapshot with sensible defaults for testing."""
    return PodSnapshot(
        namespace=namespace,
        name=name,
        labels=dict(labels if labels is not None else {"app": "x"}),
        containers=tuple(ContainerSpec(name=c, image=f"{c}:latest") for c in containers),
        uid=uid or f"uid-{name}",
        phase="Running",
    )


def make_raw_pod(
    name: str = "p1",
    labels: dict[str, str] | None = None,
    containers: tuple[str, ...] = ("c1",),
    namespace: str = "ns",
    resource_version: str = "100",
    uid: str = "",
) -> dict:
    """Create a raw JSON pod object as delivered by the API."""
    return {
        "kind": "Pod",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "uid": uid or f"uid-{name}",
            "labels": dict(labels if labels is not None else {"app": "x"}),
            "resourceVersion": resource_version,
        },
        "spec": {
            "nodeName": "node-a",
            "containers": [{"name": c, "image": f"{c}:latest"} for c in containers],
        },
        "status": {"phase": "Running"},
    }


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakePodSource:
    """Pod source fed by the test: a fixed listing plus a queue of events."""

    def __init__(self, pods: list[PodSnapshot] | None = None, list_error: Exception | None = None) -> None:
        self._pods = list(pods or [])
        self._list_error = list_error
        self._queue: asyncio.Queue[WatchEvent | None] = asyncio.Queue()
        self.list_calls = 0
        self.stopped = False

    async def list_pods(self) -> list[PodSnapshot]:
        self.list_calls += 1
        if self._list_error is not None:
            raise self._list_error
        return list(self._pods)

    async def events(self) -> AsyncIterator[WatchEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    def push(self, *events: WatchEvent) -> None:
        for event in events:
            self._queue.put_nowait(event)

    def end(self) -> None:
        """Close the event stream after everything pushed so far."""
        self._queue.put_nowait(None)

    def stop(self) -> None:
        self.stopped = True


class FakeTailer:
    """Tailer whose run() blocks until stop(), or fails / returns as scripted."""

    def __init__(
        self,
        pod: PodSnapshot,
        container: ContainerSpec,
        on_event,
        from_beginning: bool,
        error: Exception | None = None,
        finish: bool = False,
        ignore_stop: bool = False,
        lines: tuple[str, ...] = (),
    ) -> None:
        self.pod = pod
        self.container = container
        self.on_event = on_event
        self.from_beginning = from_beginning
        self.error = error
        self.finish = finish
        self.ignore_stop = ignore_stop
        self.lines = lines
        self.stop_calls = 0
        self.started = asyncio.Event()
        self._stopped = asyncio.Event()
        self._never = asyncio.Event()

    @property
    def key(self) -> ContainerKey:
        return ContainerKey.of(self.pod, self.container)

    async def run(self) -> None:
        self.started.set()
        for line in self.lines:
            self.on_event(LogEvent(pod=self.pod, container=self.container, timestamp=None, message=line))
        if self.error is not None:
            raise self.error
        if self.finish:
            return
        if self.ignore_stop:
            await self._never.wait()
        await self._stopped.wait()

    def stop(self) -> None:
        self.stop_calls += 1
        self._stopped.set()


class FakeTailerFactory:
    """Records every tailer it builds; behaviour is scripted per container name."""

    def __init__(self) -> None:
        self.created: list[FakeTailer] = []
        self.errors: dict[str, Exception] = {}
        self.finishing: set[str] = set()
        self.hanging: set[str] = set()
        self.lines: dict[str, tuple[str, ...]] = {}

    def __call__(self, pod, container, on_event, from_beginning) -> FakeTailer:
        tailer = FakeTailer(
            pod,
            container,
            on_event,
            from_beginning,
            error=self.errors.get(container.name),
            finish=container.name in self.finishing,
            ignore_stop=container.name in self.hanging,
            lines=self.lines.get(container.name, ()),
        )
        self.created.append(tailer)
        return tailer

    def for_key(self, key: str) -> list[FakeTailer]:
        return [t for t in self.created if str(t.key) == key]


class CallbackRecorder:
    """Collects every callback invocation in order."""

    def __init__(self, admit: bool = True) -> None:
        self.admit = admit
        self.calls: list[tuple[str, str]] = []
        self.errors: list[tuple[PodSnapshot, ContainerSpec, BaseException]] = []
        self.events: list[LogEvent] = []

    def on_enter(self, pod: PodSnapshot, container: ContainerSpec) -> bool:
        self.calls.append(("enter", f"{pod.namespace}/{pod.name}/{container.name}"))
        return self.admit

    def on_exit(self, pod: PodSnapshot, container: ContainerSpec) -> None:
        self.calls.append(("exit", f"{pod.namespace}/{pod.name}/{container.name}"))

    def on_error(self, pod: PodSnapshot, container: ContainerSpec, error: BaseException) -> None:
        self.calls.append(("error", f"{pod.namespace}/{pod.name}/{container.name}"))
        self.errors.append((pod, container, error))

    def on_event(self, event: LogEvent) -> None:
        self.events.append(event)

    def callbacks(self) -> Callbacks:
        return Callbacks(
            on_event=self.on_event,
            on_enter=self.on_enter,
            on_exit=self.on_exit,
            on_error=self.on_error,
        )

    def of(self, kind: str) -> list[str]:
        return [key for k, key in self.calls if k == kind]


async def settle(rounds: int = 20) -> None:
    """Let scheduled tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def recorder() -> CallbackRecorder:
    return CallbackRecorder()


@pytest.fixture
def factory() -> FakeTailerFactory:
    return FakeTailerFactory()


@pytest.fixture
def source() -> FakePodSource:
    return FakePodSource()


@pytest.fixture
def controller(source: FakePodSource, factory: FakeTailerFactory, recorder: CallbackRecorder) -> Controller:
    return Controller(
        source,
        factory,
        namespace="ns",
        selector=LabelSelector.parse("app=x"),
        callbacks=recorder.callbacks(),
        shutdown_timeout=1.0,
    )
