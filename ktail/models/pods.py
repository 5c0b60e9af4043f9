"""Pod, container and log-line data structures.

Every type here is frozen.  Snapshots are built from raw watch payloads
and never alias them, so a tailer task or deferred callback holding a
snapshot is unaffected by later changes to the watch source's objects.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(frozen=True)
class ContainerSpec:
    """A container entry of ``pod.spec.containers``."""

    name: str
    image: str = ""


@dataclass(frozen=True)
class PodSnapshot:
    """Immutable view of the pod fields the controller and tailers consume."""

    namespace: str
    name: str
    labels: dict[str, str] = field(default_factory=dict)
    containers: tuple[ContainerSpec, ...] = ()
    uid: str = ""
    phase: str = ""
    node_name: str = ""
    resource_version: str = ""

    @classmethod
    def from_raw(cls, raw: dict[str, Any]) -> PodSnapshot:
        """Build a snapshot from a raw JSON pod object.

        Raises:
            ValueError: if the object lacks a name or a container list.
        """
        if not isinstance(raw, dict):
            raise ValueError(f"pod object must be a mapping, got {type(raw).__name__}")
        metadata = raw.get("metadata") or {}
        spec = raw.get("spec") or {}
        status = raw.get("status") or {}

        name = metadata.get("name")
        if not name:
            raise ValueError("pod object has no metadata.name")

        raw_containers = spec.get("containers")
        if not isinstance(raw_containers, list):
            raise ValueError(f"pod {name} has no spec.containers list")

        containers = []
        for item in raw_containers:
            if not isinstance(item, dict) or not item.get("name"):
                raise ValueError(f"pod {name} has a container without a name")
            containers.append(ContainerSpec(name=str(item["name"]), image=str(item.get("image") or "")))

        labels = metadata.get("labels") or {}
        return cls(
            namespace=str(metadata.get("namespace") or ""),
            name=str(name),
            labels={str(k): str(v) for k, v in copy.deepcopy(labels).items()},
            containers=tuple(containers),
            uid=str(metadata.get("uid") or ""),
            phase=str(status.get("phase") or ""),
            node_name=str(spec.get("nodeName") or ""),
            resource_version=str(metadata.get("resourceVersion") or ""),
        )

    def __hash__(self) -> int:
        return hash((self.namespace, self.name, self.uid, self.resource_version))


@dataclass(frozen=True, order=True)
class ContainerKey:
    """Identifies one container of one pod: ``namespace/pod/container``."""

    namespace: str
    pod: str
    container: str

    @classmethod
    def of(cls, pod: PodSnapshot, container: ContainerSpec) -> ContainerKey:
        return cls(namespace=pod.namespace, pod=pod.name, container=container.name)

    def __str__(self) -> str:
        return f"{self.namespace}/{self.pod}/{self.container}"


@dataclass(frozen=True)
class LogEvent:
    """One log line emitted by a container."""

    pod: PodSnapshot
    container: ContainerSpec
    timestamp: datetime | None
    message: str
