"""Watch notification types.

Raw watch payloads are decoded exactly once, at the watch boundary, into
one of the ``WatchEvent`` variants below.  Consumers dispatch on the
variant class and never look at raw objects.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from ktail.models.pods import PodSnapshot


class WatchEventType(StrEnum):
    """Type field of a Kubernetes watch notification."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass(frozen=True)
class PodAdded:
    pod: PodSnapshot


@dataclass(frozen=True)
class PodUpdated:
    old: PodSnapshot | None
    new: PodSnapshot


@dataclass(frozen=True)
class PodDeleted:
    pod: PodSnapshot


@dataclass(frozen=True)
class MalformedEvent:
    """A notification that could not be turned into a pod event."""

    event_type: str
    reason: str
    detail: str = ""
    raw: Any = None


WatchEvent = PodAdded | PodUpdated | PodDeleted | MalformedEvent


def decode_watch_event(event_type: str, raw: Any) -> WatchEvent:
    """Decode one raw watch notification.

    ``PodUpdated.old`` is left empty; the watch source fills it in from its
    own record of the pod.
    """
    try:
        kind = WatchEventType(event_type)
    except ValueError:
        return MalformedEvent(event_type=str(event_type), reason="unknown_type", raw=raw)

    if isinstance(raw, dict) and raw.get("kind") not in (None, "Pod"):
        return MalformedEvent(event_type=kind.value, reason="not_a_pod", raw=raw)

    try:
        pod = PodSnapshot.from_raw(raw)
    except ValueError as exc:
        return MalformedEvent(event_type=kind.value, reason="invalid_pod", detail=str(exc), raw=raw)

    if kind is WatchEventType.ADDED:
        return PodAdded(pod=pod)
    if kind is WatchEventType.MODIFIED:
        return PodUpdated(old=None, new=pod)
    return PodDeleted(pod=pod)
