"""Core data structures for ktail."""

from ktail.models.config import KtailConfig, LogConfig
from ktail.models.events import (
    MalformedEvent,
    PodAdded,
    PodDeleted,
    PodUpdated,
    WatchEvent,
    WatchEventType,
    decode_watch_event,
)
from ktail.models.pods import ContainerKey, ContainerSpec, LogEvent, PodSnapshot

__all__ = [
    "ContainerKey",
    "ContainerSpec",
    "KtailConfig",
    "LogConfig",
    "LogEvent",
    "MalformedEvent",
    "PodAdded",
    "PodDeleted",
    "PodSnapshot",
    "PodUpdated",
    "WatchEvent",
    "WatchEventType",
    "decode_watch_event",
]
