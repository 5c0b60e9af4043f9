"""Registry of active container tailers.

``TailerRegistry`` is the single source of truth for which containers
currently have a live tailer.  One ``asyncio.Lock`` guards the whole map;
every mutating method must be called while holding ``registry.lock`` so
that check-then-insert and remove-then-stop are atomic with respect to
each other.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from ktail.models.pods import ContainerKey, ContainerSpec, PodSnapshot
from ktail.observability.metrics import tailers_active

if TYPE_CHECKING:
    from ktail.tailer import ContainerTailer


@dataclass
class TailerEntry:
    """A registered tailer and the task running it."""

    key: ContainerKey
    pod: PodSnapshot
    container: ContainerSpec
    tailer: ContainerTailer
    task: asyncio.Task[None] | None = field(default=None, repr=False)


class TailerRegistry:
    """Mapping ``ContainerKey -> TailerEntry`` with at most one entry per key."""

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self._entries: dict[ContainerKey, TailerEntry] = {}

    def contains(self, key: ContainerKey) -> bool:
        return key in self._entries

    def get(self, key: ContainerKey) -> TailerEntry | None:
        return self._entries.get(key)

    def try_insert(self, entry: TailerEntry) -> bool:
        """Insert *entry* unless its key is taken; return whether it was inserted."""
        if entry.key in self._entries:
            return False
        self._entries[entry.key] = entry
        tailers_active.set(len(self._entries))
        return True

    def remove(self, key: ContainerKey) -> TailerEntry | None:
        entry = self._entries.pop(key, None)
        if entry is not None:
            tailers_active.set(len(self._entries))
        return entry

    def drain(self) -> list[TailerEntry]:
        """Remove and return every entry."""
        entries = list(self._entries.values())
        self._entries.clear()
        tailers_active.set(0)
        return entries

    def keys(self) -> list[ContainerKey]:
        return list(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[ContainerKey]:
        return iter(list(self._entries))
