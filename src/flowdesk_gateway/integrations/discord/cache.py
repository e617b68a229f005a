from __future__ import annotations

import threading
from collections import deque
from enum import Enum
from typing import Any, Callable, Deque, Iterable, Optional

from .constants import DEFAULT_MESSAGE_CACHE_SIZE


class EntityKind(str, Enum):
    GUILD = "guild"
    CHANNEL = "channel"
    USER = "user"
    PRESENCE = "presence"
    MESSAGE = "message"


class EntityCache:
    """In-memory entity maps plus bounded, newest-first sequences.

    Keyed maps (guilds, channels, users, presences) are last-write-wins.
    Bounded sequences (recent messages per channel) insert at the head and
    drop from the tail once `cap` is exceeded. Each kind has its own lock so
    readers on other threads see consistent snapshots; the event dispatcher is
    the only writer.
    """

    def __init__(self, *, default_cap: int = DEFAULT_MESSAGE_CACHE_SIZE) -> None:
        if default_cap <= 0:
            raise ValueError("default_cap must be positive")
        self._default_cap = default_cap
        self._maps: dict[EntityKind, dict[str, Any]] = {kind: {} for kind in EntityKind}
        self._sequences: dict[EntityKind, dict[str, Deque[Any]]] = {
            kind: {} for kind in EntityKind
        }
        self._locks: dict[EntityKind, threading.Lock] = {
            kind: threading.Lock() for kind in EntityKind
        }

    @property
    def default_cap(self) -> int:
        return self._default_cap

    def upsert(self, kind: EntityKind, entity_id: str, value: Any) -> None:
        with self._locks[kind]:
            self._maps[kind][entity_id] = value

    def get(self, kind: EntityKind, entity_id: str) -> Optional[Any]:
        with self._locks[kind]:
            return self._maps[kind].get(entity_id)

    def remove(self, kind: EntityKind, entity_id: str) -> Optional[Any]:
        with self._locks[kind]:
            return self._maps[kind].pop(entity_id, None)

    def values(self, kind: EntityKind) -> list[Any]:
        with self._locks[kind]:
            return list(self._maps[kind].values())

    def count(self, kind: EntityKind) -> int:
        with self._locks[kind]:
            return len(self._maps[kind])

    def append_bounded(
        self,
        kind: EntityKind,
        parent_key: str,
        value: Any,
        cap: Optional[int] = None,
    ) -> None:
        limit = cap if cap is not None else self._default_cap
        if limit <= 0:
            raise ValueError("cap must be positive")
        with self._locks[kind]:
            sequence = self._sequences[kind].get(parent_key)
            if sequence is None or sequence.maxlen != limit:
                sequence = deque(list(sequence or ())[:limit], maxlen=limit)
                self._sequences[kind][parent_key] = sequence
            sequence.appendleft(value)

    def replace_bounded(
        self,
        kind: EntityKind,
        parent_key: str,
        values: Iterable[Any],
        cap: Optional[int] = None,
    ) -> None:
        """Replace the sequence with `values`, given newest first."""
        limit = cap if cap is not None else self._default_cap
        if limit <= 0:
            raise ValueError("cap must be positive")
        items = list(values)[:limit]
        with self._locks[kind]:
            self._sequences[kind][parent_key] = deque(items, maxlen=limit)

    def update_bounded(
        self,
        kind: EntityKind,
        parent_key: str,
        match: Callable[[Any], bool],
        update: Callable[[Any], Any],
    ) -> bool:
        with self._locks[kind]:
            sequence = self._sequences[kind].get(parent_key)
            if not sequence:
                return False
            for index, item in enumerate(sequence):
                if match(item):
                    sequence[index] = update(item)
                    return True
            return False

    def remove_from_bounded(
        self,
        kind: EntityKind,
        parent_key: str,
        match: Callable[[Any], bool],
    ) -> int:
        with self._locks[kind]:
            sequence = self._sequences[kind].get(parent_key)
            if not sequence:
                return 0
            kept = [item for item in sequence if not match(item)]
            removed = len(sequence) - len(kept)
            if removed:
                self._sequences[kind][parent_key] = deque(kept, maxlen=sequence.maxlen)
            return removed

    def bounded(self, kind: EntityKind, parent_key: str) -> list[Any]:
        with self._locks[kind]:
            return list(self._sequences[kind].get(parent_key, ()))

    def bounded_items(self, kind: EntityKind) -> list[tuple[str, list[Any]]]:
        with self._locks[kind]:
            return [(key, list(seq)) for key, seq in self._sequences[kind].items()]

    def drop_bounded(self, kind: EntityKind, parent_key: str) -> None:
        with self._locks[kind]:
            self._sequences[kind].pop(parent_key, None)

    def clear(self) -> None:
        for kind in EntityKind:
            with self._locks[kind]:
                self._maps[kind].clear()
                self._sequences[kind].clear()
