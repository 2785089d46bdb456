"""
Process-local query cache for the notebook/chat client.

Entries are keyed by ``(kind, scope)``, for example ``("chat-messages", notebook_id)``.
Writes invalidate; realtime inserts merge append-only, de-duplicated by id.
Every invalidation, replacement or release bumps the entry generation, so a
read that started earlier can no longer apply its result.

Items merged while reads are in flight go to an append-only push log. Each
read remembers where the log ended when it started and re-applies everything
pushed after that point, so overlapping reads of one key never drop a push.
"""
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Hashable, List, Optional, Tuple
import logging

logger = logging.getLogger(__name__)

CacheKey = Tuple[str, str]


@dataclass
class CacheEntry:
    data: Any = None
    stale: bool = True
    generation: int = 0
    pending_mutations: int = 0
    readers: int = 0
    push_log: List[Any] = field(default_factory=list)


@dataclass(frozen=True)
class ReadTicket:
    key: CacheKey
    generation: int
    push_start: int
    entry: CacheEntry = field(compare=False, repr=False)


class QueryCache:
    def __init__(self):
        self._entries: Dict[CacheKey, CacheEntry] = {}

    def _entry(self, key: CacheKey) -> CacheEntry:
        if key not in self._entries:
            self._entries[key] = CacheEntry()
        return self._entries[key]

    def get(self, key: CacheKey) -> Optional[Any]:
        """Fresh data for ``key``, or None when it has to be fetched"""
        entry = self._entries.get(key)
        if entry is None or entry.stale:
            return None
        return entry.data

    def peek(self, key: CacheKey) -> Optional[Any]:
        entry = self._entries.get(key)
        return entry.data if entry else None

    def is_stale(self, key: CacheKey) -> bool:
        entry = self._entries.get(key)
        return entry is None or entry.stale

    def keys(self) -> List[CacheKey]:
        return list(self._entries)

    def begin_read(self, key: CacheKey) -> ReadTicket:
        entry = self._entry(key)
        entry.readers += 1
        return ReadTicket(key=key, generation=entry.generation, push_start=len(entry.push_log), entry=entry)

    def _end_read(self, ticket: ReadTicket) -> None:
        entry = ticket.entry
        if entry.readers > 0:
            entry.readers -= 1
        if entry.readers == 0:
            entry.push_log = []

    def complete_read(self, ticket: ReadTicket, data: Any, id_of: Callable[[Any], Hashable] = None) -> bool:
        """
        Apply a finished read. Returns False when the entry was released,
        replaced or invalidated while the read was in flight.
        """
        entry = self._entries.get(ticket.key)
        try:
            if entry is not ticket.entry or entry.generation != ticket.generation:
                logger.debug(f"Discarding outdated read for {ticket.key}")
                return False

            pushed = entry.push_log[ticket.push_start:]
            if id_of is not None and pushed:
                data = _append_unique(list(data), pushed, id_of)
            entry.data = data
            entry.stale = False
            return True
        finally:
            self._end_read(ticket)

    def abandon_read(self, ticket: ReadTicket) -> None:
        """Forget a read that failed"""
        self._end_read(ticket)

    def _bump(self, entry: CacheEntry) -> None:
        # Reads started before the bump are rejected, so their log offsets no longer matter
        entry.generation += 1
        entry.push_log = []

    def set(self, key: CacheKey, data: Any) -> None:
        entry = self._entry(key)
        entry.data = data
        entry.stale = False
        self._bump(entry)

    def invalidate(self, key: CacheKey) -> None:
        entry = self._entries.get(key)
        if entry is None:
            return
        entry.stale = True
        self._bump(entry)
        logger.debug(f"Invalidated cache entry {key}")

    def invalidate_kind(self, kind: str) -> None:
        for key in self.keys():
            if key[0] == kind:
                self.invalidate(key)

    def release(self, key: CacheKey) -> None:
        """Forget ``key``; reads still in flight for it are dropped on completion"""
        self._entries.pop(key, None)

    def merge(self, key: CacheKey, items: List[Any], id_of: Callable[[Any], Hashable]) -> int:
        """
        Append items whose id is not cached yet. Existing entries keep their
        position and content. Returns the number of items added.
        """
        entry = self._entry(key)
        current = list(entry.data) if entry.data is not None else []
        merged = _append_unique(current, items, id_of)
        added = len(merged) - len(current)

        if entry.readers:
            entry.push_log.extend(items)
        if added:
            entry.data = merged
            logger.debug(f"Merged {added} item(s) into {key}")
        return added

    def mark_pending(self, key: CacheKey) -> None:
        self._entry(key).pending_mutations += 1

    def clear_pending(self, key: CacheKey) -> None:
        entry = self._entries.get(key)
        if entry is not None and entry.pending_mutations > 0:
            entry.pending_mutations -= 1

    def has_pending(self, key: CacheKey) -> bool:
        entry = self._entries.get(key)
        return bool(entry and entry.pending_mutations)


def _append_unique(current: List[Any], items: List[Any], id_of: Callable[[Any], Hashable]) -> List[Any]:
    seen = {id_of(item) for item in current}
    result = list(current)
    for item in items:
        item_id = id_of(item)
        if item_id in seen:
            continue
        seen.add(item_id)
        result.append(item)
    return result
