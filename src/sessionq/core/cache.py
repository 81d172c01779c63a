"""Bounded LRU cache shared by the query evaluator and the log store."""

import logging
import threading
from collections import OrderedDict
from typing import Any, Dict, Hashable, Iterable, Tuple

logger = logging.getLogger(__name__)

_MISSING = object()


class LRUCache:
    """
    Thread-safe LRU cache keyed by content.

    Entries are never expired by time. Each entry may carry a set of tags
    (for example the log handles a query result was computed from) so that
    a mutation of one log can evict every entry derived from it.
    """

    def __init__(self, max_size: int = 100, name: str = "cache"):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.name = name
        self.max_size = max_size
        self._entries: "OrderedDict[Hashable, Tuple[Any, frozenset]]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: Hashable, default: Any = None) -> Any:
        with self._lock:
            entry = self._entries.get(key, _MISSING)
            if entry is _MISSING:
                self.misses += 1
                return default
            self._entries.move_to_end(key)
            self.hits += 1
            return entry[0]

    def put(self, key: Hashable, value: Any, tags: Iterable[Hashable] = ()) -> None:
        with self._lock:
            if key in self._entries:
                self._entries.move_to_end(key)
            self._entries[key] = (value, frozenset(tags))
            while len(self._entries) > self.max_size:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug(f"{self.name}: evicted {evicted!r}")

    def invalidate(self, key: Hashable) -> bool:
        with self._lock:
            return self._entries.pop(key, _MISSING) is not _MISSING

    def invalidate_tag(self, tag: Hashable) -> int:
        """Drop every entry carrying ``tag``. Returns the number dropped."""
        with self._lock:
            doomed = [k for k, (_, tags) in self._entries.items() if tag in tags]
            for key in doomed:
                del self._entries[key]
        if doomed:
            logger.debug(f"{self.name}: invalidated {len(doomed)} entries for {tag}")
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self.hits = 0
            self.misses = 0

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            lookups = self.hits + self.misses
            return {
                "size": len(self._entries),
                "max_size": self.max_size,
                "hits": self.hits,
                "misses": self.misses,
                "hit_ratio": (self.hits / lookups) if lookups else 0.0,
            }

