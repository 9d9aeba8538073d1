import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterator, Optional

from core.cache_data_model import CacheEntry, Fingerprint

EntryPredicate = Callable[[CacheEntry], bool]


class CacheStore(ABC):
    """
    Persistent mapping from fingerprint to cached execution metadata.

    Entries only expire by age: lookup() reports an entry older than the freshness
    window as a miss but leaves it in place, and the next put() for the same
    fingerprint replaces it. Writes are last-write-wins.
    """

    def __init__(self, freshness_window: float = 3600.0,
                 clock: Callable[[], float] = time.time) -> None:
        self.freshness_window = freshness_window
        self.clock = clock

    @abstractmethod
    def _read(self, key: str) -> Optional[CacheEntry]:
        raise NotImplementedError

    @abstractmethod
    def put(self, fp: Fingerprint, entry: CacheEntry) -> None:
        raise NotImplementedError

    @abstractmethod
    def entries(self) -> Iterator[CacheEntry]:
        raise NotImplementedError

    @abstractmethod
    def _delete(self, key: str) -> bool:
        raise NotImplementedError

    def lookup(self, fp: Fingerprint, max_age: Optional[float] = None) -> Optional[CacheEntry]:
        """Return the entry for fp if it is within the freshness window"""
        entry = self._read(fp.digest)
        if entry is None:
            return None
        window = self.freshness_window if max_age is None else max_age
        if not entry.is_fresh(window, now=self.clock()):
            return None
        return entry

    def touch(self, fp: Fingerprint) -> None:
        """Refresh last_accessed through the write path"""
        entry = self._read(fp.digest)
        if entry is not None:
            self.put(fp, entry.touched(now=self.clock()))

    def evict_if(self, predicate: EntryPredicate) -> int:
        """Delete every entry matching predicate. Returns the number removed."""
        removed = 0
        for entry in list(self.entries()):
            if predicate(entry) and self._delete(entry.fingerprint):
                removed += 1
        return removed

    def get_stats(self) -> Dict[str, Any]:
        now = self.clock()
        total = fresh = size = 0
        for entry in self.entries():
            total += 1
            size += entry.byte_size or 0
            if entry.is_fresh(self.freshness_window, now=now):
                fresh += 1
        return {
            "entries": total,
            "fresh_entries": fresh,
            "stale_entries": total - fresh,
            "result_bytes": size,
            "freshness_window": self.freshness_window,
        }
