import time
from abc import ABC, abstractmethod
from typing import Callable, Optional

from core.cache_data_model import CacheEntry


class EvictionPolicy(ABC):
    """Predicate over cache entries, passed to CacheStore.evict_if"""

    @abstractmethod
    def should_evict(self, entry: CacheEntry) -> bool:
        """Return True if entry should be removed"""
        pass

    def __call__(self, entry: CacheEntry) -> bool:
        return self.should_evict(entry)

    def __and__(self, other: "EvictionPolicy") -> "EvictionPolicy":
        return _Combined(self, other, all)

    def __or__(self, other: "EvictionPolicy") -> "EvictionPolicy":
        return _Combined(self, other, any)


class _Combined(EvictionPolicy):
    def __init__(self, left: EvictionPolicy, right: EvictionPolicy, combine: Callable) -> None:
        self.left = left
        self.right = right
        self.combine = combine

    def should_evict(self, entry: CacheEntry) -> bool:
        return self.combine(p.should_evict(entry) for p in (self.left, self.right))


class StaleEntryPolicy(EvictionPolicy):
    """Entries created longer ago than max_age seconds"""

    def __init__(self, max_age: float, clock: Callable[[], float] = time.time) -> None:
        self.max_age = max_age
        self.clock = clock

    def should_evict(self, entry: CacheEntry) -> bool:
        return not entry.is_fresh(self.max_age, now=self.clock())


class LastAccessedBeforePolicy(EvictionPolicy):
    """Entries not read since cutoff (epoch seconds)"""

    def __init__(self, cutoff: float) -> None:
        self.cutoff = cutoff

    def should_evict(self, entry: CacheEntry) -> bool:
        return entry.last_accessed < self.cutoff


class DatabasePolicy(EvictionPolicy):
    """Entries produced against a given database (and optionally workgroup)"""

    def __init__(self, database: str, workgroup: Optional[str] = None) -> None:
        self.database = database
        self.workgroup = workgroup

    def should_evict(self, entry: CacheEntry) -> bool:
        if entry.database != self.database:
            return False
        return self.workgroup is None or entry.workgroup == self.workgroup


class EvictAllPolicy(EvictionPolicy):
    def should_evict(self, entry: CacheEntry) -> bool:
        return True
