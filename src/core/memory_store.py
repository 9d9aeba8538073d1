import logging
import threading
import time
from typing import Callable, Dict, Iterator, Optional

from core.cache_data_model import CacheEntry, Fingerprint
from core.cache_strategies import CacheStore

logger = logging.getLogger(__name__)


class InMemoryCacheStore(CacheStore):
    """Process-local cache store. Entries are lost when the process exits."""

    def __init__(self, freshness_window: float = 3600.0,
                 clock: Callable[[], float] = time.time) -> None:
        super().__init__(freshness_window, clock)
        self.cache: Dict[str, CacheEntry] = {}
        self.lock = threading.RLock()

    def _read(self, key: str) -> Optional[CacheEntry]:
        with self.lock:
            entry = self.cache.get(key)
        logger.info(f"Cache {'HIT' if entry else 'MISS'} for key {key}")
        return entry

    def put(self, fp: Fingerprint, entry: CacheEntry) -> None:
        with self.lock:
            self.cache[fp.digest] = entry
        logger.info(f"Cached {fp.digest} -> {entry.result_location}")

    def entries(self) -> Iterator[CacheEntry]:
        with self.lock:
            snapshot = list(self.cache.values())
        return iter(snapshot)

    def _delete(self, key: str) -> bool:
        with self.lock:
            return self.cache.pop(key, None) is not None

    def __len__(self) -> int:
        with self.lock:
            return len(self.cache)
