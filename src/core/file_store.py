import json
import logging
import os
import re
import tempfile
import threading
import time
from pathlib import Path
from typing import Callable, Iterator, Optional, Union

from core.cache_data_model import CacheEntry, Fingerprint
from core.cache_strategies import CacheStore
from core.errors import CacheStoreError

logger = logging.getLogger(__name__)

_DIGEST = re.compile(r"^[0-9a-f]{16,128}$")


class FileCacheStore(CacheStore):
    """
    Durable cache store: one JSON record per fingerprint in a directory.

    Records are written to a temp file beside the target and moved into place with
    os.replace, so readers in other processes see either the old or the new record,
    never a partial one. Two processes writing the same fingerprint race; the last
    replace wins. The in-process lock only guards local file operations.
    """

    def __init__(self, directory: Union[str, Path],
                 freshness_window: float = 3600.0,
                 clock: Callable[[], float] = time.time) -> None:
        super().__init__(freshness_window, clock)
        self.directory = Path(directory).expanduser()
        self._lock = threading.RLock()
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CacheStoreError(f"Cannot create cache directory {self.directory}", e) from e

    def _path(self, key: str) -> Path:
        if not _DIGEST.match(key):
            raise CacheStoreError(f"Invalid cache key: {key!r}")
        return self.directory / f"{key}.json"

    def _read(self, key: str) -> Optional[CacheEntry]:
        path = self._path(key)
        with self._lock:
            try:
                raw = path.read_text(encoding="utf-8")
            except FileNotFoundError:
                logger.info(f"Cache MISS for {key}")
                return None
            except OSError as e:
                raise CacheStoreError(f"Failed to read cache record {path}", e) from e

        try:
            entry = CacheEntry.from_dict(json.loads(raw))
        except (ValueError, TypeError, KeyError) as e:
            raise CacheStoreError(f"Corrupt cache record {path}", e) from e
        logger.info(f"Cache HIT for key {key}")
        return entry

    def put(self, fp: Fingerprint, entry: CacheEntry) -> None:
        path = self._path(fp.digest)
        payload = json.dumps(entry.to_dict(), indent=2, sort_keys=True).encode("utf-8")
        with self._lock:
            try:
                fd, tmp_path = tempfile.mkstemp(prefix=f".{fp.digest[:16]}_", suffix=".tmp",
                                                dir=self.directory)
                try:
                    with os.fdopen(fd, "wb") as f:
                        f.write(payload)
                        f.flush()
                        os.fsync(f.fileno())
                    os.replace(tmp_path, path)
                except OSError:
                    if os.path.exists(tmp_path):
                        os.unlink(tmp_path)
                    raise
            except OSError as e:
                raise CacheStoreError(f"Failed to write cache record {path}", e) from e
        logger.info(f"Cached {fp.digest} -> {entry.result_location} ({len(payload)} bytes)")

    def entries(self) -> Iterator[CacheEntry]:
        with self._lock:
            paths = sorted(self.directory.glob("*.json"))
        for path in paths:
            try:
                yield CacheEntry.from_dict(json.loads(path.read_text(encoding="utf-8")))
            except FileNotFoundError:
                continue
            except (OSError, ValueError, TypeError, KeyError) as e:
                logger.warning(f"Skipping unreadable cache record {path}: {e}")

    def _delete(self, key: str) -> bool:
        path = self._path(key)
        with self._lock:
            try:
                path.unlink()
            except FileNotFoundError:
                return False
            except OSError as e:
                raise CacheStoreError(f"Failed to delete cache record {path}", e) from e
        logger.info(f"Evicted cache entry: {key}")
        return True
