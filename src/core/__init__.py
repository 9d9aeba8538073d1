from core.cache_data_model import (
    CacheEntry,
    CacheHit,
    ExecutionHandle,
    ExecutionState,
    Failed,
    Fingerprint,
    QueryOutcome,
    QueryRequest,
    Success,
    ValidationRejected,
)
from core.cache_strategies import CacheStore
from core.config import CacheConfig, RunOptions
from core.errors import ErrorKind, QueryEngineError
from core.eviction_policy import EvictionPolicy
from core.file_store import FileCacheStore
from core.memory_store import InMemoryCacheStore

__all__ = [
    "CacheEntry",
    "CacheHit",
    "ExecutionHandle",
    "ExecutionState",
    "Failed",
    "Fingerprint",
    "QueryOutcome",
    "QueryRequest",
    "Success",
    "ValidationRejected",
    "CacheStore",
    "CacheConfig",
    "RunOptions",
    "ErrorKind",
    "QueryEngineError",
    "EvictionPolicy",
    "FileCacheStore",
    "InMemoryCacheStore"
]
