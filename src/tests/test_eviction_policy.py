import pytest

from core.cache_data_model import CacheEntry
from core.eviction_policy import DatabasePolicy, EvictAllPolicy, LastAccessedBeforePolicy, StaleEntryPolicy
from core.memory_store import InMemoryCacheStore

NOW = 1_700_000_000.0


def entry(digest_char, database="sales", workgroup="primary", created_at=NOW, last_accessed=None):
    return CacheEntry(
        fingerprint=digest_char * 64,
        execution_id=f"exec-{digest_char}",
        result_location=f"s3://results/{digest_char}.csv",
        created_at=created_at,
        last_accessed=created_at if last_accessed is None else last_accessed,
        database=database,
        workgroup=workgroup,
    )


@pytest.fixture
def entries():
    return [
        entry("a", database="sales", created_at=NOW - 10),
        entry("b", database="sales", workgroup="etl", created_at=NOW - 7200),
        entry("c", database="hr", created_at=NOW - 86400, last_accessed=NOW - 60),
    ]


def test_stale_entry_policy(entries):
    policy = StaleEntryPolicy(3600, clock=lambda: NOW)
    assert [policy(e) for e in entries] == [False, True, True]


def test_last_accessed_before_policy(entries):
    policy = LastAccessedBeforePolicy(NOW - 3600)
    assert [policy(e) for e in entries] == [False, True, False]


def test_database_policy(entries):
    assert [DatabasePolicy("sales")(e) for e in entries] == [True, True, False]
    assert [DatabasePolicy("sales", "etl")(e) for e in entries] == [False, True, False]


def test_combined_policies(entries):
    stale = StaleEntryPolicy(3600, clock=lambda: NOW)
    sales = DatabasePolicy("sales")
    assert [(stale & sales)(e) for e in entries] == [False, True, False]
    assert [(stale | sales)(e) for e in entries] == [True, True, True]


def test_evict_with_policy(entries):
    store = InMemoryCacheStore(clock=lambda: NOW)
    for e in entries:
        store.cache[e.fingerprint] = e

    removed = store.evict_if(StaleEntryPolicy(3600, clock=lambda: NOW))

    assert removed == 2
    assert [e.execution_id for e in store.entries()] == ["exec-a"]
    assert store.evict_if(EvictAllPolicy()) == 1
    assert len(store) == 0
