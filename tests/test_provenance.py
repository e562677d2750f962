# tests/test_provenance.py
from __future__ import annotations

import hashlib

import pytest
from hypothesis import given, strategies as st

from skyfriction.core.errors import CacheWriteError
from skyfriction.core.provenance import ProvenanceCache, canonical_json, hash_inputs, make_key
from skyfriction.utils.cache import LRUCache, MemoryCacheBackend, SQLiteCacheBackend

json_scalars = st.one_of(st.none(), st.booleans(), st.integers(), st.text(max_size=8))
flat_dicts = st.dictionaries(st.text(min_size=1, max_size=6), json_scalars, max_size=6)


@given(flat_dicts)
def test_hash_inputs_ignores_key_order(d):
    reordered = dict(reversed(list(d.items())))
    assert hash_inputs(d) == hash_inputs(reordered)


def test_canonical_json_is_compact_and_sorted():
    assert canonical_json({"b": 1, "a": {"d": 2, "c": None}}) == '{"a":{"c":null,"d":2},"b":1}'
    want = hashlib.sha256(b'{"dateLocal":"2024-03-10","engine":"1.0.0"}').hexdigest()
    assert hash_inputs({"engine": "1.0.0", "dateLocal": "2024-03-10"}) == want


def test_make_key_fills_optional_parts():
    assert make_key("u1", "daily_weather", "1.0.0", "abc") == ("u1", "daily_weather", "1.0.0", "abc", "", "")


def test_round_trip_without_recompute():
    cache = ProvenanceCache(MemoryCacheBackend())
    calls = []

    def compute():
        calls.append(1)
        return {"pressure_score": 18, "provenance": {"engine_version": "1.0.0"}}

    first = cache.read_through("u1", "daily_weather", "1.0.0", "h1", compute, date_key="2024-03-10")
    second = cache.read_through("u1", "daily_weather", "1.0.0", "h1", compute, date_key="2024-03-10")
    assert first == second
    assert len(calls) == 1


def test_keys_are_isolated():
    cache = ProvenanceCache(MemoryCacheBackend(), memo_capacity=0)
    cache.put("u1", "friction", "1.0.0", "h", {"v": 1}, date_key="2024-03-10", secondary_subject_key="c1")
    assert cache.get("u1", "friction", "1.0.0", "h", "2024-03-10", "c2") is None
    assert cache.get("u1", "friction", "2.0.0", "h", "2024-03-10", "c1") is None
    assert cache.get("u2", "friction", "1.0.0", "h", "2024-03-10", "c1") is None
    assert cache.get("u1", "friction", "1.0.0", "h", "2024-03-10", "c1") == {"v": 1}


def test_returned_value_is_a_copy():
    backend = MemoryCacheBackend()
    cache = ProvenanceCache(backend, memo_capacity=0)
    cache.put("u1", "k", "1", "h", {"xs": [1, 2]})
    got = cache.get("u1", "k", "1", "h")
    got["xs"].append(3)
    assert cache.get("u1", "k", "1", "h") == {"xs": [1, 2]}


class _RefusingBackend(MemoryCacheBackend):
    def set(self, key, value, run_id=None):
        raise CacheWriteError("disk full", kind=key[1])


class _UnreachableBackend(MemoryCacheBackend):
    def set(self, key, value, run_id=None):
        raise OSError("cache store unreachable")


@pytest.mark.parametrize("backend", [_RefusingBackend, _UnreachableBackend])
def test_write_failure_is_not_fatal(backend):
    cache = ProvenanceCache(backend(), memo_capacity=0)
    calls = []

    def compute():
        calls.append(1)
        return {"v": 42}

    assert cache.read_through("u1", "baseline_vector", "1.0.0", "h", compute) == {"v": 42}
    # nothing stored: the next request recomputes
    assert cache.read_through("u1", "baseline_vector", "1.0.0", "h", compute) == {"v": 42}
    assert len(calls) == 2


def test_unserializable_output_raises_cache_write_error():
    with pytest.raises(CacheWriteError):
        MemoryCacheBackend().set(("u", "k", "1", "h", "", ""), {"bad": object()})


class _BrokenReadBackend(MemoryCacheBackend):
    def get(self, key):
        raise OSError("connection reset")


def test_read_failure_is_a_miss():
    cache = ProvenanceCache(_BrokenReadBackend(), memo_capacity=0)
    assert cache.get("u1", "k", "1", "h") is None


def test_sqlite_backend_round_trip(tmp_path):
    path = str(tmp_path / "cache" / "engine.sqlite3")
    key = make_key("u1", "daily_weather", "1.0.0", "h1", "2024-03-10")
    SQLiteCacheBackend(path).set(key, {"pressure_score": 18}, run_id="run_abc")
    # a fresh connection sees the row
    assert SQLiteCacheBackend(path).get(key) == {"pressure_score": 18}
    assert SQLiteCacheBackend(path).get(make_key("u1", "daily_weather", "1.0.0", "h2")) is None


def test_lru_evicts_oldest():
    lru = LRUCache(2)
    lru.set("a", 1)
    lru.set("b", 2)
    assert lru.get("a") == 1      # a is now most recent
    lru.set("c", 3)
    assert lru.get("b") is None
    assert lru.get("a") == 1 and lru.get("c") == 3
