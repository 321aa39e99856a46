from __future__ import annotations

import threading

import numpy as np
import pytest

from gradflow.cache import ResultCache, fingerprint_array, fingerprint_step, node_tag
from gradflow.ir import Graph
from gradflow.runtime import Session


def arr(*values: float) -> np.ndarray:
    return np.array(values, dtype=np.float32)


def test_fingerprints_depend_on_content_dtype_and_shape() -> None:
    a = arr(1.0, 2.0)
    assert fingerprint_array(a) == fingerprint_array(a.copy())
    assert fingerprint_array(a) != fingerprint_array(arr(1.0, 3.0))
    assert fingerprint_array(a) != fingerprint_array(a.astype(np.float64))
    assert fingerprint_array(a) != fingerprint_array(a.reshape(2, 1))
    assert fingerprint_step("Neg()", ["k1"]) != fingerprint_step("Neg()", ["k2"])
    assert fingerprint_step("Scale(factor=2.0)", ["k"]) != fingerprint_step(
        "Scale(factor=3.0)", ["k"]
    )


def test_lru_eviction_order() -> None:
    cache = ResultCache(capacity=2)
    cache.put("a", [arr(1)])
    cache.put("b", [arr(2)])
    assert cache.get("a") is not None  # a becomes most recent
    cache.put("c", [arr(3)])
    assert "b" not in cache
    assert "a" in cache and "c" in cache
    assert cache.get_stats()["evictions"] == 1
    assert len(cache) == 2


def test_get_or_compute_hits_return_identical_arrays() -> None:
    cache = ResultCache()
    calls = []

    def compute() -> list[np.ndarray]:
        calls.append(1)
        return [arr(1.5, 2.5)]

    first = cache.get_or_compute("k", compute)
    second = cache.get_or_compute("k", compute)
    assert len(calls) == 1
    assert first[0].tobytes() == second[0].tobytes()
    stats = cache.get_stats()
    assert stats["hits"] == 1 and stats["misses"] == 1
    assert stats["hit_rate_percent"] == 50.0


def test_stored_arrays_are_private_and_read_only() -> None:
    cache = ResultCache()
    source = arr(1.0, 2.0)
    cache.put("k", [source])
    source[0] = 99.0
    (stored,) = cache.get("k")
    assert stored[0] == 1.0
    assert not stored.flags.writeable
    with pytest.raises(ValueError):
        stored[0] = 5.0


def test_max_bytes_bounds_storage() -> None:
    cache = ResultCache(capacity=100, max_bytes=16)
    cache.put("a", [np.zeros(2, dtype=np.float32)])  # 8 bytes
    cache.put("b", [np.zeros(2, dtype=np.float32)])
    cache.put("c", [np.zeros(2, dtype=np.float32)])
    assert cache.nbytes <= 16
    assert "a" not in cache
    cache.put("huge", [np.zeros(100, dtype=np.float32)])
    assert "huge" not in cache


def test_invalidate_by_tag() -> None:
    cache = ResultCache()
    cache.put("a", [arr(1)], tags=[node_tag(1, "op", 0)])
    cache.put("b", [arr(2)], tags=[node_tag(1, "op", 1)])
    cache.put("c", [arr(3)], tags=[node_tag(2, "op", 0)])
    assert cache.invalidate([node_tag(1, "op", 0)]) == 1
    assert "a" not in cache and "b" in cache
    assert cache.invalidate_graph(1) == 1
    assert "c" in cache
    assert cache.get_stats()["invalidations"] == 2
    cache.clear()
    assert len(cache) == 0 and cache.nbytes == 0


def test_invalidation_during_compute_discards_result() -> None:
    cache = ResultCache()
    tag = node_tag(1, "op", 0)
    started = threading.Event()
    release = threading.Event()

    def slow() -> list[np.ndarray]:
        started.set()
        release.wait(5)
        return [arr(4.0)]

    result: list[tuple[np.ndarray, ...]] = []
    worker = threading.Thread(
        target=lambda: result.append(cache.get_or_compute("k", slow, tags=[tag]))
    )
    worker.start()
    assert started.wait(5)
    cache.invalidate([tag])
    release.set()
    worker.join(5)
    # the caller still gets its value, the cache does not keep it
    np.testing.assert_array_equal(result[0][0], [4.0])
    assert "k" not in cache
    assert cache.get_stats()["discarded"] == 1


def test_session_reuses_cached_steps() -> None:
    g = Graph()
    x = g.input("x", [4])
    (a,) = g.add_operation("Scale", [x], factor=2.0)
    (b,) = g.add_operation("Neg", [a])
    cache = ResultCache(capacity=16)
    with Session(g, cache=cache) as session:
        first = session.run(b, {x: [1.0, 2.0, 3.0, 4.0]})
        second = session.run(b, {x: [1.0, 2.0, 3.0, 4.0]})
        np.testing.assert_array_equal(first, second)
        assert cache.get_stats()["hits"] == 2
        session.run(b, {x: [0.0, 0.0, 0.0, 1.0]})
        assert cache.get_stats()["misses"] == 4


def test_graph_mutation_invalidates_entries() -> None:
    g = Graph()
    x = g.input("x", [2])
    k = g.constant("k", [1.0, 1.0], dtype="float32")
    (y,) = g.add_operation("Add", [x, k])
    cache = ResultCache()
    with Session(g, cache=cache) as session:
        np.testing.assert_array_equal(session.run(y, {x: [1.0, 2.0]}), [2.0, 3.0])
        assert len(cache) == 1
        g.set_constant(k, [10.0, 10.0])
        np.testing.assert_array_equal(session.run(y, {x: [1.0, 2.0]}), [11.0, 12.0])
        g.compact()
        assert len(cache) == 0


def test_invalidated_op_is_recomputed() -> None:
    g = Graph()
    x = g.input("x", [2])
    (y,) = g.add_operation("Neg", [x])
    cache = ResultCache()
    with Session(g, cache=cache) as session:
        session.run(y, {x: [1.0, 2.0]})
        cache.invalidate([node_tag(g.id, "op", g.producer(y).index)])
        assert len(cache) == 0
        session.run(y, {x: [1.0, 2.0]})
        assert cache.get_stats()["misses"] == 2


def test_unwatch_stops_invalidation() -> None:
    g = Graph()
    x = g.input("x", [2])
    (y,) = g.add_operation("Neg", [x])
    cache = ResultCache()
    session = Session(g, cache=cache)
    session.run(y, {x: [1.0, 2.0]})
    session.close()
    g.compact()
    assert len(cache) == 1


def test_rejects_bad_limits() -> None:
    with pytest.raises(ValueError):
        ResultCache(capacity=0)
    with pytest.raises(ValueError):
        ResultCache(max_bytes=-1)
