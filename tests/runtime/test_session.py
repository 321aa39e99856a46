from __future__ import annotations

import numpy as np
import pytest

from gradflow.autodiff import differentiate
from gradflow.cache import ResultCache
from gradflow.config import EngineConfig
from gradflow.init import uniform
from gradflow.ir import Graph
from gradflow.runtime import Executor, Session


def test_run_by_name_and_handle() -> None:
    g = Graph()
    x = g.input("x", [3])
    (y,) = g.add_operation("Scale", [x], name="y", factor=2.0)
    with Session(g) as session:
        by_name = session.run("y", {"x": [1.0, 2.0, 3.0]})
        by_ref = session.run(y, {x: [1.0, 2.0, 3.0]})
        both = session.run([y, "x"], {x: [1.0, 2.0, 3.0]})
    np.testing.assert_array_equal(by_name, [2.0, 4.0, 6.0])
    np.testing.assert_array_equal(by_ref, by_name)
    assert isinstance(both, list) and len(both) == 2
    np.testing.assert_array_equal(both[1], [1.0, 2.0, 3.0])


def test_plans_are_memoized_until_mutation() -> None:
    g = Graph()
    x = g.input("x", [3])
    (y,) = g.add_operation("Relu", [x], name="y")
    session = Session(g)
    first = session.plan([y])
    assert session.plan(["y"]) is first
    g.add_operation("Neg", [y], name="z")
    second = session.plan([y])
    assert second is not first
    assert second.graph_version == g.version
    session.close()


def test_matmul_scenario() -> None:
    g = Graph()
    a = g.parameter("A", [4, 8], init=uniform(-1.0, 1.0))
    b = g.parameter("B", [8, 2], init=uniform(-1.0, 1.0))
    (z,) = g.add_operation("MatMul", [a, b], name="z")
    assert g.shape(z).dims == (4, 2)
    bindings = g.initial_bindings(np.random.default_rng(7))
    with Session.from_config(g, EngineConfig(num_workers=2)) as session:
        out = session.run(z, bindings)
        np.testing.assert_allclose(out, bindings[a] @ bindings[b], rtol=1e-5, atol=1e-6)
        grads = differentiate(g, [z], [a, b])
        ga, gb = session.run([grads[a], grads[b]], bindings)
    assert ga.shape == (4, 8)
    assert gb.shape == (8, 2)
    np.testing.assert_allclose(ga, np.ones((4, 2)) @ bindings[b].T, rtol=1e-5)


def test_from_config_without_cache() -> None:
    g = Graph()
    g.input("x", [1])
    with Session.from_config(g, EngineConfig(cache_capacity=0, reuse_buffers=False)) as session:
        assert session.cache is None
        assert session.executor.cache is None
        assert not session.reuse_buffers


def test_shared_cache_is_attached_to_executor() -> None:
    g = Graph()
    x = g.input("x", [2])
    (y,) = g.add_operation("Neg", [x])
    cache = ResultCache(8)
    executor = Executor()
    with Session(g, executor, cache) as session:
        assert executor.cache is cache
        session.run(y, {x: [1.0, 2.0]})
        session.run(y, {x: [1.0, 2.0]})
    assert cache.get_stats()["hits"] == 1


def test_closing_session_keeps_shared_executor_running() -> None:
    g = Graph()
    x = g.input("x", [2])
    (y,) = g.add_operation("Neg", [x])
    with Executor(num_workers=2) as executor:
        first = Session(g, executor)
        second = Session(g, executor)
        first.close()
        assert executor._pool is not None
        np.testing.assert_array_equal(second.run(y, {x: [1.0, 2.0]}), [-1.0, -2.0])
        second.close()
        assert executor._pool is not None
    assert executor._pool is None


def test_session_closes_its_own_executor() -> None:
    g = Graph()
    g.input("x", [1])
    session = Session.from_config(g, EngineConfig(num_workers=2, cache_capacity=0))
    executor = session.executor
    session.close()
    assert executor._pool is None


def test_unknown_name_raises() -> None:
    g = Graph()
    g.input("x", [1])
    with Session(g) as session:
        with pytest.raises(KeyError):
            session.run("nope", {})
