from __future__ import annotations

from collections.abc import Sequence

import numpy as np
import pytest

from gradflow.errors import ExecutionError, MissingBinding, ShapeContractViolation, ShapeMismatch
from gradflow.ir import Graph, TensorSpec, ValueRef
from gradflow.ops import ComputeContext, Operator
from gradflow.planner import plan
from gradflow.runtime import Executor


class WrongShape(Operator):
    kind = "WrongShape"

    def infer_shapes(self, inputs: Sequence[TensorSpec]) -> list[TensorSpec]:
        return [inputs[0]]

    def compute(self, inputs: Sequence[np.ndarray], ctx: ComputeContext) -> list[np.ndarray]:
        return [np.concatenate([inputs[0], inputs[0]])]


class Explodes(Operator):
    kind = "Explodes"

    def infer_shapes(self, inputs: Sequence[TensorSpec]) -> list[TensorSpec]:
        return [inputs[0]]

    def compute(self, inputs: Sequence[np.ndarray], ctx: ComputeContext) -> list[np.ndarray]:
        raise RuntimeError("boom")


def wide_graph(branches: int = 8) -> tuple[Graph, ValueRef, ValueRef]:
    g = Graph("wide")
    x = g.input("x", [16, 4])
    outs = []
    for i in range(branches):
        (h,) = g.add_operation("Scale", [x], factor=float(i + 1))
        (h,) = g.add_operation("Relu" if i % 2 else "Neg", [h])
        (h,) = g.add_operation("ReduceSum", [h], axes=[1])
        outs.append(h)
    (y,) = g.add_operation("AddN", outs, name="y")
    return g, x, y


def test_sequential_and_parallel_agree() -> None:
    g, x, y = wide_graph()
    p = plan(g, [y])
    xv = np.random.default_rng(0).standard_normal((16, 4)).astype(np.float32)
    with Executor() as seq, Executor(num_workers=4) as par:
        expected = seq.execute(p, {x: xv})[y]
        for _ in range(5):
            np.testing.assert_array_equal(par.execute(p, {x: xv})[y], expected)
    manual = sum(
        (np.maximum(xv * (i + 1), 0) if i % 2 else -(xv * (i + 1))).sum(axis=1)
        for i in range(8)
    )
    np.testing.assert_allclose(expected, manual, rtol=1e-5)


def test_parallel_without_buffer_reuse_agrees() -> None:
    g, x, y = wide_graph()
    xv = np.ones((16, 4), dtype=np.float32)
    with Executor() as seq, Executor(num_workers=3) as par:
        a = seq.execute(plan(g, [y]), {x: xv})[y]
        b = par.execute(plan(g, [y], reuse_buffers=False), {x: xv})[y]
    np.testing.assert_array_equal(a, b)


def test_intra_op_pool_matches_serial() -> None:
    g = Graph()
    a = g.input("a", [600, 8])
    b = g.input("b", [8, 3])
    (c,) = g.add_operation("MatMul", [a, b])
    (d,) = g.add_operation("MulDiv", [g.input("m", [600, 10])])
    p = plan(g, [c, d])
    rng = np.random.default_rng(1)
    bindings = {
        a: rng.standard_normal((600, 8)).astype(np.float32),
        b: rng.standard_normal((8, 3)).astype(np.float32),
        g.value_by_name("m"): rng.uniform(-1, 1, (600, 10)).astype(np.float32),
    }
    with Executor() as serial, Executor(intra_op_workers=2, min_rows=64) as split:
        assert split.context.parallel
        want = serial.execute(p, bindings)
        got = split.execute(p, bindings)
    np.testing.assert_allclose(got[c], want[c], rtol=1e-5, atol=1e-5)
    np.testing.assert_array_equal(got[d], want[d])


def test_missing_binding() -> None:
    g = Graph()
    x = g.input("x", [2])
    w = g.parameter("w", [2])
    (y,) = g.add_operation("Mul", [x, w])
    with pytest.raises(MissingBinding) as exc:
        Executor().execute(plan(g, [y]), {x: [1.0, 2.0]})
    assert "'w'" in str(exc.value)


def test_binding_shape_is_checked_and_dtype_cast() -> None:
    g = Graph()
    x = g.input("x", [None, 2])
    (y,) = g.add_operation("Neg", [x])
    p = plan(g, [y])
    with pytest.raises(ShapeMismatch):
        Executor().execute(p, {x: np.zeros((3, 3))})
    out = Executor().execute(p, {x: [[1, 2], [3, 4], [5, 6]]})[y]
    assert out.dtype == np.float32
    assert out.shape == (3, 2)
    np.testing.assert_array_equal(out, [[-1, -2], [-3, -4], [-5, -6]])


def test_shape_contract_violation() -> None:
    g = Graph()
    x = g.input("x", [3])
    (y,) = g.add_operation(WrongShape(), [x])
    with pytest.raises(ShapeContractViolation) as exc:
        Executor().execute(plan(g, [y]), {x: [1.0, 2.0, 3.0]})
    assert exc.value.code == "ESHAPE_CONTRACT"


def test_operator_failure_is_wrapped() -> None:
    g = Graph()
    x = g.input("x", [3])
    (y,) = g.add_operation(Explodes(), [x], name="bad")
    with pytest.raises(ExecutionError) as exc:
        Executor().execute(plan(g, [y]), {x: [1.0, 2.0, 3.0]})
    assert "bad" in str(exc.value)
    assert isinstance(exc.value.__cause__, RuntimeError)


def test_parallel_failure_aborts_run() -> None:
    g, x, y = wide_graph(4)
    (bad,) = g.add_operation(Explodes(), [x], name="bad")
    (z,) = g.add_operation("ReduceSum", [bad], axes=[1])
    (total,) = g.add_operation("Add", [y, z])
    with Executor(num_workers=4) as ex:
        with pytest.raises(ExecutionError):
            ex.execute(plan(g, [total]), {x: np.ones((16, 4))})


def test_leaf_and_constant_outputs_are_copies() -> None:
    g = Graph()
    x = g.input("x", [2])
    k = g.constant("k", [1.0, 2.0], dtype="float32")
    xv = np.array([5.0, 6.0], dtype=np.float32)
    out = Executor().execute(plan(g, [x, k]), {x: xv})
    out[x][0] = 0.0
    out[k][0] = 0.0
    assert xv[0] == 5.0
    assert g.constant_value(k)[0] == 1.0


def test_executor_rejects_bad_pool_sizes() -> None:
    with pytest.raises(ValueError):
        Executor(num_workers=0)
    with pytest.raises(ValueError):
        Executor(intra_op_workers=-1)
