from __future__ import annotations

import numpy as np
import pytest

from gradflow.autodiff import differentiate
from gradflow.errors import OperatorError
from gradflow.ir import Graph, TensorSpec
from gradflow.ops import AddN, ComputeContext, Min, MinBack, Relu, Scale, create_operator
from gradflow.runtime import Session


def test_binary_ops_compute_with_broadcast() -> None:
    ctx = ComputeContext()
    a = np.arange(6, dtype=np.float32).reshape(2, 3)
    b = np.array([10.0, 20.0, 30.0], dtype=np.float32)
    for kind, expected in [
        ("Add", a + b),
        ("Sub", a - b),
        ("Mul", a * b),
        ("Min", np.minimum(a, b)),
    ]:
        (out,) = create_operator(kind).compute([a, b], ctx)
        np.testing.assert_array_equal(out, expected)
        assert out.dtype == np.float32


def test_unary_ops_compute() -> None:
    ctx = ComputeContext()
    x = np.array([-2.0, -0.5, 0.0, 1.5], dtype=np.float32)
    np.testing.assert_array_equal(Relu().compute([x], ctx)[0], [0.0, 0.0, 0.0, 1.5])
    np.testing.assert_array_equal(create_operator("Neg").compute([x], ctx)[0], -x)
    scaled = Scale(factor=3.0).compute([x], ctx)[0]
    np.testing.assert_allclose(scaled, x * 3.0)
    assert scaled.dtype == np.float32


def test_scale_signature_includes_factor() -> None:
    assert Scale(2.5).signature() == "Scale(factor=2.5)"
    assert Scale(2.5).signature() != Scale(3.0).signature()


def test_min_back_is_strict() -> None:
    x = np.array([1.0, 2.0, 3.0], dtype=np.float32)
    y = np.array([1.0, 3.0, 2.0], dtype=np.float32)
    g = np.array([5.0, 6.0, 7.0], dtype=np.float32)
    (gx,) = MinBack().compute([x, y, g], ComputeContext())
    (gy,) = MinBack().compute([y, x, g], ComputeContext())
    np.testing.assert_array_equal(gx, [0.0, 6.0, 0.0])
    np.testing.assert_array_equal(gy, [0.0, 0.0, 7.0])


def test_min_gradient_splits_between_inputs() -> None:
    g = Graph()
    x = g.input("x", [3])
    y = g.input("y", [3])
    (m,) = g.add_operation(Min(), [x, y])
    grads = differentiate(g, [m], [x, y])
    with Session(g) as session:
        gx, gy = session.run(
            [grads[x], grads[y]],
            {x: [1.0, 2.0, 3.0], y: [1.0, 3.0, 2.0]},
        )
    np.testing.assert_array_equal(gx, [0.0, 1.0, 0.0])
    np.testing.assert_array_equal(gy, [0.0, 0.0, 1.0])


def test_relu_gradient_masks_negative_inputs() -> None:
    g = Graph()
    x = g.input("x", [4])
    (y,) = g.add_operation("Relu", [x])
    (s,) = g.add_operation("Scale", [y], factor=2.0)
    grads = differentiate(g, [s], [x])
    with Session(g) as session:
        gx = session.run(grads[x], {x: [-1.0, 0.0, 0.5, 3.0]})
    np.testing.assert_array_equal(gx, [0.0, 0.0, 2.0, 2.0])


def test_addn_sums_and_promotes() -> None:
    op = AddN()
    specs = [TensorSpec((2,), "float32"), TensorSpec((2,), "float64")]
    assert op.infer_shapes(specs) == [TensorSpec((2,), "float64")]
    a = np.array([1.0, 2.0], dtype=np.float32)
    b = np.array([0.5, 0.25], dtype=np.float64)
    (out,) = op.compute([a, b, a], ComputeContext())
    np.testing.assert_array_equal(out, [2.5, 4.25])
    assert out.dtype == np.float64
    # inputs are never written to
    np.testing.assert_array_equal(a, [1.0, 2.0])


def test_addn_needs_an_input() -> None:
    with pytest.raises(OperatorError) as exc:
        AddN().infer_shapes([])
    assert exc.value.code == "EADDN_ARITY"


def test_broadcast_gradient_is_reduced_to_input_shape() -> None:
    g = Graph()
    a = g.input("a", [2, 3])
    b = g.parameter("b", [3])
    (c,) = g.add_operation("Mul", [a, b])
    grads = differentiate(g, [c], [a, b])
    assert g.shape(grads[b]).dims == (3,)
    assert g.shape(grads[a]).dims == (2, 3)
    av = np.arange(6, dtype=np.float32).reshape(2, 3)
    bv = np.array([1.0, 2.0, 3.0], dtype=np.float32)
    with Session(g) as session:
        ga, gb = session.run([grads[a], grads[b]], {a: av, b: bv})
    np.testing.assert_array_equal(ga, np.broadcast_to(bv, (2, 3)))
    np.testing.assert_array_equal(gb, av.sum(axis=0))
