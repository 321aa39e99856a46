"""Finite-difference checks of the gradients ``differentiate`` builds."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from typing import Any

import numpy as np

from gradflow.autodiff.grad import differentiate
from gradflow.ir.graph import Graph, ValueRef
from gradflow.planner.plan import plan
from gradflow.runtime.executor import Executor


def numeric_gradient(
    graph: Graph,
    output: ValueRef,
    wrt: ValueRef,
    bindings: Mapping[ValueRef, Any],
    step: float = 1e-3,
    executor: Executor | None = None,
) -> np.ndarray:
    """Central differences of ``sum(output)`` with respect to the bound leaf ``wrt``."""
    compiled = plan(graph, [output])
    ex = executor if executor is not None else Executor()
    base = {k: np.array(v, copy=True) for k, v in bindings.items()}
    x = np.array(base[wrt], dtype=np.float64, copy=True)
    grad = np.zeros_like(x)

    def total(point: np.ndarray) -> float:
        base[wrt] = point
        return float(np.sum(ex.execute(compiled, base)[output], dtype=np.float64))

    for i in np.ndindex(x.shape):
        orig = x[i]
        x[i] = orig + step
        hi = total(x.copy())
        x[i] = orig - step
        lo = total(x.copy())
        x[i] = orig
        grad[i] = (hi - lo) / (2 * step)
    return grad


def check_gradients(
    graph: Graph,
    output: ValueRef,
    wrt: Sequence[ValueRef],
    bindings: Mapping[ValueRef, Any],
    *,
    step: float = 1e-3,
    tolerance: float = 1e-2,
    expect_zero: Iterable[ValueRef] = (),
    zero_tolerance: float = float(np.finfo(np.float32).eps),
) -> dict[ValueRef, np.ndarray]:
    """
    Differentiate ``sum(output)`` with respect to ``wrt`` and compare against
    central differences. Values listed in ``expect_zero`` must instead have an
    all-zero analytic gradient (within ``zero_tolerance``).

    Extends ``graph`` with the gradient operations. Raises AssertionError on the
    first disagreement; returns the analytic gradients.
    """
    zero = set(expect_zero)
    grads = differentiate(graph, [output], list(wrt))
    with Executor() as ex:
        analytic = ex.execute(plan(graph, [grads[w] for w in wrt]), bindings)
        results: dict[ValueRef, np.ndarray] = {}
        for w in wrt:
            a = np.asarray(analytic[grads[w]], dtype=np.float64)
            name = graph.value_name(w)
            if w in zero:
                worst = float(np.max(np.abs(a))) if a.size else 0.0
                if worst > zero_tolerance:
                    raise AssertionError(
                        f"gradient of '{name}' expected to be zero, max |g| = {worst:.3g}"
                    )
            else:
                n = numeric_gradient(graph, output, w, bindings, step=step, executor=ex)
                if not np.allclose(a, n, rtol=tolerance, atol=tolerance):
                    diff = float(np.max(np.abs(a - n)))
                    raise AssertionError(
                        f"gradient of '{name}' disagrees with finite differences: "
                        f"max |analytic - numeric| = {diff:.3g} (tolerance {tolerance})"
                    )
            results[w] = a
    return results
