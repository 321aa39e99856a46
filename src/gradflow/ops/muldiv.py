from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import numpy as np

from gradflow.errors import OperatorError
from gradflow.ir.shape import TensorSpec, merge
from gradflow.ops.base import ComputeContext, GradientContext, Operator
from gradflow.ops.registry import register_operator


def _as_rows(x: np.ndarray) -> np.ndarray:
    return x.reshape(-1, x.shape[-1])


def _lanes(n: int) -> list[slice]:
    """Column slices picking element k of every complete group of four."""
    end = (n // 4) * 4
    return [slice(k, end, 4) for k in range(4)]


class _MulDivBase(Operator):
    def __init__(self, epsilon: float = 0.1) -> None:
        self.epsilon = float(epsilon)

    def attributes(self) -> dict[str, Any]:
        return {"epsilon": self.epsilon}

    def _check_rank(self, spec: TensorSpec) -> None:
        if spec.shape.rank < 1:
            raise OperatorError(f"{self.kind} requires rank >= 1", code="EMULDIV_RANK")


@register_operator("MulDiv")
class MulDiv(_MulDivBase):
    """
    Complex multiply/divide activation along the innermost axis.

    Each group of four consecutive elements ``(a, b, c, d)`` maps to
    ``(a*c - b*d, a*d + b*c, (a*c + b*d)/q, (b*c - a*d)/q)`` with
    ``q = c^2 + d^2 + epsilon^2``, i.e. the product and quotient of the complex
    numbers ``a+bi`` and ``c+di``. Trailing elements that do not fill a group
    pass through unchanged.
    """

    def infer_shapes(self, inputs: Sequence[TensorSpec]) -> list[TensorSpec]:
        self._expect_arity(inputs, 1)
        self._check_rank(inputs[0])
        return [inputs[0]]

    def compute(self, inputs: Sequence[np.ndarray], ctx: ComputeContext) -> list[np.ndarray]:
        x = inputs[0]
        src = _as_rows(x)
        out = src.copy()
        eps2 = self.epsilon * self.epsilon
        lanes = _lanes(src.shape[1])

        def block(lo: int, hi: int) -> None:
            a, b, c, d = (src[lo:hi, s] for s in lanes)
            q = c * c + d * d + eps2
            dst = out[lo:hi]
            dst[:, lanes[0]] = a * c - b * d
            dst[:, lanes[1]] = a * d + b * c
            dst[:, lanes[2]] = (a * c + b * d) / q
            dst[:, lanes[3]] = (b * c - a * d) / q

        ctx.map_rows(block, src.shape[0])
        return [out.reshape(x.shape)]

    def gradient(self, ctx: GradientContext) -> list[Any]:
        return [ctx.add("MulDivBack", [ctx.inputs[0], ctx.grad()], epsilon=self.epsilon)]


@register_operator("MulDivBack")
class MulDivBack(_MulDivBase):
    """Gradient of ``MulDiv`` with respect to its input, given the output gradient."""

    def infer_shapes(self, inputs: Sequence[TensorSpec]) -> list[TensorSpec]:
        self._expect_arity(inputs, 2)
        x, g = inputs
        self._check_rank(x)
        return [TensorSpec(merge(x.shape, g.shape), g.dtype)]

    def compute(self, inputs: Sequence[np.ndarray], ctx: ComputeContext) -> list[np.ndarray]:
        x, g = inputs
        src = _as_rows(x)
        grad = _as_rows(g)
        out = grad.copy()
        eps2 = self.epsilon * self.epsilon
        lanes = _lanes(src.shape[1])

        def block(lo: int, hi: int) -> None:
            a, b, c, d = (src[lo:hi, s] for s in lanes)
            w, u, y, z = (grad[lo:hi, s] for s in lanes)
            q = c * c + d * d + eps2
            q2 = q * q
            prod_re = a * c + b * d
            prod_im = b * c - a * d
            dst = out[lo:hi]
            dst[:, lanes[0]] = w * c + u * d + y * (c / q) - z * (d / q)
            dst[:, lanes[1]] = -w * d + u * c + y * (d / q) + z * (c / q)
            dst[:, lanes[2]] = (
                w * a
                + u * b
                + y * (a / q - prod_re * (2 * c / q2))
                + z * (b / q - prod_im * (2 * c / q2))
            )
            dst[:, lanes[3]] = (
                -w * b
                + u * a
                + y * (b / q - prod_re * (2 * d / q2))
                + z * (-a / q - prod_im * (2 * d / q2))
            )

        ctx.map_rows(block, src.shape[0])
        return [out.reshape(g.shape)]
