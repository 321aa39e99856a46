from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import numpy as np

from gradflow.errors import OperatorError, ShapeMismatch
from gradflow.ir.shape import Shape, TensorSpec, broadcast_shapes, merge_dim, promote_dtype
from gradflow.ops.base import ComputeContext, GradientContext, Operator
from gradflow.ops.registry import register_operator


def _swap_last(rank: int) -> tuple[int, ...]:
    return tuple(range(rank - 2)) + (rank - 1, rank - 2)


@register_operator("MatMul")
class MatMul(Operator):
    """
    Batched matrix product over the last two axes, leading axes broadcast.

    Plain 2-D products are split into row blocks when the compute context
    carries an intra-op pool.
    """

    def infer_shapes(self, inputs: Sequence[TensorSpec]) -> list[TensorSpec]:
        self._expect_arity(inputs, 2)
        a, b = inputs
        if a.shape.rank < 2 or b.shape.rank < 2:
            raise OperatorError("MatMul requires tensors with rank >= 2", code="EMATMUL_RANK")
        batch = broadcast_shapes(a.shape[:-2], b.shape[:-2])
        m, k1 = a.shape[-2], a.shape[-1]
        k2, n = b.shape[-2], b.shape[-1]
        try:
            merge_dim(k1, k2)
        except ShapeMismatch:
            raise ShapeMismatch(
                f"Incompatible MatMul inner dims: {k1} vs {k2}", code="EMATMUL_DIMS"
            ) from None
        return [TensorSpec(Shape(batch.dims + (m, n)), promote_dtype(a.dtype, b.dtype))]

    def compute(self, inputs: Sequence[np.ndarray], ctx: ComputeContext) -> list[np.ndarray]:
        a, b = inputs
        if a.ndim == 2 and b.ndim == 2 and ctx.parallel:
            out = np.empty((a.shape[0], b.shape[1]), dtype=np.result_type(a, b))

            def block(lo: int, hi: int) -> None:
                np.matmul(a[lo:hi], b, out=out[lo:hi])

            ctx.map_rows(block, a.shape[0])
            return [out]
        return [np.matmul(a, b)]

    def gradient(self, ctx: GradientContext) -> list[Any]:
        a, b = ctx.inputs
        g = ctx.grad()
        ga = gb = None
        if ctx.needs_grad[0]:
            bt = ctx.add("Transpose", [b], perm=_swap_last(ctx.spec(b).shape.rank))
            ga = ctx.reduce_like(ctx.add("MatMul", [g, bt]), a)
        if ctx.needs_grad[1]:
            at = ctx.add("Transpose", [a], perm=_swap_last(ctx.spec(a).shape.rank))
            gb = ctx.reduce_like(ctx.add("MatMul", [at, g]), b)
        return [ga, gb]
