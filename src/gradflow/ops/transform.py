from __future__ import annotations

from collections.abc import Sequence
from math import prod
from typing import Any

import numpy as np

from gradflow.errors import OperatorError, ShapeMismatch
from gradflow.ir.shape import Shape, TensorSpec
from gradflow.ops.base import ComputeContext, GradientContext, Operator
from gradflow.ops.registry import register_operator


@register_operator("Transpose")
class Transpose(Operator):
    def __init__(self, perm: Sequence[int] | None = None) -> None:
        self.perm = None if perm is None else tuple(int(p) for p in perm)

    def attributes(self) -> dict[str, Any]:
        return {"perm": self.perm}

    def _perm(self, rank: int) -> tuple[int, ...]:
        if self.perm is None:
            return tuple(reversed(range(rank)))
        if len(self.perm) != rank or sorted(self.perm) != list(range(rank)):
            raise OperatorError(
                f"Invalid Transpose perm {self.perm} for rank {rank}", code="ETRANSPOSE_PERM"
            )
        return self.perm

    def infer_shapes(self, inputs: Sequence[TensorSpec]) -> list[TensorSpec]:
        self._expect_arity(inputs, 1)
        x = inputs[0]
        perm = self._perm(x.shape.rank)
        return [TensorSpec(Shape(tuple(x.shape[i] for i in perm)), x.dtype)]

    def compute(self, inputs: Sequence[np.ndarray], ctx: ComputeContext) -> list[np.ndarray]:
        x = inputs[0]
        return [np.transpose(x, self._perm(x.ndim))]

    def gradient(self, ctx: GradientContext) -> list[Any]:
        perm = self._perm(ctx.spec(ctx.inputs[0]).shape.rank)
        inverse = tuple(int(i) for i in np.argsort(perm))
        return [ctx.add("Transpose", [ctx.grad()], perm=inverse)]


@register_operator("Reshape")
class Reshape(Operator):
    """Reshape to ``shape``; at most one ``-1`` entry is inferred from the element count."""

    def __init__(self, shape: Sequence[int]) -> None:
        target = tuple(int(d) for d in shape)
        if sum(1 for d in target if d == -1) > 1:
            raise OperatorError("Reshape 'shape' may contain at most one -1", code="ERESHAPE_NEG1")
        if any(d <= 0 for d in target if d != -1):
            raise OperatorError(
                "Reshape dims must be positive (or -1 for infer)", code="ERESHAPE_DIMS"
            )
        self.shape = target

    def attributes(self) -> dict[str, Any]:
        return {"shape": self.shape}

    def infer_shapes(self, inputs: Sequence[TensorSpec]) -> list[TensorSpec]:
        self._expect_arity(inputs, 1)
        x = inputs[0]
        total_in = x.shape.numel
        if total_in is None:
            # element count unknown until runtime; the -1 axis stays open
            dims = tuple(None if d == -1 else d for d in self.shape)
            return [TensorSpec(Shape(dims), x.dtype)]
        if -1 not in self.shape:
            if prod(self.shape) != total_in:
                raise ShapeMismatch(
                    f"Reshape element count mismatch: {x.shape} to {list(self.shape)}",
                    code="ERESHAPE_COUNT",
                )
            return [TensorSpec(Shape(self.shape), x.dtype)]
        known_prod = prod(d for d in self.shape if d != -1)
        if total_in % known_prod != 0:
            raise ShapeMismatch(
                f"Reshape cannot infer -1 dimension: {x.shape} to {list(self.shape)}",
                code="ERESHAPE_INF",
            )
        inferred = total_in // known_prod
        return [TensorSpec(Shape(tuple(inferred if d == -1 else d for d in self.shape)), x.dtype)]

    def compute(self, inputs: Sequence[np.ndarray], ctx: ComputeContext) -> list[np.ndarray]:
        return [np.reshape(inputs[0], self.shape)]

    def gradient(self, ctx: GradientContext) -> list[Any]:
        in_shape = ctx.spec(ctx.inputs[0]).shape
        unknown = sum(1 for d in in_shape if d is None)
        if unknown > 1:
            raise OperatorError(
                f"Reshape gradient needs at most one unknown input axis, got {in_shape}",
                code="ERESHAPE_GRAD",
            )
        back = tuple(-1 if d is None else d for d in in_shape)
        return [ctx.add("Reshape", [ctx.grad()], shape=back)]
