from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import numpy as np

from gradflow.errors import OperatorError, ShapeMismatch
from gradflow.ir.shape import Dim, Shape, TensorSpec, broadcast_shapes, merge
from gradflow.ops.base import ComputeContext, GradientContext, Operator
from gradflow.ops.registry import register_operator


def _axes_tuple(axes: int | Sequence[int] | None) -> tuple[int, ...] | None:
    if axes is None:
        return None
    if isinstance(axes, (int, np.integer)):
        return (int(axes),)
    return tuple(int(a) for a in axes)


def _expand(shape: Shape, axes: Sequence[int]) -> Shape:
    """Insert size-1 axes at ``axes`` (positions in the expanded result)."""
    dims: list[Dim] = list(shape.dims)
    for ax in sorted(axes):
        dims.insert(ax, 1)
    return Shape(tuple(dims))


def sum_to_shape(x: np.ndarray, shape: Sequence[int]) -> np.ndarray:
    """Sum ``x`` over the axes broadcasting stretched when going from ``shape`` to ``x.shape``."""
    lead = x.ndim - len(shape)
    if lead < 0:
        raise ValueError(f"cannot reduce shape {x.shape} to higher-rank {tuple(shape)}")
    out = x.sum(axis=tuple(range(lead))) if lead else x
    axes = tuple(i for i, d in enumerate(shape) if d == 1 and out.shape[i] != 1)
    if axes:
        out = out.sum(axis=axes, keepdims=True)
    return out.reshape(tuple(shape))


@register_operator("ReduceSum")
class ReduceSum(Operator):
    def __init__(self, axes: int | Sequence[int] | None = None, keepdims: bool = False) -> None:
        self.axes = _axes_tuple(axes)
        self.keepdims = bool(keepdims)

    def attributes(self) -> dict[str, Any]:
        return {"axes": self.axes, "keepdims": self.keepdims}

    def normalized_axes(self, rank: int) -> tuple[int, ...]:
        if self.axes is None:
            return tuple(range(rank))
        norm = []
        for ax in self.axes:
            a = ax + rank if ax < 0 else ax
            if not 0 <= a < rank:
                raise OperatorError(
                    f"ReduceSum axis {ax} out of range for rank {rank}", code="EREDUCESUM_AXIS"
                )
            norm.append(a)
        if len(set(norm)) != len(norm):
            raise OperatorError(f"ReduceSum axes repeat: {self.axes}", code="EREDUCESUM_AXIS")
        return tuple(sorted(norm))

    def infer_shapes(self, inputs: Sequence[TensorSpec]) -> list[TensorSpec]:
        self._expect_arity(inputs, 1)
        x = inputs[0]
        axes = self.normalized_axes(x.shape.rank)
        dims: list[Dim] = []
        for i, d in enumerate(x.shape):
            if i not in axes:
                dims.append(d)
            elif self.keepdims:
                dims.append(1)
        return [TensorSpec(Shape(tuple(dims)), x.dtype)]

    def compute(self, inputs: Sequence[np.ndarray], ctx: ComputeContext) -> list[np.ndarray]:
        x = inputs[0]
        axes = self.normalized_axes(x.ndim)
        return [np.asarray(np.sum(x, axis=axes, keepdims=self.keepdims), dtype=x.dtype)]

    def gradient(self, ctx: GradientContext) -> list[Any]:
        x = ctx.inputs[0]
        axes = None if self.keepdims else self.normalized_axes(ctx.spec(x).shape.rank)
        return [ctx.add("BroadcastLike", [ctx.grad(), x], axes=axes or None)]


@register_operator("BroadcastLike")
class BroadcastLike(Operator):
    """
    Broadcast input 0 to the shape of input 1.

    ``axes`` lists positions (in the target's rank) where input 0 lacks an axis;
    they are re-inserted as size-1 before broadcasting, which undoes a
    ``ReduceSum`` without ``keepdims``.
    """

    def __init__(self, axes: int | Sequence[int] | None = None) -> None:
        self.axes = _axes_tuple(axes)

    def attributes(self) -> dict[str, Any]:
        return {"axes": self.axes}

    def infer_shapes(self, inputs: Sequence[TensorSpec]) -> list[TensorSpec]:
        self._expect_arity(inputs, 2)
        x, like = inputs
        src = x.shape
        if self.axes:
            if src.rank + len(self.axes) != like.shape.rank:
                raise ShapeMismatch(
                    f"BroadcastLike: {src} with axes {self.axes} cannot target {like.shape}"
                )
            src = _expand(src, self.axes)
        if src.rank > like.shape.rank:
            raise ShapeMismatch(f"BroadcastLike: {x.shape} has higher rank than {like.shape}")
        merge(broadcast_shapes(src, like.shape), like.shape)
        return [TensorSpec(like.shape, x.dtype)]

    def compute(self, inputs: Sequence[np.ndarray], ctx: ComputeContext) -> list[np.ndarray]:
        x, like = inputs
        if self.axes:
            x = np.expand_dims(x, self.axes)
        return [np.broadcast_to(x, like.shape).copy()]

    def gradient(self, ctx: GradientContext) -> list[Any]:
        g = ctx.grad()
        if self.axes:
            gx = ctx.add("ReduceSum", [g], axes=self.axes, keepdims=False)
        else:
            gx = ctx.reduce_like(g, ctx.inputs[0])
        return [gx, None]


@register_operator("ReduceToLike")
class ReduceToLike(Operator):
    """Sum input 0 down to the shape and dtype of input 1; the inverse of broadcasting."""

    def infer_shapes(self, inputs: Sequence[TensorSpec]) -> list[TensorSpec]:
        self._expect_arity(inputs, 2)
        g, like = inputs
        if like.shape.rank > g.shape.rank:
            raise ShapeMismatch(f"ReduceToLike: cannot reduce {g.shape} to {like.shape}")
        merge(broadcast_shapes(g.shape, like.shape), g.shape)
        return [like]

    def compute(self, inputs: Sequence[np.ndarray], ctx: ComputeContext) -> list[np.ndarray]:
        g, like = inputs
        return [np.asarray(sum_to_shape(g, like.shape), dtype=like.dtype)]

    def gradient(self, ctx: GradientContext) -> list[Any]:
        return [ctx.add("BroadcastLike", [ctx.grad(), ctx.inputs[0]]), None]
