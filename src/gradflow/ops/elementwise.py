from __future__ import annotations

from abc import abstractmethod
from collections.abc import Sequence
from typing import Any

import numpy as np

from gradflow.errors import OperatorError
from gradflow.ir.shape import TensorSpec, broadcast_all, merge, promote_dtype, unify
from gradflow.ops.base import ComputeContext, GradientContext, Operator
from gradflow.ops.registry import register_operator


class BinaryElementwise(Operator):
    """Two-input elementwise operator; inputs broadcast by trailing-axis alignment."""

    def __init__(self, broadcast: bool = True) -> None:
        self.broadcast = bool(broadcast)

    def attributes(self) -> dict[str, Any]:
        return {"broadcast": self.broadcast}

    def infer_shapes(self, inputs: Sequence[TensorSpec]) -> list[TensorSpec]:
        self._expect_arity(inputs, 2)
        a, b = inputs
        shape = unify(a.shape, b.shape, broadcast=self.broadcast)
        return [TensorSpec(shape, promote_dtype(a.dtype, b.dtype))]

    def compute(self, inputs: Sequence[np.ndarray], ctx: ComputeContext) -> list[np.ndarray]:
        a, b = inputs
        return [np.asarray(self.calc(a, b))]

    @abstractmethod
    def calc(self, a: np.ndarray, b: np.ndarray) -> np.ndarray:
        raise NotImplementedError


class UnaryElementwise(Operator):
    def infer_shapes(self, inputs: Sequence[TensorSpec]) -> list[TensorSpec]:
        self._expect_arity(inputs, 1)
        return [inputs[0]]

    def compute(self, inputs: Sequence[np.ndarray], ctx: ComputeContext) -> list[np.ndarray]:
        return [np.asarray(self.calc(inputs[0]))]

    @abstractmethod
    def calc(self, x: np.ndarray) -> np.ndarray:
        raise NotImplementedError


@register_operator("Add")
class Add(BinaryElementwise):
    def calc(self, a: np.ndarray, b: np.ndarray) -> np.ndarray:
        return a + b

    def gradient(self, ctx: GradientContext) -> list[Any]:
        g = ctx.grad()
        return [
            ctx.reduce_like(g, x) if need else None
            for x, need in zip(ctx.inputs, ctx.needs_grad)
        ]


@register_operator("Sub")
class Sub(BinaryElementwise):
    def calc(self, a: np.ndarray, b: np.ndarray) -> np.ndarray:
        return a - b

    def gradient(self, ctx: GradientContext) -> list[Any]:
        g = ctx.grad()
        a, b = ctx.inputs
        ga = ctx.reduce_like(g, a) if ctx.needs_grad[0] else None
        gb = ctx.reduce_like(ctx.add("Neg", [g]), b) if ctx.needs_grad[1] else None
        return [ga, gb]


@register_operator("Mul")
class Mul(BinaryElementwise):
    def calc(self, a: np.ndarray, b: np.ndarray) -> np.ndarray:
        return a * b

    def gradient(self, ctx: GradientContext) -> list[Any]:
        g = ctx.grad()
        a, b = ctx.inputs
        ga = ctx.reduce_like(ctx.add("Mul", [g, b]), a) if ctx.needs_grad[0] else None
        gb = ctx.reduce_like(ctx.add("Mul", [g, a]), b) if ctx.needs_grad[1] else None
        return [ga, gb]


@register_operator("Min")
class Min(BinaryElementwise):
    """Elementwise minimum. On ties neither input receives gradient."""

    def calc(self, a: np.ndarray, b: np.ndarray) -> np.ndarray:
        return np.minimum(a, b)

    def gradient(self, ctx: GradientContext) -> list[Any]:
        g = ctx.grad()
        a, b = ctx.inputs
        ga = ctx.reduce_like(ctx.add("MinBack", [a, b, g]), a) if ctx.needs_grad[0] else None
        gb = ctx.reduce_like(ctx.add("MinBack", [b, a, g]), b) if ctx.needs_grad[1] else None
        return [ga, gb]


@register_operator("MinBack")
class MinBack(Operator):
    """grad for ``x`` of ``min(x, y)``: passes ``g`` where ``x < y``, zero elsewhere."""

    def infer_shapes(self, inputs: Sequence[TensorSpec]) -> list[TensorSpec]:
        self._expect_arity(inputs, 3)
        x, y, g = inputs
        return [TensorSpec(broadcast_all([x.shape, y.shape, g.shape]), g.dtype)]

    def compute(self, inputs: Sequence[np.ndarray], ctx: ComputeContext) -> list[np.ndarray]:
        x, y, g = inputs
        return [np.where(x < y, g, np.zeros((), dtype=g.dtype))]


@register_operator("Neg")
class Neg(UnaryElementwise):
    def calc(self, x: np.ndarray) -> np.ndarray:
        return -x

    def gradient(self, ctx: GradientContext) -> list[Any]:
        return [ctx.add("Neg", [ctx.grad()])]


@register_operator("Scale")
class Scale(UnaryElementwise):
    def __init__(self, factor: float = 1.0) -> None:
        self.factor = float(factor)

    def attributes(self) -> dict[str, Any]:
        return {"factor": self.factor}

    def calc(self, x: np.ndarray) -> np.ndarray:
        return (x * self.factor).astype(x.dtype, copy=False)

    def gradient(self, ctx: GradientContext) -> list[Any]:
        return [ctx.add("Scale", [ctx.grad()], factor=self.factor)]


@register_operator("Relu")
class Relu(UnaryElementwise):
    def calc(self, x: np.ndarray) -> np.ndarray:
        return np.maximum(x, np.zeros((), dtype=x.dtype))

    def gradient(self, ctx: GradientContext) -> list[Any]:
        return [ctx.add("ReluBack", [ctx.inputs[0], ctx.grad()])]


@register_operator("ReluBack")
class ReluBack(Operator):
    def infer_shapes(self, inputs: Sequence[TensorSpec]) -> list[TensorSpec]:
        self._expect_arity(inputs, 2)
        x, g = inputs
        return [TensorSpec(merge(x.shape, g.shape), g.dtype)]

    def compute(self, inputs: Sequence[np.ndarray], ctx: ComputeContext) -> list[np.ndarray]:
        x, g = inputs
        return [np.where(x > 0, g, np.zeros((), dtype=g.dtype))]


@register_operator("AddN")
class AddN(Operator):
    """Sum of one or more same-shaped inputs; used to accumulate gradient contributions."""

    def infer_shapes(self, inputs: Sequence[TensorSpec]) -> list[TensorSpec]:
        if not inputs:
            raise OperatorError("AddN expects at least 1 input", code="EADDN_ARITY")
        shape = inputs[0].shape
        dtype = inputs[0].dtype
        for spec in inputs[1:]:
            shape = merge(shape, spec.shape)
            dtype = promote_dtype(dtype, spec.dtype)
        return [TensorSpec(shape, dtype)]

    def compute(self, inputs: Sequence[np.ndarray], ctx: ComputeContext) -> list[np.ndarray]:
        dtype = np.result_type(*inputs)
        out = np.array(inputs[0], dtype=dtype, copy=True)
        for x in inputs[1:]:
            out += x
        return [out]

    def gradient(self, ctx: GradientContext) -> list[Any]:
        g = ctx.grad()
        return [g if need else None for need in ctx.needs_grad]
