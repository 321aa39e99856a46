from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import numpy as np

from gradflow.ir.shape import TensorSpec
from gradflow.ops.base import ComputeContext, GradientContext, Operator
from gradflow.ops.registry import register_operator


class _FillLike(Operator):
    """A tensor of one repeated value shaped like the input; its gradient is always zero."""

    fill: float = 0.0

    def __init__(self, dtype: str | None = None) -> None:
        self.dtype = None if dtype is None else np.dtype(dtype).name

    def attributes(self) -> dict[str, Any]:
        return {"dtype": self.dtype}

    def infer_shapes(self, inputs: Sequence[TensorSpec]) -> list[TensorSpec]:
        self._expect_arity(inputs, 1)
        x = inputs[0]
        return [TensorSpec(x.shape, self.dtype or x.dtype)]

    def compute(self, inputs: Sequence[np.ndarray], ctx: ComputeContext) -> list[np.ndarray]:
        x = inputs[0]
        return [np.full(x.shape, self.fill, dtype=self.dtype or x.dtype)]

    def gradient(self, ctx: GradientContext) -> list[Any]:
        return [None]


@register_operator("OnesLike")
class OnesLike(_FillLike):
    fill = 1.0


@register_operator("ZerosLike")
class ZerosLike(_FillLike):
    fill = 0.0
