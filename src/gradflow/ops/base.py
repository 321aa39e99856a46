from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from concurrent.futures import Executor, wait
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, ClassVar

import numpy as np

from gradflow.errors import NonDifferentiableOp, OperatorError
from gradflow.ir.shape import TensorSpec

if TYPE_CHECKING:
    from gradflow.ir.graph import Graph, OpRef, ValueRef


class ComputeContext:
    """Per-step execution context handed to ``Operator.compute``."""

    def __init__(self, pool: Executor | None = None, min_rows: int = 256) -> None:
        self.pool = pool
        self.min_rows = min_rows

    @property
    def parallel(self) -> bool:
        return self.pool is not None

    def map_rows(self, fn: Callable[[int, int], None], n_rows: int) -> None:
        """
        Call ``fn(lo, hi)`` over contiguous row blocks covering ``range(n_rows)``.
        Blocks run on the intra-op pool when one is attached and the work is large
        enough; otherwise a single call covers every row.
        """
        if self.pool is None or n_rows < self.min_rows * 2:
            fn(0, n_rows)
            return
        n_blocks = max(2, n_rows // self.min_rows)
        bounds = np.linspace(0, n_rows, n_blocks + 1, dtype=int)
        futures = [
            self.pool.submit(fn, int(lo), int(hi))
            for lo, hi in zip(bounds[:-1], bounds[1:])
            if hi > lo
        ]
        wait(futures)
        for f in futures:
            f.result()


@dataclass
class GradientContext:
    """What a gradient rule sees: the forward op's handles and its output gradients."""

    graph: Graph
    op: OpRef
    inputs: list[ValueRef]
    outputs: list[ValueRef]
    output_grads: list[ValueRef]
    needs_grad: list[bool]

    def spec(self, value: ValueRef) -> TensorSpec:
        return self.graph.spec(value)

    def add(self, kind: Operator | str, inputs: Sequence[ValueRef], **attributes: Any) -> ValueRef:
        """Add a single-output operation to the graph, named after the forward op."""
        base = f"grad/{self.graph.op_name(self.op)}"
        return self.graph.add_operation(kind, list(inputs), name=base, **attributes)[0]

    def grad(self, i: int = 0) -> ValueRef:
        return self.output_grads[i]

    def reduce_like(self, grad: ValueRef, like: ValueRef) -> ValueRef:
        """Sum a broadcast gradient back down to the shape of ``like``."""
        gs, ls = self.spec(grad), self.spec(like)
        if gs.shape.is_known and gs.shape == ls.shape and gs.dtype == ls.dtype:
            return grad
        return self.add("ReduceToLike", [grad, like])


class Operator(ABC):
    """
    Operator contract: shape inference, compute, and an optional gradient rule.

    Subclasses are registered by kind (see ``gradflow.ops.registry``) and must be
    immutable once constructed; plans and caches hold references to them.
    """

    kind: ClassVar[str] = ""

    def attributes(self) -> dict[str, Any]:
        return {}

    def signature(self) -> str:
        attrs = ",".join(f"{k}={v!r}" for k, v in sorted(self.attributes().items()))
        return f"{self.kind}({attrs})"

    @abstractmethod
    def infer_shapes(self, inputs: Sequence[TensorSpec]) -> list[TensorSpec]:
        raise NotImplementedError

    @abstractmethod
    def compute(self, inputs: Sequence[np.ndarray], ctx: ComputeContext) -> list[np.ndarray]:
        raise NotImplementedError

    def gradient(self, ctx: GradientContext) -> list[ValueRef | None]:
        raise NonDifferentiableOp(
            f"Operator {self.kind} declares no gradient rule", node=ctx.op
        )

    @property
    def has_gradient(self) -> bool:
        return type(self).gradient is not Operator.gradient

    def _expect_arity(self, inputs: Sequence[Any], count: int) -> None:
        if len(inputs) != count:
            raise OperatorError(
                f"{self.kind} expects {count} inputs, got {len(inputs)}",
                code=f"E{self.kind.upper()}_ARITY",
            )

    def __repr__(self) -> str:
        return self.signature()
