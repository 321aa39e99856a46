from __future__ import annotations

from collections.abc import Iterable, Sequence

from gradflow.ir.graph import Graph, OpRef, ValueKind, ValueRef
from gradflow.ops.base import ComputeContext
from gradflow.optimizer.passes import Pass


class ConstantFoldingPass(Pass):
    """Evaluate ops whose inputs are all constants and turn their outputs into constants."""

    name = "constant-folding"

    def __init__(self, kinds: Iterable[str] | None = None) -> None:
        self._kinds = None if kinds is None else set(kinds)
        self._ctx = ComputeContext()

    def match(self, graph: Graph) -> Iterable[OpRef]:
        for op in graph.operations():
            if self._kinds is not None and graph.operator(op).kind not in self._kinds:
                continue
            inputs = graph.op_inputs(op)
            if inputs and all(graph.value_kind(v) is ValueKind.CONSTANT for v in inputs):
                yield op

    def apply(self, graph: Graph, candidate: OpRef) -> None:
        if candidate not in graph:
            return
        args = [graph.constant_value(v) for v in graph.op_inputs(candidate)]
        arrays = graph.operator(candidate).compute(args, self._ctx)
        graph.replace_with_constant(candidate, arrays)


class DeadCodeEliminationPass(Pass):
    """Detach operations and constants the retained values do not depend on."""

    name = "dead-code-elimination"

    def __init__(self, retain: Sequence[ValueRef] | None = None) -> None:
        self._retain = None if retain is None else list(retain)

    def _retained(self, graph: Graph) -> list[ValueRef]:
        return graph.outputs if self._retain is None else self._retain

    def match(self, graph: Graph) -> Iterable[list[ValueRef]]:
        retain = self._retained(graph)
        if not retain:
            return
        needed_values, needed_ops = graph.ancestors(retain)
        dead_ops = [op for op in graph.operations() if op not in needed_ops]
        dead_consts = [
            v
            for v in graph.values()
            if v not in needed_values and graph.value_kind(v) is ValueKind.CONSTANT
        ]
        if dead_ops or dead_consts:
            yield retain

    def apply(self, graph: Graph, candidate: list[ValueRef]) -> None:
        graph.prune(candidate)
