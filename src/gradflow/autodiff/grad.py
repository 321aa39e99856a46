from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from gradflow.errors import NonDifferentiableOp, OperatorError, ShapeMismatch
from gradflow.ir.graph import Graph, ValueRef
from gradflow.ir.shape import merge
from gradflow.ops.base import GradientContext
from gradflow.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class GradientBinding:
    """Maps each differentiated value to the value holding its accumulated derivative."""

    wrt: tuple[ValueRef, ...]
    accumulators: Mapping[ValueRef, ValueRef] = field(default_factory=dict)

    def __getitem__(self, value: ValueRef) -> ValueRef:
        return self.accumulators[value]

    def __contains__(self, value: object) -> bool:
        return value in self.accumulators

    def __len__(self) -> int:
        return len(self.accumulators)

    def gradients(self) -> dict[ValueRef, ValueRef]:
        """Gradient values for the requested ``wrt`` values only."""
        return {w: self.accumulators[w] for w in self.wrt}


class _Accumulator:
    """Collects gradient contributions per value and sums them on first read."""

    def __init__(self, graph: Graph) -> None:
        self.graph = graph
        self.contributions: dict[int, list[ValueRef]] = {}
        self.totals: dict[int, ValueRef] = {}

    def add(self, value_idx: int, grad: ValueRef) -> None:
        if value_idx in self.totals:
            raise OperatorError(
                f"gradient for '{self.graph._values[value_idx].name}' was read before "
                "all contributions arrived",
                code="EGRAD_ORDER",
            )
        target = self.graph._values[value_idx].spec.shape
        got = self.graph.spec(grad).shape
        try:
            merge(target, got)
        except ShapeMismatch as exc:
            raise ShapeMismatch(
                f"gradient for '{self.graph._values[value_idx].name}' has shape {got}, "
                f"expected {target}",
                node=grad,
            ) from exc
        self.contributions.setdefault(value_idx, []).append(grad)

    def has(self, value_idx: int) -> bool:
        return value_idx in self.totals or value_idx in self.contributions

    def total(self, value_idx: int) -> ValueRef:
        if value_idx in self.totals:
            return self.totals[value_idx]
        parts = self.contributions.pop(value_idx, [])
        name = f"grad/{self.graph._values[value_idx].name}"
        if not parts:
            total = self.graph.add_operation("ZerosLike", [self.graph._vref(value_idx)], name=name)[0]
        elif len(parts) == 1:
            total = parts[0]
        else:
            total = self.graph.add_operation("AddN", parts, name=name)[0]
        self.totals[value_idx] = total
        return total


def build_gradients(
    graph: Graph,
    outputs: Sequence[ValueRef],
    wrt: Sequence[ValueRef],
    seeds: Sequence[ValueRef | None] | None = None,
) -> GradientBinding:
    """
    Extend ``graph`` with operations computing d(sum of outputs)/d(wrt).

    Each output is seeded with ``OnesLike(output)`` unless ``seeds`` supplies a
    value (aligned with ``outputs``; ``None`` entries use the default seed).
    Operations are visited in reverse topological order; every visited op's
    gradient rule receives the summed gradients of its outputs. Contributions
    flowing into one value are summed with a single ``AddN``. A ``wrt`` value
    with no path to any output gets a ``ZerosLike`` gradient.

    Raises NonDifferentiableOp, before touching the graph, when an operation
    on a path from ``wrt`` to ``outputs`` has no gradient rule.
    """
    out_idx = [graph._value_index(v) for v in outputs]
    wrt_idx = [graph._value_index(v) for v in wrt]
    if seeds is not None and len(seeds) != len(outputs):
        raise OperatorError(
            f"{len(seeds)} seeds given for {len(outputs)} outputs", code="EGRAD_SEEDS"
        )
    seed_refs = list(seeds) if seeds is not None else [None] * len(outputs)
    for o, s in zip(out_idx, seed_refs):
        if s is None:
            continue
        try:
            merge(graph._values[o].spec.shape, graph.spec(s).shape)
        except ShapeMismatch as exc:
            raise ShapeMismatch(
                f"seed for '{graph._values[o].name}': {exc}", node=s
            ) from exc

    _, upstream_ops = graph._ancestors(out_idx)
    downstream_values, downstream_ops = graph._descendants(wrt_idx)
    required = upstream_ops & downstream_ops

    for i in sorted(required):
        op = graph._ops[i]
        if not op.operator.has_gradient:
            raise NonDifferentiableOp(
                f"Operation '{op.name}' ({op.operator.kind}) has no gradient rule "
                "but lies between the differentiated values and the outputs",
                node=graph._oref(i),
            )

    acc = _Accumulator(graph)
    order = graph._toposort(required)
    n_ops = len(graph._ops)

    for o, s in zip(out_idx, seed_refs):
        if o not in downstream_values:
            continue
        if s is None:
            s = graph.add_operation(
                "OnesLike", [graph._vref(o)], name=f"grad/{graph._values[o].name}/seed"
            )[0]
        acc.add(o, s)

    for i in reversed(order):
        op = graph._ops[i]
        if not any(acc.has(v) for v in op.outputs):
            continue
        ctx = GradientContext(
            graph=graph,
            op=graph._oref(i),
            inputs=[graph._vref(v) for v in op.inputs],
            outputs=[graph._vref(v) for v in op.outputs],
            output_grads=[acc.total(v) for v in op.outputs],
            needs_grad=[v in downstream_values for v in op.inputs],
        )
        in_grads = op.operator.gradient(ctx)
        if len(in_grads) != len(op.inputs):
            raise OperatorError(
                f"{op.operator.kind} gradient returned {len(in_grads)} values "
                f"for {len(op.inputs)} inputs",
                code="EGRAD_ARITY",
                node=ctx.op,
            )
        for v, need, g in zip(op.inputs, ctx.needs_grad, in_grads):
            if need and g is not None:
                acc.add(v, g)

    accumulators: dict[ValueRef, ValueRef] = {}
    for v in list(acc.contributions):
        accumulators[graph._vref(v)] = acc.total(v)
    for v, total in acc.totals.items():
        accumulators[graph._vref(v)] = total
    for w in wrt_idx:
        accumulators[graph._vref(w)] = acc.total(w)

    logger.debug(
        "differentiated %d outputs w.r.t. %d values: %d ops visited, %d ops added",
        len(out_idx),
        len(wrt_idx),
        len(order),
        len(graph._ops) - n_ops,
    )
    return GradientBinding(wrt=tuple(graph._vref(w) for w in wrt_idx), accumulators=accumulators)


def differentiate(
    graph: Graph,
    outputs: Sequence[ValueRef],
    wrt: Sequence[ValueRef],
    seeds: Sequence[ValueRef | None] | None = None,
) -> dict[ValueRef, ValueRef]:
    """Return ``{w: gradient value}`` for each ``w`` in ``wrt``. See ``build_gradients``."""
    return build_gradients(graph, outputs, wrt, seeds).gradients()
