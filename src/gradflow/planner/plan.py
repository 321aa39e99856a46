from __future__ import annotations

import heapq
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

import numpy as np

from gradflow.errors import GraphError, UnreachableOutput
from gradflow.ir.graph import Graph, OpRef, ValueKind, ValueRef
from gradflow.ir.shape import TensorSpec
from gradflow.ops.base import Operator
from gradflow.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class PlanStep:
    index: int
    op: OpRef
    name: str
    operator: Operator
    inputs: tuple[ValueRef, ...]
    outputs: tuple[ValueRef, ...]
    # steps that must complete first: producers of the inputs, plus earlier
    # users of any buffer this step overwrites
    deps: frozenset[int] = frozenset()


@dataclass(frozen=True)
class ExecutionPlan:
    """
    Immutable run plan for one set of requested outputs.

    ``slots`` assigns every produced value a storage slot; values whose
    lifetimes do not overlap may share a slot. Leaves (inputs, parameters)
    and constants are read straight from bindings and the graph, never from
    a slot. ``lifetimes[v] = (def_step, last_use)``; requested outputs live
    until ``len(steps)``.
    """

    graph_id: int
    graph_version: int
    epoch: int
    steps: tuple[PlanStep, ...]
    outputs: tuple[ValueRef, ...]
    leaves: tuple[ValueRef, ...]
    constants: Mapping[ValueRef, np.ndarray]
    specs: Mapping[ValueRef, TensorSpec]
    names: Mapping[ValueRef, str]
    slots: Mapping[ValueRef, int]
    slot_specs: tuple[TensorSpec, ...]
    lifetimes: Mapping[ValueRef, tuple[int, int]]
    reuse_buffers: bool = True
    metadata: dict[str, object] = field(default_factory=dict, compare=False)

    @property
    def num_slots(self) -> int:
        return len(self.slot_specs)

    @property
    def total_bytes(self) -> int:
        """Bytes needed if every produced value had its own buffer (known shapes only)."""
        return sum(_known_bytes(self.specs[v]) for v in self.slots)

    @property
    def slot_bytes(self) -> int:
        """Bytes actually allocated across slots (known shapes only)."""
        return sum(_known_bytes(s) for s in self.slot_specs)

    def slot_of(self, value: ValueRef) -> int:
        return self.slots[value]

    def values_in_slot(self, slot: int) -> list[ValueRef]:
        return [v for v, s in self.slots.items() if s == slot]

    def describe(self) -> str:
        lines = [
            f"plan: {len(self.steps)} steps, {self.num_slots} slots, "
            f"{self.slot_bytes}/{self.total_bytes} bytes"
        ]
        for step in self.steps:
            outs = ", ".join(
                f"{self.names[v]}@{self.slots[v]}" for v in step.outputs
            )
            ins = ", ".join(self.names[v] for v in step.inputs)
            deps = ",".join(str(d) for d in sorted(step.deps)) or "-"
            lines.append(
                f"  [{step.index}] {step.name} = {step.operator.signature()}({ins}) "
                f"-> {outs}  deps={deps}"
            )
        return "\n".join(lines)


def _known_bytes(spec: TensorSpec) -> int:
    n = spec.nbytes
    return 0 if n is None else n


def _reusable(spec: TensorSpec) -> bool:
    return spec.shape.is_known


def plan(
    graph: Graph, outputs: Sequence[ValueRef], *, reuse_buffers: bool = True
) -> ExecutionPlan:
    """
    Compile an execution plan for ``outputs``.

    Only operations the outputs depend on are scheduled, in topological order
    with ties broken by creation order. Buffers are assigned greedily: a
    step's outputs take the lowest-numbered free slot with an identical
    fully-known spec, and a value's slot is freed once the last step reading
    it has been allocated.
    """
    out_idx: list[int] = []
    for ref in outputs:
        try:
            out_idx.append(graph._value_index(ref))
        except GraphError as exc:
            if exc.code != "EDETACHED":
                raise
            raise UnreachableOutput(
                f"Requested output {graph.value_name(ref)!r} is detached", node=ref
            ) from exc

    values, ops = graph._ancestors(out_idx)
    for v in sorted(values):
        node = graph._values[v]
        if node.producer is None and node.kind is ValueKind.INTERMEDIATE:
            raise UnreachableOutput(
                f"Value '{node.name}' has no producer; outputs depending on it cannot be computed",
                node=graph._vref(v),
            )

    order = graph._toposort(ops)
    step_of = {op: s for s, op in enumerate(order)}
    end = len(order)

    last_use: dict[int, int] = {}
    def_step: dict[int, int] = {}
    for s, op_idx in enumerate(order):
        op = graph._ops[op_idx]
        for v in op.inputs:
            last_use[v] = s
        for v in op.outputs:
            def_step[v] = s
    for v in def_step:
        last_use[v] = max(last_use.get(v, def_step[v]), def_step[v])
    for v in out_idx:
        last_use[v] = end

    # frees[s]: produced values whose final reader is step s
    frees: dict[int, list[int]] = {}
    for v, s in last_use.items():
        if v in def_step and s < end:
            frees.setdefault(s, []).append(v)

    slot_specs: list[TensorSpec] = []
    slot_of: dict[int, int] = {}
    occupant: dict[int, int] = {}
    free: dict[TensorSpec, list[int]] = {}
    readers: dict[int, set[int]] = {}
    steps: list[PlanStep] = []

    for s, op_idx in enumerate(order):
        op = graph._ops[op_idx]
        deps = {
            step_of[graph._values[v].producer]
            for v in op.inputs
            if graph._values[v].producer in step_of
        }
        for v in op.inputs:
            readers.setdefault(v, set()).add(s)

        for v in op.outputs:
            spec = graph._values[v].spec
            pool = free.get(spec) if reuse_buffers and _reusable(spec) else None
            if pool:
                slot = heapq.heappop(pool)
                prev = occupant[slot]
                deps.add(def_step[prev])
                deps |= readers.get(prev, set())
            else:
                slot = len(slot_specs)
                slot_specs.append(spec)
            slot_of[v] = slot
            occupant[slot] = v

        for v in frees.get(s, ()):
            spec = slot_specs[slot_of[v]]
            if reuse_buffers and _reusable(spec):
                heapq.heappush(free.setdefault(spec, []), slot_of[v])

        deps.discard(s)
        steps.append(
            PlanStep(
                index=s,
                op=graph._oref(op_idx),
                name=op.name,
                operator=op.operator,
                inputs=tuple(graph._vref(v) for v in op.inputs),
                outputs=tuple(graph._vref(v) for v in op.outputs),
                deps=frozenset(deps),
            )
        )

    leaves = tuple(
        graph._vref(v)
        for v in sorted(values)
        if graph._values[v].kind in (ValueKind.INPUT, ValueKind.PARAMETER)
        and graph._values[v].producer is None
    )
    constants = {
        graph._vref(v): graph._values[v].constant
        for v in sorted(values)
        if graph._values[v].kind is ValueKind.CONSTANT
    }
    result = ExecutionPlan(
        graph_id=graph.id,
        graph_version=graph.version,
        epoch=graph.epoch,
        steps=tuple(steps),
        outputs=tuple(graph._vref(v) for v in out_idx),
        leaves=leaves,
        constants=constants,
        specs={graph._vref(v): graph._values[v].spec for v in sorted(values)},
        names={graph._vref(v): graph._values[v].name for v in sorted(values)},
        slots={graph._vref(v): slot for v, slot in slot_of.items()},
        slot_specs=tuple(slot_specs),
        lifetimes={graph._vref(v): (def_step[v], last_use[v]) for v in def_step},
        reuse_buffers=reuse_buffers,
    )
    logger.debug(
        "planned %d outputs of graph '%s': %d steps, %d slots, %d/%d bytes",
        len(out_idx),
        graph.name,
        len(steps),
        result.num_slots,
        result.slot_bytes,
        result.total_bytes,
    )
    return result
