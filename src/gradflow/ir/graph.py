from __future__ import annotations

import heapq
import itertools
import weakref
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, Union

import numpy as np

from gradflow.errors import CycleDetected, GraphError, ShapeError, ShapeMismatch
from gradflow.ir.shape import Shape, ShapeLike, TensorSpec, merge
from gradflow.utils.logger import get_logger

if TYPE_CHECKING:
    from gradflow.init import Initializer
    from gradflow.ops.base import Operator

logger = get_logger(__name__)

_GRAPH_IDS = itertools.count(1)


class ValueKind(str, Enum):
    INPUT = "input"
    PARAMETER = "parameter"
    CONSTANT = "constant"
    INTERMEDIATE = "intermediate"


@dataclass(frozen=True)
class ValueRef:
    """Opaque handle to a value node: (graph id, arena epoch, slot index)."""

    graph_id: int
    epoch: int
    index: int

    def __repr__(self) -> str:
        return f"ValueRef({self.graph_id}:{self.epoch}:{self.index})"


@dataclass(frozen=True)
class OpRef:
    """Opaque handle to an operation node."""

    graph_id: int
    epoch: int
    index: int

    def __repr__(self) -> str:
        return f"OpRef({self.graph_id}:{self.epoch}:{self.index})"


NodeRef = Union[ValueRef, OpRef]


@dataclass
class ValueNode:
    name: str
    spec: TensorSpec
    kind: ValueKind
    producer: int | None = None
    consumers: list[int] = field(default_factory=list)
    constant: np.ndarray | None = None
    initializer: Initializer | None = None
    detached: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class OpNode:
    operator: Operator
    inputs: list[int]
    outputs: list[int]
    name: str
    detached: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GraphMutation:
    """Structural change notification; ``full`` means every derived artifact is stale."""

    graph_id: int
    kind: str
    values: frozenset[int] = frozenset()
    ops: frozenset[int] = frozenset()
    full: bool = False


Listener = Callable[[GraphMutation], None]


class Graph:
    """
    Dataflow graph stored as two arenas (values and operations) addressed by handles.

    Nodes are never deleted in place: removal detaches them, ``compact`` rebuilds the
    arenas and bumps the epoch so handles from before the compaction are rejected.
    """

    def __init__(self, name: str = "graph") -> None:
        self.name = name
        self.id = next(_GRAPH_IDS)
        self.epoch = 0
        self.version = 0
        self.metadata: dict[str, Any] = {}
        self._values: list[ValueNode] = []
        self._ops: list[OpNode] = []
        self._names: dict[str, int] = {}
        self._op_names: set[str] = set()
        self._outputs: list[int] = []
        self._listeners: list[Callable[[], Listener | None]] = []

    # ------------------------------------------------------------------ handles

    def _vref(self, index: int) -> ValueRef:
        return ValueRef(self.id, self.epoch, index)

    def _oref(self, index: int) -> OpRef:
        return OpRef(self.id, self.epoch, index)

    def _check_ref(self, ref: NodeRef, arena: Sequence[Any], what: str) -> int:
        if ref.graph_id != self.id:
            raise GraphError(
                f"{what} handle {ref!r} belongs to another graph", code="EFOREIGN", node=ref
            )
        if ref.epoch != self.epoch:
            raise GraphError(
                f"{what} handle {ref!r} predates compaction of graph '{self.name}'",
                code="ESTALE_REF",
                node=ref,
            )
        if not 0 <= ref.index < len(arena):
            raise GraphError(f"{what} handle {ref!r} out of range", code="EBAD_REF", node=ref)
        return ref.index

    def _value_index(self, ref: ValueRef, *, allow_detached: bool = False) -> int:
        if not isinstance(ref, ValueRef):
            raise GraphError(f"Expected a ValueRef, got {ref!r}", code="EBAD_REF")
        idx = self._check_ref(ref, self._values, "Value")
        if self._values[idx].detached and not allow_detached:
            raise GraphError(
                f"Value '{self._values[idx].name}' is detached", code="EDETACHED", node=ref
            )
        return idx

    def _op_index(self, ref: OpRef, *, allow_detached: bool = False) -> int:
        if not isinstance(ref, OpRef):
            raise GraphError(f"Expected an OpRef, got {ref!r}", code="EBAD_REF")
        idx = self._check_ref(ref, self._ops, "Operation")
        if self._ops[idx].detached and not allow_detached:
            raise GraphError(
                f"Operation '{self._ops[idx].name}' is detached", code="EDETACHED", node=ref
            )
        return idx

    def __contains__(self, ref: object) -> bool:
        if isinstance(ref, ValueRef):
            arena: Sequence[Any] = self._values
        elif isinstance(ref, OpRef):
            arena = self._ops
        else:
            return False
        return (
            ref.graph_id == self.id
            and ref.epoch == self.epoch
            and 0 <= ref.index < len(arena)
            and not arena[ref.index].detached
        )

    # ----------------------------------------------------------------- naming

    def unique_name(self, base: str) -> str:
        taken = self._names.keys() | self._op_names
        if base not in taken:
            return base
        for i in itertools.count(1):
            candidate = f"{base}_{i}"
            if candidate not in taken:
                return candidate
        raise AssertionError("unreachable")

    # ------------------------------------------------------------------ leaves

    def _new_value(self, name: str, spec: TensorSpec, kind: ValueKind, **kwargs: Any) -> int:
        name = self.unique_name(name)
        idx = len(self._values)
        self._values.append(ValueNode(name=name, spec=spec, kind=kind, **kwargs))
        self._names[name] = idx
        return idx

    def _add_leaf(self, name: str, spec: TensorSpec, kind: ValueKind, **kwargs: Any) -> ValueRef:
        idx = self._new_value(name, spec, kind, **kwargs)
        self._mutated(GraphMutation(self.id, "add", values=frozenset({idx})))
        return self._vref(idx)

    def input(self, name: str, shape: ShapeLike, dtype: str = "float32") -> ValueRef:
        """Declare a value bound by the data supplier before each execution."""
        return self._add_leaf(name, TensorSpec(Shape.of(shape), dtype), ValueKind.INPUT)

    def parameter(
        self,
        name: str,
        shape: ShapeLike,
        dtype: str = "float32",
        init: Initializer | None = None,
    ) -> ValueRef:
        return self._add_leaf(
            name, TensorSpec(Shape.of(shape), dtype), ValueKind.PARAMETER, initializer=init
        )

    def constant(self, name: str, value: Any, dtype: str | None = None) -> ValueRef:
        array = np.array(value, dtype=dtype)
        array.setflags(write=False)
        return self._add_leaf(
            name,
            TensorSpec(Shape(array.shape), array.dtype.name),
            ValueKind.CONSTANT,
            constant=array,
        )

    def placeholder(self, name: str, shape: ShapeLike, dtype: str = "float32") -> ValueRef:
        """An intermediate value with no producer yet; pass it as ``outputs=`` later."""
        return self._add_leaf(name, TensorSpec(Shape.of(shape), dtype), ValueKind.INTERMEDIATE)

    # -------------------------------------------------------------- operations

    def add_operation(
        self,
        kind: Operator | str,
        inputs: Sequence[ValueRef],
        *,
        outputs: Sequence[ValueRef] | None = None,
        name: str | None = None,
        **attributes: Any,
    ) -> list[ValueRef]:
        """
        Add an operation consuming ``inputs`` and return handles to its outputs.

        ``kind`` is an operator instance or a registered kind name (``attributes``
        are then passed to its constructor). Output shapes come from the operator's
        shape inference, so shape errors surface here. ``outputs`` may name
        pre-created placeholders to produce into; their declared shapes are merged
        with the inferred ones.
        """
        operator = self._resolve_operator(kind, attributes)
        in_idx = [self._value_index(ref) for ref in inputs]
        op_name = self.unique_name(name or operator.kind.lower())

        in_specs = [self._values[i].spec for i in in_idx]
        try:
            out_specs = operator.infer_shapes(in_specs)
        except GraphError as exc:
            raise type(exc)(f"{op_name}: {exc}", code=exc.code, node=op_name) from exc

        op_idx = len(self._ops)
        refined: list[int] = []
        saved_specs: list[TensorSpec] = []
        if outputs is not None:
            out_idx = self._claim_outputs(op_name, outputs, out_specs, in_idx)
            merged_specs = [
                self._merge_spec(self._values[i].name, self._values[i].spec, spec)
                for i, spec in zip(out_idx, out_specs)
            ]
            saved_specs = [v.spec for v in self._values]
            for i, merged in zip(out_idx, merged_specs):
                node = self._values[i]
                if merged != node.spec:
                    node.spec = merged
                    refined.append(i)
                node.producer = op_idx
        else:
            out_idx = []
            for i, spec in enumerate(out_specs):
                value_name = op_name if len(out_specs) == 1 else f"{op_name}:{i}"
                out_idx.append(
                    self._new_value(value_name, spec, ValueKind.INTERMEDIATE, producer=op_idx)
                )

        self._ops.append(
            OpNode(operator=operator, inputs=in_idx, outputs=out_idx, name=op_name)
        )
        self._op_names.add(op_name)
        for i in dict.fromkeys(in_idx):
            self._values[i].consumers.append(op_idx)

        if refined:
            from gradflow.ir.infer import infer_graph

            try:
                infer_graph(self)
            except GraphError:
                self._rollback_add(op_idx, saved_specs)
                raise
        self._mutated(
            GraphMutation(self.id, "add", values=frozenset(out_idx), ops=frozenset({op_idx}))
        )
        logger.debug("added %s %s -> %s", op_name, operator.signature(), out_specs)
        return [self._vref(i) for i in out_idx]

    def _rollback_add(self, op_idx: int, saved_specs: Sequence[TensorSpec]) -> None:
        op = self._ops.pop(op_idx)
        self._op_names.discard(op.name)
        for i in dict.fromkeys(op.inputs):
            self._values[i].consumers.remove(op_idx)
        for i in op.outputs:
            self._values[i].producer = None
        self._restore_specs(saved_specs)

    def _restore_specs(self, saved_specs: Sequence[TensorSpec]) -> None:
        for node, spec in zip(self._values, saved_specs):
            node.spec = spec

    def _resolve_operator(self, kind: Operator | str, attributes: dict[str, Any]) -> Operator:
        if isinstance(kind, str):
            from gradflow.ops import create_operator

            return create_operator(kind, **attributes)
        if attributes:
            raise GraphError(
                "Attributes can only be given together with an operator kind name",
                code="EOP_ATTR",
            )
        return kind

    def _claim_outputs(
        self,
        op_name: str,
        outputs: Sequence[ValueRef],
        out_specs: Sequence[TensorSpec],
        in_idx: Sequence[int],
    ) -> list[int]:
        if len(outputs) != len(out_specs):
            raise GraphError(
                f"{op_name}: operator produces {len(out_specs)} outputs, {len(outputs)} given",
                code="EOUTPUT_COUNT",
            )
        out_idx = [self._value_index(ref) for ref in outputs]
        if len(set(out_idx)) != len(out_idx):
            raise GraphError(f"{op_name}: duplicate output handles", code="EOUTPUT_DUP")
        for i in out_idx:
            node = self._values[i]
            if node.producer is not None:
                raise GraphError(
                    f"{op_name}: value '{node.name}' already has a producer",
                    code="EDUP_PRODUCER",
                    node=self._vref(i),
                )
            if node.kind is not ValueKind.INTERMEDIATE:
                raise GraphError(
                    f"{op_name}: {node.kind.value} '{node.name}' cannot be an operation output",
                    code="EOUTPUT_KIND",
                    node=self._vref(i),
                )
        upstream, _ = self._ancestors(in_idx)
        for i in out_idx:
            if i in upstream:
                raise CycleDetected(
                    f"{op_name}: output '{self._values[i].name}' feeds its own inputs",
                    node=self._vref(i),
                )
        return out_idx

    def _merge_spec(self, name: str, declared: TensorSpec, inferred: TensorSpec) -> TensorSpec:
        if declared.dtype != inferred.dtype:
            raise ShapeMismatch(
                f"Value '{name}' declared {declared.dtype}, producer yields {inferred.dtype}",
                code="EDTYPE_MISMATCH",
            )
        try:
            shape = merge(declared.shape, inferred.shape)
        except ShapeMismatch as exc:
            raise ShapeMismatch(f"Value '{name}': {exc}", node=name) from exc
        return TensorSpec(shape, declared.dtype)

    # ------------------------------------------------------------------ queries

    def spec(self, value: ValueRef) -> TensorSpec:
        return self._values[self._value_index(value)].spec

    def shape(self, value: ValueRef) -> Shape:
        return self.spec(value).shape

    def value_name(self, value: ValueRef) -> str:
        return self._values[self._value_index(value, allow_detached=True)].name

    def value_kind(self, value: ValueRef) -> ValueKind:
        return self._values[self._value_index(value)].kind

    def value_node(self, value: ValueRef) -> ValueNode:
        return self._values[self._value_index(value, allow_detached=True)]

    def constant_value(self, value: ValueRef) -> np.ndarray | None:
        return self._values[self._value_index(value)].constant

    def producer(self, value: ValueRef) -> OpRef | None:
        p = self._values[self._value_index(value)].producer
        return None if p is None else self._oref(p)

    def consumers(self, value: ValueRef) -> list[OpRef]:
        return [self._oref(i) for i in self._values[self._value_index(value)].consumers]

    def operator(self, op: OpRef) -> Operator:
        return self._ops[self._op_index(op)].operator

    def op_name(self, op: OpRef) -> str:
        return self._ops[self._op_index(op, allow_detached=True)].name

    def op_node(self, op: OpRef) -> OpNode:
        return self._ops[self._op_index(op, allow_detached=True)]

    def op_inputs(self, op: OpRef) -> list[ValueRef]:
        return [self._vref(i) for i in self._ops[self._op_index(op)].inputs]

    def op_outputs(self, op: OpRef) -> list[ValueRef]:
        return [self._vref(i) for i in self._ops[self._op_index(op)].outputs]

    def value_by_name(self, name: str) -> ValueRef:
        idx = self._names.get(name)
        if idx is None:
            raise KeyError(f"No value named '{name}' in graph '{self.name}'")
        return self._vref(idx)

    def values(self) -> list[ValueRef]:
        return [self._vref(i) for i, v in enumerate(self._values) if not v.detached]

    def operations(self) -> list[OpRef]:
        return [self._oref(i) for i, op in enumerate(self._ops) if not op.detached]

    def leaves(self, kinds: Iterable[ValueKind] | None = None) -> list[ValueRef]:
        wanted = set(kinds) if kinds is not None else {ValueKind.INPUT, ValueKind.PARAMETER}
        return [
            self._vref(i)
            for i, v in enumerate(self._values)
            if not v.detached and v.producer is None and v.kind in wanted
        ]

    def parameters(self) -> list[ValueRef]:
        return self.leaves([ValueKind.PARAMETER])

    @property
    def outputs(self) -> list[ValueRef]:
        return [self._vref(i) for i in self._outputs]

    def mark_output(self, *values: ValueRef) -> None:
        for ref in values:
            idx = self._value_index(ref)
            if idx not in self._outputs:
                self._outputs.append(idx)

    def _ancestors(self, value_idx: Iterable[int]) -> tuple[set[int], set[int]]:
        """Values and operations the given values (transitively) depend on, inclusive."""
        values: set[int] = set()
        ops: set[int] = set()
        stack = list(value_idx)
        while stack:
            v = stack.pop()
            if v in values:
                continue
            values.add(v)
            p = self._values[v].producer
            if p is not None and p not in ops:
                ops.add(p)
                stack.extend(self._ops[p].inputs)
        return values, ops

    def ancestors(self, values: Iterable[ValueRef]) -> tuple[set[ValueRef], set[OpRef]]:
        vals, ops = self._ancestors(self._value_index(v) for v in values)
        return {self._vref(i) for i in vals}, {self._oref(i) for i in ops}

    def _descendants(self, value_idx: Iterable[int]) -> tuple[set[int], set[int]]:
        values: set[int] = set()
        ops: set[int] = set()
        stack = list(value_idx)
        while stack:
            v = stack.pop()
            if v in values:
                continue
            values.add(v)
            for c in self._values[v].consumers:
                if c not in ops:
                    ops.add(c)
                    stack.extend(self._ops[c].outputs)
        return values, ops

    def descendants(self, values: Iterable[ValueRef]) -> tuple[set[ValueRef], set[OpRef]]:
        vals, ops = self._descendants(self._value_index(v) for v in values)
        return {self._vref(i) for i in vals}, {self._oref(i) for i in ops}

    def _toposort(self, op_idx: Iterable[int] | None = None) -> list[int]:
        """Kahn's algorithm over the selected ops; ready ties go to the oldest op."""
        if op_idx is None:
            selected = {i for i, op in enumerate(self._ops) if not op.detached}
        else:
            selected = set(op_idx)
        indegree: dict[int, int] = {}
        users: dict[int, list[int]] = {i: [] for i in selected}
        for i in selected:
            deps = {
                self._values[v].producer
                for v in self._ops[i].inputs
                if self._values[v].producer in selected
            }
            indegree[i] = len(deps)
            for d in deps:
                users[d].append(i)  # type: ignore[index]
        ready = [i for i, d in indegree.items() if d == 0]
        heapq.heapify(ready)
        order: list[int] = []
        while ready:
            u = heapq.heappop(ready)
            order.append(u)
            for w in users[u]:
                indegree[w] -= 1
                if indegree[w] == 0:
                    heapq.heappush(ready, w)
        if len(order) != len(selected):
            raise CycleDetected(f"Cycle detected in graph '{self.name}'")
        return order

    def toposort(self, ops: Iterable[OpRef] | None = None) -> list[OpRef]:
        idx = None if ops is None else [self._op_index(o) for o in ops]
        return [self._oref(i) for i in self._toposort(idx)]

    # ---------------------------------------------------------------- mutation

    def refine_shape(self, value: ValueRef, shape: ShapeLike) -> Shape:
        """Resolve unknown axes of a value; fixed axes never change."""
        idx = self._value_index(value)
        node = self._values[idx]
        merged = self._merge_spec(node.name, node.spec, TensorSpec(Shape.of(shape), node.spec.dtype))
        if merged != node.spec:
            from gradflow.ir.infer import infer_graph

            saved_specs = [v.spec for v in self._values]
            node.spec = merged
            try:
                infer_graph(self)
            except GraphError:
                self._restore_specs(saved_specs)
                raise
            self._mutated(GraphMutation(self.id, "refine", values=frozenset({idx})))
        return node.spec.shape

    def _set_spec(self, idx: int, spec: TensorSpec) -> None:
        self._values[idx].spec = spec

    def set_constant(self, value: ValueRef, array: Any) -> None:
        idx = self._value_index(value)
        node = self._values[idx]
        if node.kind is not ValueKind.CONSTANT:
            raise GraphError(f"Value '{node.name}' is not a constant", code="ENOT_CONSTANT")
        new = np.array(array, dtype=node.spec.dtype)
        if not node.spec.shape.matches(new.shape):
            raise ShapeMismatch(
                f"Constant '{node.name}' has shape {node.spec.shape}, got {list(new.shape)}"
            )
        new.setflags(write=False)
        node.constant = new
        self._mutated(GraphMutation(self.id, "constant", values=frozenset({idx})))

    def replace_with_constant(self, op: OpRef, arrays: Sequence[np.ndarray]) -> list[ValueRef]:
        """Detach an operation and turn its outputs into constants holding ``arrays``."""
        op_idx = self._op_index(op)
        node = self._ops[op_idx]
        if len(arrays) != len(node.outputs):
            raise GraphError(
                f"{node.name}: expected {len(node.outputs)} arrays, got {len(arrays)}",
                code="EOUTPUT_COUNT",
            )
        for v, array in zip(node.outputs, arrays):
            spec = self._values[v].spec
            if not spec.shape.matches(array.shape):
                raise ShapeMismatch(
                    f"{node.name}: folded value has shape {list(array.shape)}, expected {spec.shape}"
                )
        for v, array in zip(node.outputs, arrays):
            value = self._values[v]
            frozen = np.array(array, dtype=value.spec.dtype)
            frozen.setflags(write=False)
            value.kind = ValueKind.CONSTANT
            value.constant = frozen
            value.producer = None
            value.spec = TensorSpec(Shape(frozen.shape), value.spec.dtype)
        self._unlink_op(op_idx)
        node.detached = True
        self._op_names.discard(node.name)
        self._mutated(
            GraphMutation(
                self.id, "fold", values=frozenset(node.outputs), ops=frozenset({op_idx})
            )
        )
        return [self._vref(v) for v in node.outputs]

    def _unlink_op(self, op_idx: int) -> None:
        for v in set(self._ops[op_idx].inputs):
            consumers = self._values[v].consumers
            if op_idx in consumers:
                consumers.remove(op_idx)

    def remove_subgraph(
        self, nodes: Iterable[NodeRef], retain: Iterable[ValueRef] | None = None
    ) -> set[NodeRef]:
        """
        Detach the given nodes and everything downstream of them, except nodes that a
        retained output (default: the marked graph outputs) still depends on.
        Removing a produced value removes its producing operation.
        Returns the handles that were detached.
        """
        retain_idx = (
            list(self._outputs) if retain is None else [self._value_index(r) for r in retain]
        )
        keep_values, keep_ops = self._ancestors(retain_idx)

        seed_ops: list[int] = []
        seed_values: list[int] = []
        for ref in nodes:
            if isinstance(ref, OpRef):
                i = self._op_index(ref)
                if i not in keep_ops:
                    seed_ops.append(i)
            else:
                i = self._value_index(ref)
                producer = self._values[i].producer
                if producer is not None:
                    if producer not in keep_ops:
                        seed_ops.append(producer)
                elif i not in keep_values:
                    seed_values.append(i)

        values, ops = self._descendants(seed_values)
        for i in seed_ops:
            if i in ops:
                continue
            ops.add(i)
            more_values, more_ops = self._descendants(self._ops[i].outputs)
            values |= more_values
            ops |= more_ops
        return self._detach(values, ops)

    def prune(self, retain: Iterable[ValueRef]) -> set[NodeRef]:
        """Detach every operation and non-leaf value the retained values do not need."""
        retain_idx = [self._value_index(r) for r in retain]
        keep_values, keep_ops = self._ancestors(retain_idx)
        ops = {i for i, op in enumerate(self._ops) if not op.detached and i not in keep_ops}
        values = {
            i
            for i, v in enumerate(self._values)
            if not v.detached
            and i not in keep_values
            and (v.producer in ops or v.kind is ValueKind.CONSTANT)
        }
        return self._detach(values, ops)

    def _detach(self, values: set[int], ops: set[int]) -> set[NodeRef]:
        if not values and not ops:
            return set()
        for i in ops:
            self._unlink_op(i)
            self._ops[i].detached = True
            self._op_names.discard(self._ops[i].name)
        for i in values:
            node = self._values[i]
            node.detached = True
            node.consumers = [c for c in node.consumers if c not in ops]
            self._names.pop(node.name, None)
        self._outputs = [i for i in self._outputs if i not in values]
        self._mutated(
            GraphMutation(self.id, "detach", values=frozenset(values), ops=frozenset(ops))
        )
        logger.info(
            "graph '%s': detached %d values and %d operations", self.name, len(values), len(ops)
        )
        detached: set[NodeRef] = {self._vref(i) for i in values}
        detached |= {self._oref(i) for i in ops}
        return detached

    def compact(self) -> dict[NodeRef, NodeRef]:
        """
        Drop detached nodes and renumber the arenas. Every handle issued before the
        call becomes stale; the returned mapping translates live ones.
        """
        value_map = {
            old: new
            for new, old in enumerate(i for i, v in enumerate(self._values) if not v.detached)
        }
        op_map = {
            old: new
            for new, old in enumerate(i for i, op in enumerate(self._ops) if not op.detached)
        }
        old_epoch = self.epoch
        new_values: list[ValueNode] = []
        for old, v in enumerate(self._values):
            if old not in value_map:
                continue
            new_values.append(
                replace(
                    v,
                    producer=None if v.producer is None else op_map[v.producer],
                    consumers=[op_map[c] for c in v.consumers],
                )
            )
        new_ops: list[OpNode] = []
        for old, op in enumerate(self._ops):
            if old not in op_map:
                continue
            new_ops.append(
                replace(
                    op,
                    inputs=[value_map[i] for i in op.inputs],
                    outputs=[value_map[i] for i in op.outputs],
                )
            )
        self._values = new_values
        self._ops = new_ops
        self._names = {v.name: i for i, v in enumerate(self._values)}
        self._op_names = {op.name for op in self._ops}
        self._outputs = [value_map[i] for i in self._outputs if i in value_map]
        self.epoch += 1
        self._mutated(GraphMutation(self.id, "compact", full=True))

        mapping: dict[NodeRef, NodeRef] = {}
        for old, new in value_map.items():
            mapping[ValueRef(self.id, old_epoch, old)] = self._vref(new)
        for old, new in op_map.items():
            mapping[OpRef(self.id, old_epoch, old)] = self._oref(new)
        return mapping

    # --------------------------------------------------------------- listeners

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a mutation listener; bound methods are held weakly."""
        getter: Callable[[], Listener | None]
        if hasattr(listener, "__self__") and hasattr(listener, "__func__"):
            getter = weakref.WeakMethod(listener)  # type: ignore[arg-type]
        else:
            getter = lambda: listener  # noqa: E731
        self._listeners.append(getter)

        def unsubscribe() -> None:
            if getter in self._listeners:
                self._listeners.remove(getter)

        return unsubscribe

    def _mutated(self, event: GraphMutation) -> None:
        self.version += 1
        alive: list[Callable[[], Listener | None]] = []
        for getter in self._listeners:
            fn = getter()
            if fn is None:
                continue
            alive.append(getter)
            fn(event)
        self._listeners = alive

    # ------------------------------------------------------------------- misc

    def initial_bindings(self, rng: np.random.Generator | None = None) -> dict[ValueRef, np.ndarray]:
        """Materialize parameter initializers into a bindings mapping."""
        rng = rng if rng is not None else np.random.default_rng()
        bindings: dict[ValueRef, np.ndarray] = {}
        for i, v in enumerate(self._values):
            if v.detached or v.kind is not ValueKind.PARAMETER or v.initializer is None:
                continue
            if not v.spec.shape.is_known:
                raise ShapeError(
                    f"Parameter '{v.name}' needs a fully known shape to initialize, got {v.spec.shape}"
                )
            bindings[self._vref(i)] = v.initializer(v.spec.shape.to_tuple(), v.spec.dtype, rng)
        return bindings

    def __repr__(self) -> str:
        live_values = sum(1 for v in self._values if not v.detached)
        live_ops = sum(1 for op in self._ops if not op.detached)
        return f"Graph(name={self.name!r}, values={live_values}, ops={live_ops})"


class GraphValidator:
    """Validates arena invariants and provides graph utilities like toposort."""

    def __init__(self, graph: Graph) -> None:
        self.graph = graph

    def validate(self) -> None:
        self._validate_specs()
        self._validate_unique_producers()
        self._validate_node_io_exist()
        self._validate_consumers()
        self.graph._toposort()  # raises on cycles

    def _validate_specs(self) -> None:
        for v in self.graph._values:
            if v.detached:
                continue
            if not isinstance(v.spec, TensorSpec):
                raise GraphError(f"Value '{v.name}' missing spec", code="ETENSOR_SPEC")
            if v.kind is ValueKind.CONSTANT and v.constant is None:
                raise GraphError(f"Constant '{v.name}' has no value", code="ECONST_VALUE")

    def _validate_unique_producers(self) -> None:
        producer: dict[int, int] = {}
        for idx, op in enumerate(self.graph._ops):
            if op.detached:
                continue
            for out in op.outputs:
                if out in producer:
                    raise GraphError(
                        f"Multiple producers for value '{self.graph._values[out].name}' "
                        f"at ops {idx} and {producer[out]}",
                        code="EDUP_PRODUCER",
                        node=idx,
                    )
                producer[out] = idx
                if self.graph._values[out].producer != idx:
                    raise GraphError(
                        f"Value '{self.graph._values[out].name}' does not record producer {idx}",
                        code="EPRODUCER_LINK",
                        node=idx,
                    )

    def _validate_node_io_exist(self) -> None:
        for idx, op in enumerate(self.graph._ops):
            if op.detached:
                continue
            for v in op.inputs:
                if self.graph._values[v].detached:
                    raise GraphError(
                        f"Operation '{op.name}' reads detached value '{self.graph._values[v].name}'",
                        code="EINPUT_MISSING",
                        node=idx,
                    )
            for v in op.outputs:
                if self.graph._values[v].detached:
                    raise GraphError(
                        f"Operation '{op.name}' writes detached value '{self.graph._values[v].name}'",
                        code="EOUTPUT_MISSING",
                        node=idx,
                    )

    def _validate_consumers(self) -> None:
        for v_idx, v in enumerate(self.graph._values):
            if v.detached:
                continue
            for c in v.consumers:
                op = self.graph._ops[c]
                if op.detached or v_idx not in op.inputs:
                    raise GraphError(
                        f"Value '{v.name}' lists stale consumer '{op.name}'",
                        code="ECONSUMER_LINK",
                        node=c,
                    )

    def toposort(self) -> list[OpRef]:
        return self.graph.toposort()
