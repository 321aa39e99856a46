from __future__ import annotations

from gradflow.errors import GraphError, ShapeMismatch
from gradflow.ir.graph import Graph
from gradflow.ir.shape import TensorSpec, merge


def infer_graph(graph: Graph) -> int:
    """
    Re-run shape/dtype inference over the graph in topological order.

    Inferred shapes are merged into the stored specs: unknown axes may resolve,
    fixed axes never change (a disagreement raises ShapeMismatch). Returns the
    number of value specs that changed; a second run on the same graph returns 0.
    """
    changed = 0
    for op_idx in graph._toposort():
        op = graph._ops[op_idx]
        in_specs = [graph._values[i].spec for i in op.inputs]
        try:
            out_specs = op.operator.infer_shapes(in_specs)
        except GraphError as exc:
            raise type(exc)(f"{op.name}: {exc}", code=exc.code, node=op.name) from exc
        for v_idx, inferred in zip(op.outputs, out_specs):
            current = graph._values[v_idx].spec
            if current.dtype != inferred.dtype:
                raise ShapeMismatch(
                    f"{op.name}: value '{graph._values[v_idx].name}' is {current.dtype}, "
                    f"inference yields {inferred.dtype}",
                    code="EDTYPE_MISMATCH",
                    node=op.name,
                )
            try:
                shape = merge(current.shape, inferred.shape)
            except ShapeMismatch as exc:
                raise ShapeMismatch(f"{op.name}: {exc}", node=op.name) from exc
            if shape != current.shape:
                graph._set_spec(v_idx, TensorSpec(shape, current.dtype))
                changed += 1
    return changed
