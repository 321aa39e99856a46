from __future__ import annotations

from gradflow.ir.graph import Graph, OpRef, ValueKind, ValueRef


def build_producer_map(graph: Graph) -> dict[ValueRef, OpRef]:
    """
    Map value -> producing operation. Leaves (inputs, parameters, constants) have no entry.
    """
    producer: dict[ValueRef, OpRef] = {}
    for op in graph.operations():
        for out in graph.op_outputs(op):
            producer[out] = op
    return producer


def build_consumer_map(graph: Graph) -> dict[ValueRef, list[OpRef]]:
    """
    Map value -> list of consuming operations, in creation order.
    """
    consumers: dict[ValueRef, list[OpRef]] = {}
    for op in graph.operations():
        for inp in dict.fromkeys(graph.op_inputs(op)):
            consumers.setdefault(inp, []).append(op)
    return consumers


def format_graph(graph: Graph) -> str:
    """One line per value and operation, operations in topological order."""
    lines = [repr(graph)]
    for v in graph.leaves(list(ValueKind)):
        node = graph.value_node(v)
        lines.append(f"  {node.kind.value:<12} {node.name}: {node.spec}")
    for op in graph.toposort():
        ins = ", ".join(graph.value_name(v) for v in graph.op_inputs(op))
        outs = ", ".join(
            f"{graph.value_name(v)}: {graph.spec(v)}" for v in graph.op_outputs(op)
        )
        lines.append(f"  {graph.op_name(op)} = {graph.operator(op).signature()}({ins}) -> {outs}")
    return "\n".join(lines)
