from __future__ import annotations

from gradflow.ir import Graph, build_consumer_map, build_producer_map, format_graph


def test_producer_consumer_maps() -> None:
    # x -> A -> y -> B -> z
    g = Graph()
    x = g.input("x", [1])
    (y,) = g.add_operation("Relu", [x], name="A")
    (z,) = g.add_operation("Neg", [y], name="B")

    p = build_producer_map(g)
    c = build_consumer_map(g)

    assert g.op_name(p[y]) == "A"
    assert g.op_name(p[z]) == "B"
    assert x not in p
    assert [g.op_name(o) for o in c[x]] == ["A"]
    assert [g.op_name(o) for o in c[y]] == ["B"]
    assert z not in c


def test_consumer_map_lists_op_once_for_repeated_input() -> None:
    g = Graph()
    x = g.input("x", [3])
    g.add_operation("Mul", [x, x], name="square")
    assert len(build_consumer_map(g)[x]) == 1


def test_format_graph_lists_leaves_and_ops() -> None:
    g = Graph("fmt")
    x = g.input("x", [None, 3])
    w = g.parameter("w", [3, 2])
    g.add_operation("MatMul", [x, w], name="y")
    text = format_graph(g)
    lines = text.splitlines()
    assert lines[0] == "Graph(name='fmt', values=3, ops=1)"
    assert "input        x: float32[?, 3]" in text
    assert "parameter    w: float32[3, 2]" in text
    assert "y = MatMul()(x, w) -> y: float32[?, 2]" in text
