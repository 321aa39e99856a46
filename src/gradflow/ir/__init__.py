"""Graph IR data structures, shape system and analysis utilities."""

from .graph import (
    Graph,
    GraphMutation,
    GraphValidator,
    OpNode,
    OpRef,
    ValueKind,
    ValueNode,
    ValueRef,
)
from .infer import infer_graph
from .shape import (
    Shape,
    TensorSpec,
    broadcast_shapes,
    merge,
    promote_dtype,
    spec_of,
    unify,
)
from .utils import build_consumer_map, build_producer_map, format_graph

__all__ = [
    "Graph",
    "GraphMutation",
    "GraphValidator",
    "OpNode",
    "OpRef",
    "ValueKind",
    "ValueNode",
    "ValueRef",
    "infer_graph",
    "Shape",
    "TensorSpec",
    "broadcast_shapes",
    "merge",
    "promote_dtype",
    "spec_of",
    "unify",
    "build_producer_map",
    "build_consumer_map",
    "format_graph",
]
