"""Dataflow graph engine: shape inference, reverse-mode differentiation, planning and execution."""

__version__ = "0.1.0"

from .autodiff import GradientBinding, build_gradients, differentiate
from .cache import ResultCache
from .config import EngineConfig
from .errors import (
    CacheInvalidated,
    CycleDetected,
    ExecutionError,
    GraphError,
    MissingBinding,
    NonDifferentiableOp,
    OperatorError,
    ShapeContractViolation,
    ShapeError,
    ShapeMismatch,
    UnreachableOutput,
)
from .ir import Graph, GraphValidator, OpRef, Shape, TensorSpec, ValueKind, ValueRef, unify
from .planner import ExecutionPlan, PlanStep, plan
from .runtime import Executor, Session

__all__ = [
    "__version__",
    "CacheInvalidated",
    "CycleDetected",
    "EngineConfig",
    "ExecutionError",
    "ExecutionPlan",
    "Executor",
    "GradientBinding",
    "Graph",
    "GraphError",
    "GraphValidator",
    "MissingBinding",
    "NonDifferentiableOp",
    "OpRef",
    "OperatorError",
    "PlanStep",
    "ResultCache",
    "Session",
    "Shape",
    "ShapeContractViolation",
    "ShapeError",
    "ShapeMismatch",
    "TensorSpec",
    "UnreachableOutput",
    "ValueKind",
    "ValueRef",
    "build_gradients",
    "differentiate",
    "plan",
    "unify",
]
