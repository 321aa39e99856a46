"""Operator contract and the standard operator set, registered by kind."""

from .base import ComputeContext, GradientContext, Operator
from .registry import create_operator, get_operator_class, register_operator, registered_kinds
from .elementwise import (
    Add,
    AddN,
    Min,
    MinBack,
    Mul,
    Neg,
    Relu,
    ReluBack,
    Scale,
    Sub,
)
from .fill import OnesLike, ZerosLike
from .linalg import MatMul
from .muldiv import MulDiv, MulDivBack
from .reduce import BroadcastLike, ReduceSum, ReduceToLike
from .transform import Reshape, Transpose

__all__ = [
    "ComputeContext",
    "GradientContext",
    "Operator",
    "create_operator",
    "get_operator_class",
    "register_operator",
    "registered_kinds",
    "Add",
    "AddN",
    "BroadcastLike",
    "MatMul",
    "Min",
    "MinBack",
    "Mul",
    "MulDiv",
    "MulDivBack",
    "Neg",
    "OnesLike",
    "ReduceSum",
    "ReduceToLike",
    "Relu",
    "ReluBack",
    "Reshape",
    "Scale",
    "Sub",
    "Transpose",
    "ZerosLike",
]
