from __future__ import annotations

from typing import Any


class GraphError(Exception):
    """Base error for graph construction, planning and execution, with a stable code."""

    def __init__(self, message: str, code: str = "EGRAPH", node: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.node = node


class ShapeError(GraphError):
    def __init__(self, message: str, code: str = "ESHAPE", node: Any = None) -> None:
        super().__init__(message, code=code, node=node)


class ShapeMismatch(ShapeError):
    """Two fixed, non-broadcastable extents disagree."""

    def __init__(
        self, message: str, code: str = "ESHAPE_MISMATCH", node: Any = None
    ) -> None:
        super().__init__(message, code=code, node=node)


class ShapeContractViolation(ShapeError):
    """An operator produced a tensor that disagrees with its declared output spec."""

    def __init__(
        self, message: str, code: str = "ESHAPE_CONTRACT", node: Any = None
    ) -> None:
        super().__init__(message, code=code, node=node)


class OperatorError(GraphError):
    """Operator signature or attribute violation (wrong arity, invalid attribute)."""

    def __init__(self, message: str, code: str = "EOP", node: Any = None) -> None:
        super().__init__(message, code=code, node=node)


class CycleDetected(GraphError):
    def __init__(self, message: str, code: str = "ECYCLE", node: Any = None) -> None:
        super().__init__(message, code=code, node=node)


class NonDifferentiableOp(GraphError):
    def __init__(self, message: str, code: str = "ENONDIFF", node: Any = None) -> None:
        super().__init__(message, code=code, node=node)


class UnreachableOutput(GraphError):
    def __init__(
        self, message: str, code: str = "EUNREACHABLE", node: Any = None
    ) -> None:
        super().__init__(message, code=code, node=node)


class MissingBinding(GraphError):
    def __init__(self, message: str, code: str = "EBINDING", node: Any = None) -> None:
        super().__init__(message, code=code, node=node)


class ExecutionError(GraphError):
    """An operator failed while a plan was running; the run is aborted."""

    def __init__(self, message: str, code: str = "EEXEC", node: Any = None) -> None:
        super().__init__(message, code=code, node=node)


class CacheInvalidated(GraphError):
    """Raised inside the result cache when an entry is invalidated mid-computation."""

    def __init__(
        self, message: str, code: str = "ECACHE_INVALIDATED", node: Any = None
    ) -> None:
        super().__init__(message, code=code, node=node)
