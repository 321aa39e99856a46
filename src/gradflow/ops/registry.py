from __future__ import annotations

from collections.abc import Callable
from typing import Any, TypeVar

from gradflow.errors import OperatorError
from gradflow.ops.base import Operator

OpClass = TypeVar("OpClass", bound=type[Operator])

_REGISTRY: dict[str, type[Operator]] = {}


def register_operator(kind: str) -> Callable[[OpClass], OpClass]:
    def wrapper(cls: OpClass) -> OpClass:
        cls.kind = kind
        _REGISTRY[kind] = cls
        return cls

    return wrapper


def get_operator_class(kind: str) -> type[Operator]:
    cls = _REGISTRY.get(kind)
    if cls is None:
        raise OperatorError(f"Unknown operator kind '{kind}'", code="EOP_UNKNOWN")
    return cls


def create_operator(kind: str, **attributes: Any) -> Operator:
    cls = get_operator_class(kind)
    try:
        return cls(**attributes)
    except TypeError as exc:
        raise OperatorError(
            f"Invalid attributes for {kind}: {exc}", code="EOP_ATTR"
        ) from exc


def registered_kinds() -> list[str]:
    return sorted(_REGISTRY)
