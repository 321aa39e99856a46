from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from math import prod
from typing import Union

import numpy as np

from gradflow.errors import ShapeMismatch

Dim = Union[int, None]


@dataclass(frozen=True)
class Shape:
    """Ordered per-axis extents; ``None`` marks an axis not yet resolved."""

    dims: tuple[Dim, ...]

    def __post_init__(self) -> None:
        dims = tuple(self.dims)
        for d in dims:
            if d is None:
                continue
            if isinstance(d, bool) or not isinstance(d, (int, np.integer)) or d < 0:
                raise ValueError(f"Invalid dimension {d!r} in shape {dims}")
        object.__setattr__(self, "dims", tuple(None if d is None else int(d) for d in dims))

    @staticmethod
    def of(value: ShapeLike) -> Shape:
        if isinstance(value, Shape):
            return value
        if isinstance(value, (int, np.integer)):
            return Shape((int(value),))
        return Shape(tuple(value))

    @property
    def rank(self) -> int:
        return len(self.dims)

    @property
    def is_known(self) -> bool:
        return all(d is not None for d in self.dims)

    @property
    def numel(self) -> int | None:
        if not self.is_known:
            return None
        return prod(self.dims)  # type: ignore[arg-type]

    def matches(self, concrete: Sequence[int]) -> bool:
        """True if a concrete runtime shape satisfies every fixed axis."""
        if len(concrete) != len(self.dims):
            return False
        return all(d is None or d == c for d, c in zip(self.dims, concrete))

    def to_tuple(self) -> tuple[int, ...]:
        if not self.is_known:
            raise ValueError(f"Shape {self} has unknown dimensions")
        return tuple(self.dims)  # type: ignore[arg-type]

    def __iter__(self):
        return iter(self.dims)

    def __len__(self) -> int:
        return len(self.dims)

    def __getitem__(self, item):
        if isinstance(item, slice):
            return Shape(self.dims[item])
        return self.dims[item]

    def __str__(self) -> str:
        return "[" + ", ".join("?" if d is None else str(d) for d in self.dims) + "]"


ShapeLike = Union[Shape, Sequence[Dim], int]


@dataclass(frozen=True)
class TensorSpec:
    shape: Shape
    dtype: str = "float32"

    def __post_init__(self) -> None:
        object.__setattr__(self, "shape", Shape.of(self.shape))
        object.__setattr__(self, "dtype", np.dtype(self.dtype).name)

    @property
    def nbytes(self) -> int | None:
        n = self.shape.numel
        if n is None:
            return None
        return n * np.dtype(self.dtype).itemsize

    def __str__(self) -> str:
        return f"{self.dtype}{self.shape}"


def merge_dim(a: Dim, b: Dim) -> Dim:
    if a is None:
        return b
    if b is None or a == b:
        return a
    raise ShapeMismatch(f"Dimension mismatch: {a} vs {b}")


def merge(a: ShapeLike, b: ShapeLike) -> Shape:
    """Exact unification: ranks must agree, unknown axes take the other side's extent."""
    sa, sb = Shape.of(a), Shape.of(b)
    if sa.rank != sb.rank:
        raise ShapeMismatch(f"Rank mismatch: {sa} vs {sb}")
    try:
        return Shape(tuple(merge_dim(x, y) for x, y in zip(sa.dims, sb.dims)))
    except ShapeMismatch:
        raise ShapeMismatch(f"Shape mismatch: {sa} vs {sb}") from None


def _broadcast_dim(da: Dim, db: Dim) -> Dim:
    if da is None and db is None:
        return None
    if da is None:
        return None if db == 1 else db
    if db is None:
        return None if da == 1 else da
    if da == db or da == 1 or db == 1:
        return max(da, db)
    raise ShapeMismatch(f"Broadcast mismatch: {da} vs {db}")


def broadcast_shapes(a: ShapeLike, b: ShapeLike) -> Shape:
    """Trailing-axis broadcast; size-1 axes stretch, missing leading axes count as 1."""
    sa, sb = Shape.of(a), Shape.of(b)
    ra = list(reversed(sa.dims))
    rb = list(reversed(sb.dims))
    result: list[Dim] = []
    for i in range(max(len(ra), len(rb))):
        da = ra[i] if i < len(ra) else 1
        db = rb[i] if i < len(rb) else 1
        try:
            result.append(_broadcast_dim(da, db))
        except ShapeMismatch:
            raise ShapeMismatch(f"Broadcast mismatch: {sa} vs {sb}") from None
    return Shape(tuple(reversed(result)))


def unify(a: ShapeLike, b: ShapeLike, *, broadcast: bool = True) -> Shape:
    if broadcast:
        return broadcast_shapes(a, b)
    return merge(a, b)


def broadcast_all(shapes: Iterable[ShapeLike]) -> Shape:
    result: Shape | None = None
    for s in shapes:
        result = Shape.of(s) if result is None else broadcast_shapes(result, s)
    if result is None:
        raise ValueError("broadcast_all requires at least one shape")
    return result


def promote_dtype(dtype_a: str, dtype_b: str) -> str:
    # Use numpy's type promotion to resolve a result type name
    return str(np.result_type(dtype_a, dtype_b).name)


def spec_of(array: np.ndarray) -> TensorSpec:
    return TensorSpec(Shape(array.shape), array.dtype.name)
