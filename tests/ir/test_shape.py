from __future__ import annotations

import numpy as np
import pytest

from gradflow.errors import ShapeMismatch
from gradflow.ir import Shape, TensorSpec, broadcast_shapes, merge, promote_dtype, spec_of, unify
from gradflow.ir.shape import broadcast_all


def test_shape_properties() -> None:
    s = Shape.of([4, None, 2])
    assert s.rank == 3
    assert not s.is_known
    assert s.numel is None
    assert str(s) == "[4, ?, 2]"
    assert Shape.of((4, 2)).numel == 8
    assert Shape.of(5).dims == (5,)
    assert Shape(()).numel == 1


def test_shape_rejects_negative_and_bool() -> None:
    with pytest.raises(ValueError):
        Shape((-1, 2))
    with pytest.raises(ValueError):
        Shape((True, 2))


def test_shape_matches_concrete() -> None:
    s = Shape((None, 3))
    assert s.matches((7, 3))
    assert not s.matches((7, 4))
    assert not s.matches((7, 3, 1))


def test_merge_fills_unknowns() -> None:
    assert merge([None, 3], [2, None]).dims == (2, 3)


def test_merge_rank_mismatch_raises() -> None:
    with pytest.raises(ShapeMismatch) as exc:
        merge([2, 3], [3])
    assert exc.value.code == "ESHAPE_MISMATCH"


def test_broadcast_trailing_alignment() -> None:
    assert broadcast_shapes([2, 3, 4], [1, 3, 1]).dims == (2, 3, 4)
    assert broadcast_shapes([3, 4], [4]).dims == (3, 4)
    assert broadcast_shapes([5, 1], [1, 6]).dims == (5, 6)


def test_broadcast_unknown_dims() -> None:
    # unknown vs 1 stays unknown, unknown vs n resolves to n
    assert broadcast_shapes([None], [1]).dims == (None,)
    assert broadcast_shapes([None, 3], [4, 3]).dims == (4, 3)
    assert broadcast_shapes([None], [None]).dims == (None,)


def test_unify_mismatch_raises() -> None:
    with pytest.raises(ShapeMismatch):
        unify([2, 3], [4, 5])


def test_unify_without_broadcast_requires_exact() -> None:
    assert unify([2, None], [2, 3], broadcast=False).dims == (2, 3)
    with pytest.raises(ShapeMismatch):
        unify([2, 3], [1, 3], broadcast=False)


def test_broadcast_all() -> None:
    assert broadcast_all([[3, 1], [1, 4], [4]]).dims == (3, 4)
    with pytest.raises(ValueError):
        broadcast_all([])


def test_promote_dtype_and_spec() -> None:
    assert promote_dtype("float32", "float64") == "float64"
    assert promote_dtype("int32", "float32") == "float64"
    spec = TensorSpec((2, 3), np.float32)
    assert spec.dtype == "float32"
    assert spec.nbytes == 24
    assert TensorSpec((None, 3)).nbytes is None
    assert spec_of(np.zeros((2, 3), dtype=np.float32)) == spec
