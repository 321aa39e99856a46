"""Parameter initializers: callables ``(shape, dtype, rng) -> ndarray``."""

from __future__ import annotations

from collections.abc import Callable

import numpy as np

Initializer = Callable[[tuple[int, ...], str, np.random.Generator], np.ndarray]


def uniform(low: float, high: float) -> Initializer:
    if high < low:
        raise ValueError(f"uniform initializer needs low <= high, got {low} > {high}")

    def init(shape: tuple[int, ...], dtype: str, rng: np.random.Generator) -> np.ndarray:
        return rng.uniform(low, high, size=shape).astype(dtype)

    return init


def normal(mean: float = 0.0, std: float = 1.0) -> Initializer:
    if std < 0:
        raise ValueError("normal initializer needs std >= 0")

    def init(shape: tuple[int, ...], dtype: str, rng: np.random.Generator) -> np.ndarray:
        return rng.normal(mean, std, size=shape).astype(dtype)

    return init


def constant(value: float) -> Initializer:
    def init(shape: tuple[int, ...], dtype: str, rng: np.random.Generator) -> np.ndarray:
        return np.full(shape, value, dtype=dtype)

    return init


def zeros() -> Initializer:
    return constant(0.0)
