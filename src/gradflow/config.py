from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, fields, replace
from typing import Any

_ENV_PREFIX = "GRADFLOW_"
_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _default_workers() -> int:
    return max(1, min(8, os.cpu_count() or 1))


@dataclass(frozen=True)
class EngineConfig:
    """
    Runtime knobs for planning, execution and caching.

    num_workers: size of the inter-op worker pool (1 runs steps sequentially).
    intra_op_workers: size of the secondary pool operators split row blocks over.
    parallel_min_rows: operators only split work with at least this many rows.
    cache_capacity: maximum number of result cache entries (0 disables caching).
    cache_max_bytes: optional byte bound on cached arrays.
    reuse_buffers: let the planner share storage slots between values.
    """

    num_workers: int = 1
    intra_op_workers: int = 0
    parallel_min_rows: int = 256
    cache_capacity: int = 128
    cache_max_bytes: int | None = None
    reuse_buffers: bool = True
    log_level: str = "WARNING"

    def __post_init__(self) -> None:
        if self.num_workers < 1:
            raise ValueError("num_workers must be >= 1")
        if self.intra_op_workers < 0:
            raise ValueError("intra_op_workers must be >= 0")
        if self.parallel_min_rows < 1:
            raise ValueError("parallel_min_rows must be >= 1")
        if self.cache_capacity < 0:
            raise ValueError("cache_capacity must be >= 0")
        if self.cache_max_bytes is not None and self.cache_max_bytes <= 0:
            raise ValueError("cache_max_bytes must be positive when set")

    @staticmethod
    def parallel() -> EngineConfig:
        """Config sized to the host: one worker per core, same-size intra-op pool."""
        workers = _default_workers()
        return EngineConfig(num_workers=workers, intra_op_workers=workers)

    @staticmethod
    def from_env(environ: Mapping[str, str] | None = None, **overrides: Any) -> EngineConfig:
        env = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for f in fields(EngineConfig):
            raw = env.get(_ENV_PREFIX + f.name.upper())
            if raw is None or raw == "":
                continue
            values[f.name] = _parse(f.name, raw)
        values.update(overrides)
        return EngineConfig(**values)

    def with_overrides(self, **overrides: Any) -> EngineConfig:
        return replace(self, **overrides)


def _parse(name: str, raw: str) -> Any:
    if name == "reuse_buffers":
        lowered = raw.strip().lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
        raise ValueError(f"{_ENV_PREFIX}{name.upper()} must be a boolean, got {raw!r}")
    if name == "log_level":
        return raw.strip().upper()
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(
            f"{_ENV_PREFIX}{name.upper()} must be an integer, got {raw!r}"
        ) from exc
