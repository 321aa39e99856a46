from __future__ import annotations

from collections.abc import Mapping, Sequence
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Any

import numpy as np

from gradflow.cache.lru import (
    ResultCache,
    fingerprint_array,
    fingerprint_output,
    fingerprint_step,
    node_tag,
)
from gradflow.config import EngineConfig
from gradflow.errors import (
    ExecutionError,
    GraphError,
    MissingBinding,
    ShapeContractViolation,
    ShapeMismatch,
)
from gradflow.ir.graph import ValueRef
from gradflow.ops.base import ComputeContext
from gradflow.planner.plan import ExecutionPlan, PlanStep
from gradflow.utils.logger import get_logger

logger = get_logger(__name__)


class _Run:
    """Per-call state: bound leaves, slot buffers and cache keys."""

    def __init__(self, plan: ExecutionPlan, env: dict[ValueRef, np.ndarray]) -> None:
        self.plan = plan
        self.env = env
        self.buffers: list[np.ndarray | None] = [
            np.empty(spec.shape.to_tuple(), dtype=spec.dtype) if spec.shape.is_known else None
            for spec in plan.slot_specs
        ]
        self.keys: dict[ValueRef, str] = {}


class Executor:
    """
    Runs execution plans.

    With ``num_workers == 1`` steps run in plan order on the calling thread;
    otherwise ready steps (all dependencies finished) are submitted to a
    thread pool. ``intra_op_workers`` sizes a separate pool operators may split
    row blocks over. Pools live until ``close()``.
    """

    def __init__(
        self,
        num_workers: int = 1,
        intra_op_workers: int = 0,
        cache: ResultCache | None = None,
        min_rows: int = 256,
    ) -> None:
        if num_workers < 1:
            raise ValueError("num_workers must be >= 1")
        if intra_op_workers < 0:
            raise ValueError("intra_op_workers must be >= 0")
        self.num_workers = num_workers
        self.cache = cache
        self._pool = (
            ThreadPoolExecutor(max_workers=num_workers, thread_name_prefix="gradflow-step")
            if num_workers > 1
            else None
        )
        self._intra_pool = (
            ThreadPoolExecutor(max_workers=intra_op_workers, thread_name_prefix="gradflow-intra")
            if intra_op_workers > 0
            else None
        )
        self.context = ComputeContext(self._intra_pool, min_rows=min_rows)

    @classmethod
    def from_config(cls, config: EngineConfig, cache: ResultCache | None = None) -> Executor:
        return cls(
            num_workers=config.num_workers,
            intra_op_workers=config.intra_op_workers,
            cache=cache,
            min_rows=config.parallel_min_rows,
        )

    def close(self) -> None:
        if self._pool is not None:
            self._pool.shutdown(wait=True)
            self._pool = None
        if self._intra_pool is not None:
            self._intra_pool.shutdown(wait=True)
            self._intra_pool = None
            self.context = ComputeContext(None, min_rows=self.context.min_rows)

    def __enter__(self) -> Executor:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # ------------------------------------------------------------------ run

    def execute(
        self, plan: ExecutionPlan, bindings: Mapping[ValueRef, Any]
    ) -> dict[ValueRef, np.ndarray]:
        """Run ``plan`` with leaf ``bindings`` and return the requested outputs."""
        run = _Run(plan, self._bind(plan, bindings))
        if self._pool is None or len(plan.steps) < 2:
            for step in plan.steps:
                self._run_step(run, step)
        else:
            self._run_parallel(run)

        results: dict[ValueRef, np.ndarray] = {}
        for v in plan.outputs:
            if v in plan.slots:
                results[v] = run.env[v]
            else:
                results[v] = np.array(run.env[v], copy=True)
        return results

    def _bind(
        self, plan: ExecutionPlan, bindings: Mapping[ValueRef, Any]
    ) -> dict[ValueRef, np.ndarray]:
        env: dict[ValueRef, np.ndarray] = {}
        for leaf in plan.leaves:
            if leaf not in bindings:
                raise MissingBinding(
                    f"No tensor bound for leaf value '{plan.names[leaf]}'", node=leaf
                )
            spec = plan.specs[leaf]
            array = np.asarray(bindings[leaf], dtype=spec.dtype)
            if not spec.shape.matches(array.shape):
                raise ShapeMismatch(
                    f"Binding for '{plan.names[leaf]}' has shape {list(array.shape)}, "
                    f"declared {spec.shape}",
                    node=leaf,
                )
            env[leaf] = array
        for v, array in plan.constants.items():
            env[v] = array
        return env

    def _leaf_key(self, run: _Run, value: ValueRef) -> str:
        key = run.keys.get(value)
        if key is None:
            key = fingerprint_array(run.env[value])
            run.keys[value] = key
        return key

    def _run_step(self, run: _Run, step: PlanStep) -> None:
        args = [run.env[v] for v in step.inputs]
        if self.cache is None:
            results: Sequence[np.ndarray] = self._compute(run.plan, step, args)
        else:
            input_keys = [
                run.keys[v] if v in run.keys else self._leaf_key(run, v) for v in step.inputs
            ]
            key = fingerprint_step(step.operator.signature(), input_keys)
            for i, v in enumerate(step.outputs):
                run.keys[v] = fingerprint_output(key, i)
            tags = [node_tag(run.plan.graph_id, "op", step.op.index)]
            tags += [node_tag(run.plan.graph_id, "value", v.index) for v in step.outputs]
            results = self.cache.get_or_compute(
                key, lambda: self._compute(run.plan, step, args), tags=tags
            )
        self._store(run, step, results)

    def _compute(
        self, plan: ExecutionPlan, step: PlanStep, args: Sequence[np.ndarray]
    ) -> list[np.ndarray]:
        try:
            results = step.operator.compute(args, self.context)
        except GraphError:
            raise
        except Exception as exc:
            raise ExecutionError(
                f"{step.name} ({step.operator.kind}) failed: {exc}", node=step.op
            ) from exc
        if len(results) != len(step.outputs):
            raise ShapeContractViolation(
                f"{step.name}: produced {len(results)} tensors, declared {len(step.outputs)}",
                node=step.op,
            )
        out = []
        for v, r in zip(step.outputs, results):
            r = np.asarray(r)
            spec = plan.specs[v]
            if not spec.shape.matches(r.shape):
                raise ShapeContractViolation(
                    f"{step.name}: produced shape {list(r.shape)} for '{plan.names[v]}', "
                    f"declared {spec.shape}",
                    node=step.op,
                )
            out.append(r)
        return out

    def _store(self, run: _Run, step: PlanStep, results: Sequence[np.ndarray]) -> None:
        for v, r in zip(step.outputs, results):
            slot = run.plan.slots[v]
            buf = run.buffers[slot]
            if buf is None or buf.shape != r.shape:
                buf = np.empty(r.shape, dtype=run.plan.slot_specs[slot].dtype)
                run.buffers[slot] = buf
            np.copyto(buf, r, casting="unsafe")
            run.env[v] = buf

    def _run_parallel(self, run: _Run) -> None:
        pool = self._pool
        assert pool is not None
        steps = run.plan.steps
        remaining = {s.index: len(s.deps) for s in steps}
        users: dict[int, list[int]] = {s.index: [] for s in steps}
        for s in steps:
            for d in s.deps:
                users[d].append(s.index)

        pending: dict[Future[None], int] = {}
        failure: BaseException | None = None

        def submit(idx: int) -> None:
            pending[pool.submit(self._run_step, run, steps[idx])] = idx

        for idx in sorted(i for i, n in remaining.items() if n == 0):
            submit(idx)
        while pending:
            done, _ = wait(list(pending), return_when=FIRST_COMPLETED)
            for fut in done:
                idx = pending.pop(fut)
                exc = fut.exception()
                if exc is not None:
                    if failure is None:
                        failure = exc
                        logger.debug(
                            "step %s failed, draining %d running steps",
                            steps[idx].name,
                            len(pending),
                        )
                    continue
                if failure is not None:
                    continue
                for u in users[idx]:
                    remaining[u] -= 1
                    if remaining[u] == 0:
                        submit(u)
        if failure is not None:
            raise failure
