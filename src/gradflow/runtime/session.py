from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any, Union

import numpy as np

from gradflow.cache.lru import ResultCache
from gradflow.config import EngineConfig
from gradflow.ir.graph import Graph, GraphMutation, ValueRef
from gradflow.planner.plan import ExecutionPlan, plan
from gradflow.runtime.executor import Executor
from gradflow.utils.logger import get_logger

logger = get_logger(__name__)

ValueLike = Union[ValueRef, str]


class Session:
    """
    Ties one graph to a planner, an executor and an optional result cache.

    Plans are memoized per requested output set and dropped whenever the graph
    reports a mutation. Values may be addressed by handle or by name. ``close``
    only shuts down an executor the session created itself.
    """

    def __init__(
        self,
        graph: Graph,
        executor: Executor | None = None,
        cache: ResultCache | None = None,
        *,
        reuse_buffers: bool = True,
    ) -> None:
        self.graph = graph
        self.cache = cache
        self._owns_executor = executor is None
        self.executor = executor if executor is not None else Executor(cache=cache)
        if self.executor.cache is None and cache is not None:
            self.executor.cache = cache
        self.reuse_buffers = reuse_buffers
        self._plans: dict[tuple[ValueRef, ...], ExecutionPlan] = {}
        self._unsubscribe = graph.subscribe(self._on_mutation)
        if cache is not None:
            cache.watch(graph)

    @classmethod
    def from_config(cls, graph: Graph, config: EngineConfig | None = None) -> Session:
        config = config if config is not None else EngineConfig.from_env()
        cache = (
            ResultCache(config.cache_capacity, config.cache_max_bytes)
            if config.cache_capacity > 0
            else None
        )
        session = cls(
            graph,
            Executor.from_config(config, cache=cache),
            cache,
            reuse_buffers=config.reuse_buffers,
        )
        session._owns_executor = True
        return session

    def _resolve(self, value: ValueLike) -> ValueRef:
        if isinstance(value, str):
            return self.graph.value_by_name(value)
        return value

    def _on_mutation(self, event: GraphMutation) -> None:
        if self._plans:
            logger.debug(
                "graph '%s' %s: dropping %d plans", self.graph.name, event.kind, len(self._plans)
            )
            self._plans.clear()

    def plan(self, outputs: Sequence[ValueLike]) -> ExecutionPlan:
        refs = tuple(self._resolve(o) for o in outputs)
        cached = self._plans.get(refs)
        if cached is not None and cached.graph_version == self.graph.version:
            return cached
        compiled = plan(self.graph, refs, reuse_buffers=self.reuse_buffers)
        self._plans[refs] = compiled
        return compiled

    def run(
        self,
        outputs: Sequence[ValueLike] | ValueLike,
        bindings: Mapping[ValueLike, Any] | None = None,
    ) -> Any:
        """
        Evaluate ``outputs``. A single value returns one array; a sequence returns
        a list in the same order.
        """
        if isinstance(outputs, (str, ValueRef)):
            return self._run([outputs], bindings)[0]
        return self._run(list(outputs), bindings)

    def _run(
        self, outputs: list[ValueLike], bindings: Mapping[ValueLike, Any] | None
    ) -> list[np.ndarray]:
        compiled = self.plan(outputs)
        resolved = {self._resolve(k): v for k, v in (bindings or {}).items()}
        results = self.executor.execute(compiled, resolved)
        return [results[v] for v in compiled.outputs]

    def close(self) -> None:
        self._unsubscribe()
        if self.cache is not None:
            self.cache.unwatch(self.graph)
        if self._owns_executor:
            self.executor.close()

    def __enter__(self) -> Session:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()
