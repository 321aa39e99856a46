from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable
from typing import Any

from gradflow.ir.graph import Graph
from gradflow.utils.logger import get_logger

logger = get_logger(__name__)


class Pass(ABC):
    """Base class for graph passes."""

    name: str = "pass"

    @abstractmethod
    def match(self, graph: Graph) -> Iterable[Any]:
        raise NotImplementedError

    @abstractmethod
    def apply(self, graph: Graph, candidate: Any) -> None:
        raise NotImplementedError


class Pipeline:
    """An ordered sequence of passes."""

    def __init__(self, passes: list[Pass], max_rounds: int = 100) -> None:
        self._passes = passes
        self.max_rounds = max_rounds

    @property
    def passes(self) -> list[Pass]:
        return list(self._passes)

    def run(self, graph: Graph) -> Graph:
        for p in self._passes:
            # Run each pass to a fixed point
            for _ in range(self.max_rounds):
                candidates = list(p.match(graph))
                if not candidates:
                    break
                logger.debug("%s: %d candidates on graph '%s'", p.name, len(candidates), graph.name)
                for c in candidates:
                    p.apply(graph, c)
            else:
                logger.warning("%s did not converge after %d rounds", p.name, self.max_rounds)
        return graph
