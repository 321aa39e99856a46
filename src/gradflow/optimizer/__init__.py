"""Graph optimization passes and pipelines."""

from collections.abc import Sequence

from gradflow.ir.graph import ValueRef

from .passes import Pass, Pipeline
from .passes_impl import ConstantFoldingPass, DeadCodeEliminationPass


def build_default_pipeline(retain: Sequence[ValueRef] | None = None) -> Pipeline:
    return Pipeline([ConstantFoldingPass(), DeadCodeEliminationPass(retain)])

__all__ = [
    "Pipeline",
    "Pass",
    "ConstantFoldingPass",
    "DeadCodeEliminationPass",
    "build_default_pipeline",
]
