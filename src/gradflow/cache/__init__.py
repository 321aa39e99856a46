from .lru import (
    ResultCache,
    fingerprint_array,
    fingerprint_output,
    fingerprint_step,
    node_tag,
)

__all__ = [
    "ResultCache",
    "fingerprint_array",
    "fingerprint_output",
    "fingerprint_step",
    "node_tag",
]
