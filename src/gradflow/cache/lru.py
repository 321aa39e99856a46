"""
LRU result cache for step outputs.

Entries are keyed by a content fingerprint: leaf keys hash the bound array
bytes, step keys hash the operator signature together with the keys of its
inputs, so one key identifies a whole upstream subgraph and its inputs.
Entries carry tags naming the graph nodes they were computed for; structural
mutations of a watched graph drop the tagged entries.
"""

from __future__ import annotations

import hashlib
import itertools
import threading
from collections import OrderedDict
from collections.abc import Callable, Hashable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any

import numpy as np

from gradflow.errors import CacheInvalidated
from gradflow.ir.graph import Graph, GraphMutation
from gradflow.utils.logger import get_logger

logger = get_logger(__name__)

Tag = Hashable


def fingerprint_array(array: np.ndarray) -> str:
    arr = np.ascontiguousarray(array)
    h = hashlib.blake2b(digest_size=16)
    h.update(arr.dtype.str.encode())
    h.update(repr(arr.shape).encode())
    h.update(arr.tobytes())
    return h.hexdigest()


def fingerprint_step(signature: str, input_keys: Sequence[str]) -> str:
    h = hashlib.blake2b(digest_size=16)
    h.update(signature.encode())
    for k in input_keys:
        h.update(b"|")
        h.update(k.encode())
    return h.hexdigest()


def fingerprint_output(step_key: str, index: int) -> str:
    return f"{step_key}:{index}"


def node_tag(graph_id: int, kind: str, index: int) -> tuple[int, str, int]:
    """Tag naming one graph node; ``kind`` is ``"op"`` or ``"value"``."""
    return (graph_id, kind, index)


@dataclass
class _Entry:
    values: tuple[np.ndarray, ...]
    tags: frozenset[Tag]
    nbytes: int


def _frozen_copy(values: Sequence[np.ndarray]) -> tuple[np.ndarray, ...]:
    out = []
    for v in values:
        c = np.array(v, copy=True)
        c.setflags(write=False)
        out.append(c)
    return tuple(out)


class ResultCache:
    """
    Thread-safe LRU store of computed step results.

    ``capacity`` bounds the entry count, ``max_bytes`` (optional) the total
    stored bytes. Stored arrays are private read-only copies.
    """

    def __init__(self, capacity: int = 128, max_bytes: int | None = None) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        if max_bytes is not None and max_bytes < 0:
            raise ValueError("max_bytes must be >= 0")
        self.capacity = capacity
        self.max_bytes = max_bytes
        self._entries: OrderedDict[str, _Entry] = OrderedDict()
        self._by_tag: dict[Tag, set[str]] = {}
        self._bytes = 0
        self._lock = threading.Lock()
        self._tokens = itertools.count()
        self._inflight: dict[int, frozenset[Tag]] = {}
        self._poisoned: set[int] = set()
        self._watches: dict[int, Callable[[], None]] = {}
        self.stats = {
            "hits": 0,
            "misses": 0,
            "evictions": 0,
            "invalidations": 0,
            "discarded": 0,
        }

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    @property
    def nbytes(self) -> int:
        return self._bytes

    def get(self, key: str) -> tuple[np.ndarray, ...] | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            self._entries.move_to_end(key)
            return entry.values

    def get_or_compute(
        self,
        key: str,
        compute_fn: Callable[[], Sequence[np.ndarray]],
        *,
        tags: Iterable[Tag] = (),
    ) -> tuple[np.ndarray, ...]:
        """
        Return the cached arrays for ``key``, computing and storing them on a miss.

        ``compute_fn`` runs outside the lock. If an invalidation touching
        ``tags`` lands while it runs, the fresh result is returned but not stored.
        """
        tagset = frozenset(tags)
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                self._entries.move_to_end(key)
                self.stats["hits"] += 1
                logger.debug("result cache HIT %s", key[:12])
                return entry.values
            self.stats["misses"] += 1
            token = next(self._tokens)
            self._inflight[token] = tagset

        try:
            values = _frozen_copy(compute_fn())
        finally:
            with self._lock:
                self._inflight.pop(token, None)
                poisoned = token in self._poisoned
                self._poisoned.discard(token)

        try:
            self._store(key, values, tagset, poisoned)
        except CacheInvalidated as exc:
            logger.debug("result cache discarded %s: %s", key[:12], exc)
        return values

    def put(self, key: str, values: Sequence[np.ndarray], *, tags: Iterable[Tag] = ()) -> None:
        self._store(key, _frozen_copy(values), frozenset(tags), False)

    def _store(
        self, key: str, values: tuple[np.ndarray, ...], tags: frozenset[Tag], poisoned: bool
    ) -> None:
        nbytes = sum(v.nbytes for v in values)
        with self._lock:
            if poisoned:
                self.stats["discarded"] += 1
                raise CacheInvalidated(f"entry {key[:12]} invalidated during compute")
            if self.max_bytes is not None and nbytes > self.max_bytes:
                return
            if key in self._entries:
                self._remove(key)
            self._entries[key] = _Entry(values, tags, nbytes)
            self._bytes += nbytes
            for t in tags:
                self._by_tag.setdefault(t, set()).add(key)
            while len(self._entries) > self.capacity or (
                self.max_bytes is not None and self._bytes > self.max_bytes
            ):
                evicted = next(iter(self._entries))
                self._remove(evicted)
                self.stats["evictions"] += 1
                logger.debug("result cache evicted %s", evicted[:12])

    def _remove(self, key: str) -> _Entry:
        entry = self._entries.pop(key)
        self._bytes -= entry.nbytes
        for t in entry.tags:
            keys = self._by_tag.get(t)
            if keys is not None:
                keys.discard(key)
                if not keys:
                    del self._by_tag[t]
        return entry

    def invalidate(self, tags: Iterable[Tag]) -> int:
        """Drop every entry carrying one of ``tags``; returns how many were dropped."""
        tagset = set(tags)
        with self._lock:
            keys: set[str] = set()
            for t in tagset:
                keys |= self._by_tag.get(t, set())
            for k in keys:
                self._remove(k)
            for token, pending in self._inflight.items():
                if pending & tagset:
                    self._poisoned.add(token)
            self.stats["invalidations"] += len(keys)
        if keys:
            logger.info("result cache invalidated %d entries", len(keys))
        return len(keys)

    def invalidate_graph(self, graph_id: int) -> int:
        with self._lock:
            tags = {t for t in self._by_tag if isinstance(t, tuple) and t[:1] == (graph_id,)}
            tags |= {
                t
                for pending in self._inflight.values()
                for t in pending
                if isinstance(t, tuple) and t[:1] == (graph_id,)
            }
        return self.invalidate(tags)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._by_tag.clear()
            self._bytes = 0
        logger.info("result cache cleared")

    def watch(self, graph: Graph) -> None:
        """Invalidate entries whenever ``graph`` is structurally mutated."""
        if graph.id in self._watches:
            return
        self._watches[graph.id] = graph.subscribe(self._on_mutation)

    def unwatch(self, graph: Graph) -> None:
        unsubscribe = self._watches.pop(graph.id, None)
        if unsubscribe is not None:
            unsubscribe()

    def _on_mutation(self, event: GraphMutation) -> None:
        if event.full:
            self.invalidate_graph(event.graph_id)
            return
        tags = [node_tag(event.graph_id, "op", i) for i in event.ops]
        tags += [node_tag(event.graph_id, "value", i) for i in event.values]
        if tags:
            self.invalidate(tags)

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            total = self.stats["hits"] + self.stats["misses"]
            return {
                **self.stats,
                "entries": len(self._entries),
                "bytes": self._bytes,
                "hit_rate_percent": 100 * self.stats["hits"] / total if total else 0.0,
            }
