# Copyright (c) 2025 MCE Maintainers
# License: MIT
"""
Lazy, indexed instance streams with explicit, serializable position state.

Every generator is realized as an InstanceStream:
- get(i) returns the i-th emitted instance, advancing the stream as needed, or None once
  the stream is exhausted before reaching i
- emitted instances are memoized, so a stream shared by several composites produces each
  instance exactly once
- state_dict()/load_state_dict() capture positions only (indices, coordinates, histories);
  instances emitted before a checkpoint are rematerialized on demand from their coordinates

Streams in this module:
- PrimitiveStream: wraps a PrimitiveSource (1:1 with source indices; DAG successors if offered)
- ConstrainedStream: applies Filter/Chase output constraints, skipping rejected instances
- LossGatedStream: scores each emission and ends the sequence once the stop criterion fires

Composite streams live in mce_core.additive and mce_core.multiplicative.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from mce_core.constraints import OutputConstraint, apply_output_constraints
from mce_core.errors import LayerExhausted
from mce_core.generators import DEFAULT_MAX_CONSECUTIVE_SKIPS
from mce_core.interfaces import DAGPrimitiveSource, HistoryEntry, ModelInstanceOps, PrimitiveSource, StreamKey
from mce_core.loss import EMPTY_CONTEXT, LossContext, LossEvaluator, history_from_jsonable, history_to_jsonable

logger = logging.getLogger(__name__)

DEFAULT_CACHE_SIZE = 4096


class InstanceStream(ABC):
    """
    Base class: memoized, index-addressable, pausable sequence of instances.

    At most `cache_size` emitted instances are held (least recently used evicted first,
    None for no bound). Evicted instances are rebuilt through _rematerialize().
    """

    cache_size: Optional[int] = DEFAULT_CACHE_SIZE

    def __init__(self, key: StreamKey) -> None:
        self.key = key
        self._emitted = 0
        self._exhausted = False
        self._cache: "OrderedDict[int, ModelInstanceOps]" = OrderedDict()

    # ---- Public API ----

    @property
    def emitted_count(self) -> int:
        return self._emitted

    @property
    def cached_count(self) -> int:
        return len(self._cache)

    @property
    def exhausted(self) -> bool:
        return self._exhausted

    @property
    def history(self) -> Tuple[HistoryEntry, ...]:
        """Loss history; empty for streams without a loss."""
        return ()

    def get(self, index: int) -> Optional[ModelInstanceOps]:
        if index < 0:
            return None
        while index >= self._emitted:
            if self._exhausted:
                return None
            try:
                inst = self._advance()
            except LayerExhausted as e:
                logger.info("%s", e)
                inst = None
            if inst is None:
                self._exhausted = True
                logger.debug("stream %s exhausted after %d instance(s)", self.key, self._emitted)
                return None
            self._remember(self._emitted, inst)
            self._emitted += 1
        inst = self._cache.get(index)
        if inst is None:
            inst = self._rematerialize(index)
            self._remember(index, inst)
        else:
            self._cache.move_to_end(index)
        return inst

    def _remember(self, index: int, inst: ModelInstanceOps) -> None:
        self._cache[index] = inst
        self._cache.move_to_end(index)
        if self.cache_size is not None:
            while len(self._cache) > max(1, int(self.cache_size)):
                self._cache.popitem(last=False)

    def successors(self, index: int) -> Sequence[int]:
        """Successor positions of `index` when the output is viewed as a DAG (a path by default)."""
        return (index + 1,)

    def __iter__(self) -> Iterator[ModelInstanceOps]:
        i = 0
        while True:
            inst = self.get(i)
            if inst is None:
                return
            yield inst
            i += 1

    def take(self, n: int) -> List[ModelInstanceOps]:
        out: List[ModelInstanceOps] = []
        for i in range(n):
            inst = self.get(i)
            if inst is None:
                break
            out.append(inst)
        return out

    def state_dict(self) -> Dict[str, Any]:
        return {"kind": type(self).__name__, "emitted": self._emitted, "exhausted": self._exhausted}

    def load_state_dict(self, state: Mapping[str, Any]) -> None:
        kind = state.get("kind")
        if kind != type(self).__name__:
            raise ValueError(f"{self.key}: checkpoint holds a {kind!r} state, expected {type(self).__name__!r}")
        self._emitted = int(state["emitted"])
        self._exhausted = bool(state["exhausted"])
        self._cache.clear()

    # ---- Subclass hooks ----

    @abstractmethod
    def _advance(self) -> Optional[ModelInstanceOps]:
        """Produce the next emission (recording its coordinates), or None when exhausted."""

    @abstractmethod
    def _rematerialize(self, index: int) -> ModelInstanceOps:
        """Rebuild an already-emitted instance from its recorded coordinates."""


# -------------------------
# Primitive
# -------------------------


class PrimitiveStream(InstanceStream):
    """Stream over a PrimitiveSource; emission i is source position i."""

    def __init__(self, key: StreamKey, source: PrimitiveSource) -> None:
        super().__init__(key)
        self.source = source

    def _advance(self) -> Optional[ModelInstanceOps]:
        return self.source.get(self._emitted)

    def _rematerialize(self, index: int) -> ModelInstanceOps:
        inst = self.source.get(index)
        if inst is None:
            raise LookupError(f"{self.key}: source no longer yields position {index}")
        return inst

    def successors(self, index: int) -> Sequence[int]:
        if isinstance(self.source, DAGPrimitiveSource):
            return tuple(self.source.successors(index))
        return (index + 1,)


# -------------------------
# Output constraints
# -------------------------


class ConstrainedStream(InstanceStream):
    """Applies Filter/Chase constraints in order; rejected upstream instances are skipped."""

    def __init__(
        self,
        key: StreamKey,
        upstream: InstanceStream,
        constraints: Sequence[OutputConstraint],
        *,
        max_consecutive_skips: int = DEFAULT_MAX_CONSECUTIVE_SKIPS,
    ) -> None:
        super().__init__(key)
        self.upstream = upstream
        self.constraints = tuple(constraints)
        self.max_consecutive_skips = int(max_consecutive_skips)
        self._upstream_pos = 0
        self._origin: List[int] = []  # emission index -> upstream index

    def _advance(self) -> Optional[ModelInstanceOps]:
        skips = 0
        while True:
            raw = self.upstream.get(self._upstream_pos)
            if raw is None:
                return None
            pos = self._upstream_pos
            self._upstream_pos += 1
            out = apply_output_constraints(raw, self.constraints)
            if out is not None:
                self._origin.append(pos)
                return out
            skips += 1
            if skips >= self.max_consecutive_skips:
                raise LayerExhausted(self.key, skips)

    def _rematerialize(self, index: int) -> ModelInstanceOps:
        raw = self.upstream.get(self._origin[index])
        out = None if raw is None else apply_output_constraints(raw, self.constraints)
        if out is None:
            raise LookupError(f"{self.key}: emission {index} can no longer be rebuilt")
        return out

    def state_dict(self) -> Dict[str, Any]:
        d = super().state_dict()
        d.update({"upstream_pos": self._upstream_pos, "origin": list(self._origin)})
        return d

    def load_state_dict(self, state: Mapping[str, Any]) -> None:
        super().load_state_dict(state)
        self._upstream_pos = int(state["upstream_pos"])
        self._origin = [int(i) for i in state["origin"]]


# -------------------------
# Loss gate
# -------------------------


class LossGatedStream(InstanceStream):
    """
    Scores every emission and halts permanently once the stop criterion fires.

    The instance that triggers the stop is still emitted; nothing after it is drawn.
    `context` is called per evaluation to build a read-only view of dependency histories.
    """

    def __init__(
        self,
        key: StreamKey,
        upstream: InstanceStream,
        evaluator: LossEvaluator,
        context: Optional[Callable[[], LossContext]] = None,
    ) -> None:
        super().__init__(key)
        self.upstream = upstream
        self.evaluator = evaluator
        self._context = context or (lambda: EMPTY_CONTEXT)
        self._history: List[HistoryEntry] = []
        self._stopped = False

    @property
    def history(self) -> Tuple[HistoryEntry, ...]:
        return tuple(self._history)

    @property
    def stopped(self) -> bool:
        return self._stopped

    def best(self) -> Optional[HistoryEntry]:
        return self.evaluator.best(self._history)

    def _advance(self) -> Optional[ModelInstanceOps]:
        if self._stopped:
            return None
        inst = self.upstream.get(self._emitted)
        if inst is None:
            return None
        score = self.evaluator.evaluate(inst, self._context())
        self._history.append(HistoryEntry(index=self._emitted, score=score))
        if self.evaluator.should_stop(self._history):
            self._stopped = True
            logger.info("stream %s stopped after %d instance(s) (last score %g)", self.key, len(self._history), score)
        return inst

    def _rematerialize(self, index: int) -> ModelInstanceOps:
        inst = self.upstream.get(index)
        if inst is None:
            raise LookupError(f"{self.key}: emission {index} can no longer be rebuilt")
        return inst

    def state_dict(self) -> Dict[str, Any]:
        d = super().state_dict()
        d.update({"history": history_to_jsonable(self._history), "stopped": self._stopped})
        return d

    def load_state_dict(self, state: Mapping[str, Any]) -> None:
        super().load_state_dict(state)
        self._history = list(history_from_jsonable(state["history"]))
        self._stopped = bool(state["stopped"])


__all__ = ["DEFAULT_CACHE_SIZE", "InstanceStream", "PrimitiveStream", "ConstrainedStream", "LossGatedStream"]
