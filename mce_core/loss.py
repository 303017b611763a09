# Copyright (c) 2025 MCE Maintainers
# License: MIT
"""
Loss evaluation and stopping for generator sequences.

Implements:
- LossSpec / StopCriterion: static configuration of an objective, its direction and
  when a generator's sequence halts
- LossContext: read-only view of dependency histories handed to objectives, so a
  composite's loss may read its components' latest scores
- LossEvaluator.evaluate(instance, context) -> score
- LossEvaluator.should_stop(history) -> bool

Stopping is permanent: once should_stop returns True for a generator, the owning stream
marks itself exhausted and enclosing composites stop drawing from it.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, Literal, Mapping, Optional, Sequence, Tuple

from mce_core.interfaces import GeneratorId, HistoryEntry, ModelInstanceOps, Score

LossDirection = Literal["min", "max"]
Objective = Callable[..., float]


@dataclass(frozen=True)
class StopCriterion:
    """
    threshold: stop once a score reaches it in the better direction (<= for min, >= for max);
               the instance reaching it is still emitted
    patience: stop after this many consecutive emissions without improving the best score
    max_emitted: stop once this many instances were emitted
    """
    threshold: Optional[float] = None
    patience: Optional[int] = None
    max_emitted: Optional[int] = None

    def is_empty(self) -> bool:
        return self.threshold is None and self.patience is None and self.max_emitted is None


@dataclass(frozen=True)
class LossSpec:
    objective_name: str
    objective: Objective = field(compare=False, repr=False)
    direction: LossDirection = "min"
    stop: StopCriterion = StopCriterion()
    params: Mapping[str, Any] = field(default_factory=dict, compare=False)

    def __post_init__(self) -> None:
        if self.direction not in ("min", "max"):
            raise ValueError(f"direction must be 'min' or 'max', got {self.direction!r}")


class LossContext:
    """Read-only view over dependency histories, keyed by generator id."""

    def __init__(self, generator: GeneratorId, dependencies: Mapping[GeneratorId, Sequence[HistoryEntry]]) -> None:
        self.generator = generator
        self._deps: Mapping[GeneratorId, Tuple[HistoryEntry, ...]] = MappingProxyType(
            {k: tuple(v) for k, v in dependencies.items()}
        )

    @property
    def dependency_histories(self) -> Mapping[GeneratorId, Tuple[HistoryEntry, ...]]:
        return self._deps

    def latest(self, dependency: GeneratorId) -> Optional[Score]:
        hist = self._deps.get(dependency, ())
        return hist[-1].score if hist else None

    def scores(self, dependency: GeneratorId) -> Tuple[Score, ...]:
        return tuple(e.score for e in self._deps.get(dependency, ()))


EMPTY_CONTEXT = LossContext("", {})


class LossEvaluator:
    """Scores instances with a LossSpec and decides when the sequence halts."""

    def __init__(self, spec: LossSpec) -> None:
        self.spec = spec

    @property
    def lower_is_better(self) -> bool:
        return self.spec.direction == "min"

    def better(self, a: Score, b: Score) -> bool:
        """True if a is strictly better than b."""
        return a < b if self.lower_is_better else a > b

    def evaluate(self, instance: ModelInstanceOps, context: LossContext = EMPTY_CONTEXT) -> Score:
        score = float(self.spec.objective(instance, context, **dict(self.spec.params)))
        if math.isnan(score):
            raise ValueError(f"objective {self.spec.objective_name!r} returned NaN")
        return score

    def best(self, history: Sequence[HistoryEntry]) -> Optional[HistoryEntry]:
        out: Optional[HistoryEntry] = None
        for e in history:
            if out is None or self.better(e.score, out.score):
                out = e
        return out

    def should_stop(self, history: Sequence[HistoryEntry]) -> bool:
        stop = self.spec.stop
        if not history or stop.is_empty():
            return False
        if stop.max_emitted is not None and len(history) >= stop.max_emitted:
            return True
        last = history[-1].score
        if stop.threshold is not None:
            reached = last <= stop.threshold if self.lower_is_better else last >= stop.threshold
            if reached:
                return True
        if stop.patience is not None and len(history) > stop.patience:
            best_before = self.best(history[: -stop.patience])
            window = history[-stop.patience:]
            if best_before is not None and not any(self.better(e.score, best_before.score) for e in window):
                return True
        return False


# -------------------------
# Built-in objectives
# -------------------------


def element_count(instance: ModelInstanceOps, context: LossContext, **_: Any) -> float:
    return float(sum(len(instance.elements(ent)) for ent in instance.schema.entities))


def relation_count(instance: ModelInstanceOps, context: LossContext, **_: Any) -> float:
    schema = instance.schema
    return float(sum(len(instance.elements(dom)) for dom, _ in schema.relations.values()))


def dependency_mean(instance: ModelInstanceOps, context: LossContext, **_: Any) -> float:
    """Mean of the dependencies' latest scores (0.0 when none were scored)."""
    latest = [context.latest(dep) for dep in context.dependency_histories]
    vals = [v for v in latest if v is not None]
    return float(sum(vals) / len(vals)) if vals else 0.0


def history_to_jsonable(history: Sequence[HistoryEntry]) -> list:
    return [e.to_jsonable() for e in history]


def history_from_jsonable(data: Sequence[Mapping[str, Any]]) -> Tuple[HistoryEntry, ...]:
    return tuple(HistoryEntry(index=int(d["index"]), score=float(d["score"])) for d in data)


BUILTIN_OBJECTIVES: Dict[str, Objective] = {
    "element_count": element_count,
    "relation_count": relation_count,
    "dependency_mean": dependency_mean,
}


__all__ = [
    "LossDirection",
    "Objective",
    "StopCriterion",
    "LossSpec",
    "LossContext",
    "EMPTY_CONTEXT",
    "LossEvaluator",
    "element_count",
    "relation_count",
    "dependency_mean",
    "history_to_jsonable",
    "history_from_jsonable",
    "BUILTIN_OBJECTIVES",
]
