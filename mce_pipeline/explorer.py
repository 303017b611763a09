# Copyright (c) 2025 MCE Maintainers
# License: MIT
"""
Search run orchestration: drive the root stream of a validated search space.

This module provides:
- SearchOutcome: final status, best result, counters; maps onto a process exit code
- SearchRun: builds the stream graph for a SearchConfig and draws from the root until
  the iteration budget, the wall-clock timeout, or the root's stop criterion

Typical flow in one run()
1) Optionally resume stream positions and counters from a checkpoint
2) Pull root emissions one at a time; score (from the root's loss history) and log each
3) Stop on: iterations reached, deadline passed, stop criterion fired, or exhaustion
4) Optionally write a checkpoint (also every `checkpoint_every` steps)

Status values
- "budget":    iteration budget reached
- "stopped":   the root's stop criterion fired
- "exhausted": the root stream ended without its stop criterion firing
- "timeout":   the wall-clock deadline passed

Exit codes (see SearchOutcome.exit_code): 0 success with a result, 3 exhausted without
success, 4 timeout. Configuration errors (2) are raised before a run starts.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from mce_core.homomorphism import DefaultHomomorphismSearch
from mce_core.interfaces import HistoryEntry, HomomorphismSearch, ModelInstanceOps
from mce_core.loss import LossEvaluator
from mce_core.scheduler import Schedule, StreamGraph
from mce_pipeline.checkpoint import Checkpoint, load_checkpoint, save_checkpoint
from mce_pipeline.config import SearchConfig
from mce_pipeline.logging_utils import SearchLogger

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CONFIG = 2
EXIT_EXHAUSTED = 3
EXIT_TIMEOUT = 4


@dataclass
class SearchOutcome:
    status: str
    steps: int
    elapsed_s: float
    root: str
    best: Optional[Dict[str, Any]] = None
    threshold_reached: Optional[bool] = None
    streams: Dict[str, int] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        if self.status == "timeout" or self.best is None:
            return False
        return self.threshold_reached is not False

    @property
    def exit_code(self) -> int:
        if self.status == "timeout":
            return EXIT_TIMEOUT
        return EXIT_OK if self.success else EXIT_EXHAUSTED

    def to_jsonable(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "success": self.success,
            "exit_code": self.exit_code,
            "steps": self.steps,
            "elapsed_s": round(self.elapsed_s, 6),
            "root": self.root,
            "best": self.best,
            "threshold_reached": self.threshold_reached,
            "streams": dict(self.streams),
        }


class SearchRun:
    """
    One exploration of a search space.

    Attributes
    - cfg: SearchConfig
    - schedule: validated dependency schedule
    - graph: runtime StreamGraph (streams built on first demand)
    - root: generator id whose stream is driven
    """

    def __init__(
        self,
        cfg: SearchConfig,
        *,
        search: Optional[HomomorphismSearch] = None,
        log: Optional[SearchLogger] = None,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        self.cfg = cfg
        self.schedule: Schedule = cfg.build_schedule()
        self.root = cfg.search.root or self.schedule.root
        search = search or DefaultHomomorphismSearch(exhaustive_limit=cfg.search.exhaustive_limit)
        self.graph: StreamGraph = self.schedule.streams(
            seed=cfg.seed, search=search, budget=cfg.search.call_budget(), cache_size=cfg.search.cache_size
        )
        self.log = log
        self.cancel = cancel or threading.Event()
        self.step = 0
        self.best: Optional[Dict[str, Any]] = None
        self._elapsed_before = 0.0
        decl = self.schedule.declarations[self.root]
        self._evaluator = LossEvaluator(decl.loss) if decl.loss is not None else None

    # ---- Checkpointing ----

    def checkpoint(self, elapsed_s: float = 0.0) -> Checkpoint:
        return Checkpoint(
            fingerprint=self.cfg.fingerprint(),
            name=self.cfg.name,
            seed=self.cfg.seed,
            root=self.root,
            step=self.step,
            streams=self.graph.state_dict(),
            best=self.best,
            elapsed_s=self._elapsed_before + elapsed_s,
        )

    def restore(self, path: Union[str, Path]) -> None:
        ckpt = load_checkpoint(path, fingerprint=self.cfg.fingerprint(), seed=self.cfg.seed)
        self.graph.load_state_dict(ckpt.streams, self.root)
        self.step = ckpt.step
        self.best = ckpt.best
        self._elapsed_before = ckpt.elapsed_s
        logger.info("resumed %s at step %d from %s", self.cfg.name, self.step, path)

    # ---- Scoring ----

    def _score_at(self, index: int) -> Optional[float]:
        hist = self.graph.history(self.graph.key_for(self.root))
        if index < len(hist) and hist[index].index == index:
            return hist[index].score
        return None

    def _is_better(self, score: Optional[float]) -> bool:
        if self.best is None:
            return True
        if self._evaluator is None or score is None:
            # without a loss the most recent emission is the result
            return self._evaluator is None
        return self._evaluator.better(score, float(self.best["score"]))

    def _threshold_reached(self) -> Optional[bool]:
        if self._evaluator is None or self._evaluator.spec.stop.threshold is None:
            return None
        if self.best is None or self.best.get("score") is None:
            return False
        t = self._evaluator.spec.stop.threshold
        s = float(self.best["score"])
        return s <= t if self._evaluator.lower_is_better else s >= t

    @staticmethod
    def _describe(index: int, inst: ModelInstanceOps, score: Optional[float]) -> Dict[str, Any]:
        out: Dict[str, Any] = {"index": index, "score": score, "identity": inst.identity_key()}
        to_jsonable = getattr(inst, "to_jsonable", None)
        if callable(to_jsonable):
            out["instance"] = to_jsonable()
        return out

    # ---- Main loop ----

    def run(
        self,
        *,
        iterations: Optional[int] = None,
        timeout_s: Optional[float] = None,
        checkpoint_path: Optional[Union[str, Path]] = None,
        checkpoint_every: Optional[int] = None,
    ) -> SearchOutcome:
        """
        Draw root emissions until a limit is hit.

        iterations counts root draws over the whole run, including draws before a resume.
        """
        iterations = self.cfg.search.iterations if iterations is None else iterations
        timeout_s = self.cfg.search.timeout_s if timeout_s is None else timeout_s
        t0 = time.monotonic()
        deadline = None if timeout_s is None else t0 + float(timeout_s)
        stream = self.graph.root_stream(self.root)
        if self.log is not None:
            self.log.log_event("start", name=self.cfg.name, root=self.root, seed=self.cfg.seed, step=self.step)

        status = "budget"
        while iterations is None or self.step < iterations:
            if self.cancel.is_set() or (deadline is not None and time.monotonic() >= deadline):
                status = "timeout"
                break
            inst = stream.get(self.step)
            if inst is None:
                gated = getattr(stream, "stopped", False)
                status = "stopped" if gated else "exhausted"
                break
            score = self._score_at(self.step)
            if self._is_better(score):
                self.best = self._describe(self.step, inst, score)
            if self.log is not None:
                self.log.log_emission(
                    self.step,
                    self.step,
                    inst.identity_key(),
                    score=score,
                    best=None if self.best is None else self.best.get("score"),
                )
            self.step += 1
            if checkpoint_path is not None and checkpoint_every and self.step % checkpoint_every == 0:
                save_checkpoint(checkpoint_path, self.checkpoint(time.monotonic() - t0))

        # a gated root that fired on its last permitted draw
        if status == "budget" and getattr(stream, "stopped", False) and stream.get(self.step) is None:
            status = "stopped"

        elapsed = time.monotonic() - t0
        if checkpoint_path is not None:
            save_checkpoint(checkpoint_path, self.checkpoint(elapsed))
        outcome = SearchOutcome(
            status=status,
            steps=self.step,
            elapsed_s=self._elapsed_before + elapsed,
            root=self.root,
            best=self.best,
            threshold_reached=self._threshold_reached(),
            streams=self.graph.emitted_counts(),
        )
        logger.info("search %s finished: %s after %d step(s)", self.cfg.name, status, self.step)
        if self.log is not None:
            self.log.log_event("finish", **{k: v for k, v in outcome.to_jsonable().items() if k != "best"})
            self.log.flush()
        return outcome

    def histories(self) -> Dict[str, List[HistoryEntry]]:
        return {k: list(v) for k, v in self.graph.histories().items()}


__all__ = [
    "EXIT_OK",
    "EXIT_CONFIG",
    "EXIT_EXHAUSTED",
    "EXIT_TIMEOUT",
    "SearchOutcome",
    "SearchRun",
]
