# Copyright (c) 2025 MCE Maintainers
# License: MIT
"""
Constrained homomorphism search between model instances.

Implements a default HomomorphismSearch that:
- Builds one variable per source element with a candidate domain of same-entity target
  elements admitted by every map constraint for that entity
- Enforces that every schema relation commutes: h(r_S(x)) == r_T(h(x))
- Optionally enforces injectivity per entity (monic maps)
- Enumerates every admissible map via a pluggable strategy:
    * ExhaustiveStrategy: product of candidate domains, each candidate checked afterwards
    * BacktrackingStrategy: most-constrained-first ordering with forward propagation along
      relations and early pruning
- Selects one map uniformly at random from the canonically sorted admissible set using a
  caller-supplied numpy Generator (reproducible for the same seed and inputs)
- Honors a SearchBudget (step limit, wall-clock deadline, cancel flag); exceeding it
  raises SearchTimeout, which callers treat exactly like NoHomomorphism

References:
- Contracts: mce_core.interfaces (HomomorphismSearch, MapConstraint, Homomorphism)
"""

from __future__ import annotations

import itertools
import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterator, List, Optional, Sequence, Set, Tuple

import numpy as np

from mce_core.errors import NoHomomorphism, SearchTimeout
from mce_core.interfaces import (
    Direction,
    Element,
    EntityName,
    Homomorphism,
    MapConstraint,
    ModelInstanceOps,
    check_same_schema,
)

logger = logging.getLogger(__name__)

Var = Tuple[EntityName, Element]
Assignment = Dict[Var, Element]


# -------------------------
# Budget
# -------------------------


@dataclass(frozen=True)
class SearchBudget:
    """
    External limit on a single search call.

    max_steps: node/candidate visits before giving up (None = unbounded)
    timeout_s: wall-clock seconds before giving up (None = unbounded)
    cancel: an Event another thread may set to abort the call
    """
    max_steps: Optional[int] = None
    timeout_s: Optional[float] = None
    cancel: Optional[threading.Event] = None

    def start(self) -> "_BudgetClock":
        return _BudgetClock(self)


UNBOUNDED = SearchBudget()


class _BudgetClock:
    _CHECK_EVERY = 64

    def __init__(self, budget: SearchBudget) -> None:
        self.budget = budget
        self.steps = 0
        self._deadline = None if budget.timeout_s is None else time.monotonic() + float(budget.timeout_s)

    def tick(self) -> None:
        self.steps += 1
        b = self.budget
        if b.max_steps is not None and self.steps > b.max_steps:
            raise SearchTimeout(f"step budget of {b.max_steps} exceeded", steps=self.steps)
        if self.steps % self._CHECK_EVERY == 1:
            if b.cancel is not None and b.cancel.is_set():
                raise SearchTimeout("search cancelled", steps=self.steps)
            if self._deadline is not None and time.monotonic() > self._deadline:
                raise SearchTimeout(f"timeout of {b.timeout_s}s exceeded", steps=self.steps)


# -------------------------
# Problem
# -------------------------


class _Problem:
    """Variables, unary-filtered domains and relation structure for one (source, target) pair."""

    def __init__(
        self,
        source: ModelInstanceOps,
        target: ModelInstanceOps,
        constraints: Sequence[MapConstraint],
        monic: bool,
    ) -> None:
        self.source = source
        self.target = target
        self.monic = monic
        schema = source.schema
        self.schema = schema

        by_entity: Dict[EntityName, List[MapConstraint]] = {}
        for c in constraints:
            by_entity.setdefault(c.entity, []).append(c)

        self.variables: List[Var] = []
        self.domains: Dict[Var, Tuple[Element, ...]] = {}
        for ent in schema.entities:
            t_elems = target.elements(ent)
            cs = by_entity.get(ent, [])
            for x in source.elements(ent):
                var = (ent, x)
                self.variables.append(var)
                self.domains[var] = tuple(t for t in t_elems if all(c.admits(source, x, target, t) for c in cs))

        # preimages[(relation, y)] -> source elements w with r_S(w) == y
        self.preimages: Dict[Tuple[str, Element], List[Element]] = {}
        for rel, (dom, _cod) in schema.relations.items():
            for w in source.elements(dom):
                self.preimages.setdefault((rel, source.apply(rel, w)), []).append(w)

    def space_size(self) -> float:
        total = 1.0
        for var in self.variables:
            total *= len(self.domains[var])
        return total

    def trivially_empty(self) -> bool:
        return any(len(d) == 0 for d in self.domains.values())

    def is_homomorphism(self, assignment: Assignment) -> bool:
        src, tgt = self.source, self.target
        for rel, (dom, cod) in self.schema.relations.items():
            for x in src.elements(dom):
                if assignment[(cod, src.apply(rel, x))] != tgt.apply(rel, assignment[(dom, x)]):
                    return False
        if self.monic:
            for ent in self.schema.entities:
                images = [assignment[(ent, x)] for x in src.elements(ent)]
                if len(set(images)) != len(images):
                    return False
        return True

    def to_homomorphism(self, assignment: Assignment) -> Homomorphism:
        comps: Dict[EntityName, Dict[Element, Element]] = {ent: {} for ent in self.schema.entities}
        for (ent, x), t in assignment.items():
            comps[ent][x] = t
        return Homomorphism.from_components(self.source.identity_key(), self.target.identity_key(), comps)


# -------------------------
# Strategies
# -------------------------


class ExhaustiveStrategy:
    """Enumerate the full product of candidate domains; suited to small structures."""

    name = "exhaustive"

    def enumerate(self, problem: _Problem, clock: _BudgetClock) -> Iterator[Assignment]:
        variables = problem.variables
        if problem.trivially_empty():
            return
        for combo in itertools.product(*(problem.domains[v] for v in variables)):
            clock.tick()
            assignment = dict(zip(variables, combo))
            if problem.is_homomorphism(assignment):
                yield assignment


class BacktrackingStrategy:
    """
    Depth-first search with dynamic most-constrained-variable ordering.

    Assigning x -> t propagates along every relation touching x:
    - outgoing r: the image r_S(x) is forced onto r_T(t)
    - incoming r: every preimage w of x is restricted to target elements u with r_T(u) == t
    - monic: t is removed from the other domains of the same entity
    Any emptied domain prunes the branch immediately.
    """

    name = "backtracking"

    def enumerate(self, problem: _Problem, clock: _BudgetClock) -> Iterator[Assignment]:
        if problem.trivially_empty():
            return
        yield from self._search(problem, clock, {}, dict(problem.domains))

    def _search(
        self,
        problem: _Problem,
        clock: _BudgetClock,
        assignment: Assignment,
        domains: Dict[Var, Tuple[Element, ...]],
    ) -> Iterator[Assignment]:
        clock.tick()
        unassigned = [v for v in problem.variables if v not in assignment]
        if not unassigned:
            yield dict(assignment)
            return
        var = min(unassigned, key=lambda v: (len(domains[v]), v))
        for t in domains[var]:
            new_domains = self._propagate(problem, assignment, domains, var, t)
            if new_domains is None:
                continue
            assignment[var] = t
            yield from self._search(problem, clock, assignment, new_domains)
            del assignment[var]

    def _propagate(
        self,
        problem: _Problem,
        assignment: Assignment,
        domains: Dict[Var, Tuple[Element, ...]],
        var: Var,
        t: Element,
    ) -> Optional[Dict[Var, Tuple[Element, ...]]]:
        src, tgt, schema = problem.source, problem.target, problem.schema
        ent, x = var
        new = dict(domains)
        new[var] = (t,)

        def restrict(other: Var, allowed: Set[Element]) -> bool:
            if other in assignment:
                return assignment[other] in allowed
            narrowed = tuple(u for u in new[other] if u in allowed)
            new[other] = narrowed
            return bool(narrowed)

        for rel in schema.relations_from(ent):
            cod = schema.relations[rel][1]
            if not restrict((cod, src.apply(rel, x)), {tgt.apply(rel, t)}):
                return None
        for rel in schema.relations_into(ent):
            dom = schema.relations[rel][0]
            for w in problem.preimages.get((rel, x), ()):
                allowed = {u for u in tgt.elements(dom) if tgt.apply(rel, u) == t}
                if not restrict((dom, w), allowed):
                    return None
        if problem.monic:
            for other in problem.variables:
                if other[0] != ent or other == var:
                    continue
                if other in assignment:
                    if assignment[other] == t:
                        return None
                    continue
                narrowed = tuple(u for u in new[other] if u != t)
                if not narrowed:
                    return None
                new[other] = narrowed
        return new


# -------------------------
# Default search engine
# -------------------------


class DefaultHomomorphismSearch:
    """
    Default implementation of HomomorphismSearch.

    Notes:
    - strategy=None picks ExhaustiveStrategy when the candidate space has at most
      `exhaustive_limit` points, BacktrackingStrategy otherwise.
    - Results are sets; choose() sorts them canonically before drawing so the pick
      depends only on the rng state and the inputs.
    """

    def __init__(
        self,
        strategy: Optional[object] = None,
        *,
        exhaustive_limit: int = 4096,
        default_budget: SearchBudget = UNBOUNDED,
    ) -> None:
        self.strategy = strategy
        self.exhaustive_limit = int(exhaustive_limit)
        self.default_budget = default_budget

    def _pick_strategy(self, problem: _Problem):
        if self.strategy is not None:
            return self.strategy
        if problem.space_size() <= self.exhaustive_limit:
            return ExhaustiveStrategy()
        return BacktrackingStrategy()

    def find(
        self,
        source: ModelInstanceOps,
        target: ModelInstanceOps,
        constraints: Sequence[MapConstraint] = (),
        *,
        monic: bool = False,
        budget: Optional[SearchBudget] = None,
        direction: Direction = Direction.EMBEDDING,
        max_results: Optional[int] = None,
    ) -> FrozenSet[Homomorphism]:
        check_same_schema(source.schema, target.schema, f"{direction.value} source/target")
        problem = _Problem(source, target, constraints, monic)
        strategy = self._pick_strategy(problem)
        clock = (budget or self.default_budget).start()
        found: Set[Homomorphism] = set()
        try:
            for assignment in strategy.enumerate(problem, clock):
                found.add(problem.to_homomorphism(assignment))
                if max_results is not None and len(found) >= max_results:
                    break
        except SearchTimeout:
            logger.debug(
                "%s search timed out after %d steps (%s, space=%s)",
                direction.value, clock.steps, strategy.name, _fmt_space(problem.space_size()),
            )
            raise
        logger.debug(
            "%s search: %d map(s) in %d steps (%s)", direction.value, len(found), clock.steps, strategy.name
        )
        return frozenset(found)

    def require(
        self,
        source: ModelInstanceOps,
        target: ModelInstanceOps,
        constraints: Sequence[MapConstraint] = (),
        *,
        monic: bool = False,
        budget: Optional[SearchBudget] = None,
        direction: Direction = Direction.EMBEDDING,
    ) -> FrozenSet[Homomorphism]:
        """Like find(), but an empty result raises NoHomomorphism."""
        found = self.find(source, target, constraints, monic=monic, budget=budget, direction=direction)
        if not found:
            raise NoHomomorphism(f"no admissible {direction.value} map from {source!r} to {target!r}")
        return found

    def choose(
        self,
        source: ModelInstanceOps,
        target: ModelInstanceOps,
        constraints: Sequence[MapConstraint],
        rng: np.random.Generator,
        *,
        monic: bool = False,
        budget: Optional[SearchBudget] = None,
        direction: Direction = Direction.EMBEDDING,
    ) -> Homomorphism:
        found = self.require(source, target, constraints, monic=monic, budget=budget, direction=direction)
        return select_uniform(found, rng)


def select_uniform(maps: FrozenSet[Homomorphism], rng: np.random.Generator) -> Homomorphism:
    """Draw one map uniformly from a non-empty set, independent of set iteration order."""
    ordered = sorted(maps, key=Homomorphism.sort_key)
    if len(ordered) == 1:
        return ordered[0]
    return ordered[int(rng.integers(len(ordered)))]


def _fmt_space(size: float) -> str:
    return f"{size:.0f}" if size < 1e9 else f"1e{math.log10(size):.1f}"


__all__ = [
    "SearchBudget",
    "UNBOUNDED",
    "ExhaustiveStrategy",
    "BacktrackingStrategy",
    "DefaultHomomorphismSearch",
    "select_uniform",
]
