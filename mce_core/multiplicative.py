# Copyright (c) 2025 MCE Maintainers
# License: MIT
"""
Multiplicative composition: breadth-first exploration of a product of generator outputs.

Nodes are index tuples (one position per dimension). An edge advances exactly one
coordinate to one of that dimension's successors (index + 1 for sequential streams, DAG
successors for sources that expose them). Exploration is FIFO from the origin, so the
emission order is by non-decreasing BFS radius.

Per popped node:
1) slice every dimension instance into the shared base (random choice on ambiguity)
2) any failed slice drops the node; its neighbors are still discovered unless
   expand_inadmissible is False
3) the pullback of the slices is emitted

The visited set is keyed by coordinates, so the whole product graph is traversed even when a
dimension repeats an instance. A node whose tuple of instance identity keys was already
emitted is passed over as a duplicate. Frontier, visited set, emitted identities and emitted
coordinates are plain data and round-trip through state_dict().
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Any, Deque, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from mce_core.errors import LayerExhausted, SearchFailure
from mce_core.generators import ProductSpec
from mce_core.homomorphism import UNBOUNDED, DefaultHomomorphismSearch, SearchBudget
from mce_core.instance_mem import terminal
from mce_core.interfaces import Coordinates, Direction, HomomorphismSearch, ModelInstanceOps, Schema, StreamKey
from mce_core.pullback import fiber_product
from mce_core.seeding import derive_rng
from mce_core.streams import InstanceStream

logger = logging.getLogger(__name__)

IdentityTuple = Tuple[str, ...]


class ProductStream(InstanceStream):
    """Lazy BFS over the product of dimension streams, emitting admissible pullbacks."""

    def __init__(
        self,
        key: StreamKey,
        schema: Schema,
        spec: ProductSpec,
        dimensions: Sequence[InstanceStream],
        *,
        search: Optional[HomomorphismSearch] = None,
        seed: int = 0,
        budget: SearchBudget = UNBOUNDED,
    ) -> None:
        super().__init__(key)
        if len(dimensions) != len(spec.dimensions):
            raise ValueError(f"{key}: expected {len(spec.dimensions)} dimension streams, got {len(dimensions)}")
        self.schema = schema
        self.spec = spec
        self.dimensions = list(dimensions)
        self.base = spec.base if spec.base is not None else terminal(schema)
        self.search = search or DefaultHomomorphismSearch()
        self.seed = int(seed)
        self.budget = budget
        self._started = False
        self._frontier: Deque[Coordinates] = deque()
        self._visited: Set[Coordinates] = set()
        self._seen: Set[IdentityTuple] = set()
        self._origin: List[Coordinates] = []
        self._skips = 0
        self.rejected = 0
        self.duplicates = 0

    # ---- BFS helpers ----

    def _instances(self, coords: Coordinates) -> Optional[List[ModelInstanceOps]]:
        out: List[ModelInstanceOps] = []
        for dim, pos in zip(self.dimensions, coords):
            inst = dim.get(pos)
            if inst is None:
                return None
            out.append(inst)
        return out

    @staticmethod
    def _identity(instances: Sequence[ModelInstanceOps]) -> IdentityTuple:
        return tuple(i.identity_key() for i in instances)

    def _start(self) -> None:
        self._started = True
        origin = tuple(0 for _ in self.dimensions)
        if self._instances(origin) is None:
            return
        self._visited.add(origin)
        self._frontier.append(origin)

    def _expand(self, coords: Coordinates) -> None:
        for k, dim in enumerate(self.dimensions):
            for nxt in dim.successors(coords[k]):
                if dim.get(nxt) is None:
                    continue
                neighbor = coords[:k] + (int(nxt),) + coords[k + 1:]
                if neighbor in self._visited:
                    continue
                self._visited.add(neighbor)
                self._frontier.append(neighbor)

    def _materialize(
        self, coords: Coordinates, instances: Optional[List[ModelInstanceOps]] = None
    ) -> Optional[ModelInstanceOps]:
        if instances is None:
            instances = self._instances(coords)
        if instances is None:
            return None
        slices = []
        try:
            for k, inst in enumerate(instances):
                rng = derive_rng(self.seed, self.key, coords, "slice", k)
                slices.append(
                    self.search.choose(
                        inst,
                        self.base,
                        (),
                        rng,
                        monic=self.spec.monic,
                        budget=self.budget,
                        direction=Direction.SLICING,
                    )
                )
        except SearchFailure as e:
            logger.debug("%s: node %s inadmissible: %s", self.key, coords, e)
            return None
        return fiber_product(self.schema, instances, slices, self.base)

    # ---- InstanceStream hooks ----

    def _advance(self) -> Optional[ModelInstanceOps]:
        if not self._started:
            self._start()
        while self._frontier:
            coords = self._frontier.popleft()
            instances = self._instances(coords)
            ident = None if instances is None else self._identity(instances)
            if ident is not None and ident in self._seen:
                self._expand(coords)
                self.duplicates += 1
                self._skips += 1
                if self._skips >= self.spec.max_consecutive_skips:
                    raise LayerExhausted(self.key, self._skips)
                continue
            inst = self._materialize(coords, instances)
            if inst is not None or self.spec.expand_inadmissible:
                self._expand(coords)
            if inst is not None:
                self._skips = 0
                self._seen.add(ident)
                self._origin.append(coords)
                return inst
            self.rejected += 1
            self._skips += 1
            if self._skips >= self.spec.max_consecutive_skips:
                raise LayerExhausted(self.key, self._skips)
        return None

    def _rematerialize(self, index: int) -> ModelInstanceOps:
        inst = self._materialize(self._origin[index])
        if inst is None:
            raise LookupError(f"{self.key}: emission {index} can no longer be rebuilt")
        return inst

    def coordinates(self, index: int) -> Coordinates:
        return self._origin[index]

    @property
    def frontier(self) -> Tuple[Coordinates, ...]:
        return tuple(self._frontier)

    def state_dict(self) -> Dict[str, Any]:
        d = super().state_dict()
        d.update({
            "started": self._started,
            "frontier": [list(c) for c in self._frontier],
            "visited": sorted(list(v) for v in self._visited),
            "seen": sorted(list(v) for v in self._seen),
            "origin": [list(c) for c in self._origin],
            "skips": self._skips,
            "rejected": self.rejected,
            "duplicates": self.duplicates,
        })
        return d

    def load_state_dict(self, state: Mapping[str, Any]) -> None:
        super().load_state_dict(state)
        self._started = bool(state["started"])
        self._frontier = deque(tuple(int(i) for i in c) for c in state["frontier"])
        self._visited = {tuple(int(i) for i in v) for v in state["visited"]}
        self._seen = {tuple(str(k) for k in v) for v in state["seen"]}
        self._origin = [tuple(int(i) for i in c) for c in state["origin"]]
        self._skips = int(state["skips"])
        self.rejected = int(state.get("rejected", 0))
        self.duplicates = int(state.get("duplicates", 0))


__all__ = ["ProductStream"]
