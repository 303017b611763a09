# Copyright (c) 2025 MCE Maintainers
# License: MIT
"""
Additive composition: constrained gluing of box instances along junction overlaps.

For each tuple of box draws (one instance per box):
1) every active junction resolves its overlap (explicit, or the empty structure)
2) every wire chooses one map overlap -> box instance under the port's constraints plus
   the box instance's exposed interface; any failure rejects the whole tuple
3) the pushout of junctions, box instances and chosen maps is the composite, exposing the
   union of all port constraints as its interface

Enumeration is an odometer over box positions with the first (outermost) box advancing
slowest. Rejected tuples are skipped; too many consecutive skips end the layer.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from mce_core.constraints import union_constraints
from mce_core.errors import LayerExhausted, SearchFailure
from mce_core.generators import WiringPattern
from mce_core.homomorphism import UNBOUNDED, DefaultHomomorphismSearch, SearchBudget
from mce_core.instance_mem import empty
from mce_core.interfaces import Coordinates, Direction, HomomorphismSearch, ModelInstanceOps, Schema, StreamKey
from mce_core.pushout import Leg, glue
from mce_core.seeding import derive_rng
from mce_core.streams import InstanceStream

logger = logging.getLogger(__name__)


def compose_once(
    schema: Schema,
    wiring: WiringPattern,
    instances: Mapping[str, ModelInstanceOps],
    *,
    search: Optional[HomomorphismSearch] = None,
    seed: int = 0,
    rng_scope: Tuple[Any, ...] = (),
    budget: SearchBudget = UNBOUNDED,
) -> ModelInstanceOps:
    """
    Glue one tuple of box instances (box id -> instance) into a composite.

    Raises SearchFailure (NoHomomorphism / SearchTimeout) when some wire has no admissible map.
    """
    search = search or DefaultHomomorphismSearch()
    overlaps: Dict[str, ModelInstanceOps] = {}
    legs: List[Leg] = []
    for junction in wiring.active_junctions():
        overlap = junction.overlap if junction.overlap is not None else empty(schema)
        overlaps[junction.id] = overlap
        for wire in wiring.wires:
            if wire.junction != junction.id:
                continue
            port = wiring.port(wire.port)
            box_inst = instances[port.box]
            constraints = union_constraints([port.constraints, box_inst.interface])
            rng = derive_rng(seed, *rng_scope, "wire", junction.id, wire.port)
            h = search.choose(
                overlap,
                box_inst,
                constraints,
                rng,
                monic=junction.monic,
                budget=budget,
                direction=Direction.EMBEDDING,
            )
            legs.append(Leg(junction=junction.id, box=port.box, map=h))
    interface = union_constraints([p.constraints for p in wiring.ports])
    return glue(schema, instances, legs, overlaps, interface=interface)


class AdditiveStream(InstanceStream):
    """Lazy sequence of composites, one per admissible tuple of box draws."""

    def __init__(
        self,
        key: StreamKey,
        schema: Schema,
        wiring: WiringPattern,
        boxes: Sequence[InstanceStream],
        *,
        search: Optional[HomomorphismSearch] = None,
        seed: int = 0,
        budget: SearchBudget = UNBOUNDED,
    ) -> None:
        super().__init__(key)
        if len(boxes) != len(wiring.boxes):
            raise ValueError(f"{key}: expected {len(wiring.boxes)} box streams, got {len(boxes)}")
        self.schema = schema
        self.wiring = wiring
        self.boxes = list(boxes)
        self.search = search or DefaultHomomorphismSearch()
        self.seed = int(seed)
        self.budget = budget
        self._cursor: List[int] = [0] * len(boxes)
        self._origin: List[Coordinates] = []
        self._skips = 0
        self.rejected = 0

    def _normalize(self, cursor: List[int]) -> Optional[Coordinates]:
        """Carry exhausted positions leftwards; None once the outermost box runs out."""
        c = list(cursor)
        n = len(c)
        while True:
            for k in range(n):
                if self.boxes[k].get(c[k]) is None:
                    if k == 0 or c[k] == 0:
                        return None
                    c[k - 1] += 1
                    for j in range(k, n):
                        c[j] = 0
                    break
            else:
                return tuple(c)

    def _compose(self, coords: Coordinates) -> Optional[ModelInstanceOps]:
        instances: Dict[str, ModelInstanceOps] = {}
        for box, stream, pos in zip(self.wiring.boxes, self.boxes, coords):
            inst = stream.get(pos)
            if inst is None:
                return None
            instances[box.id] = inst
        try:
            return compose_once(
                self.schema,
                self.wiring,
                instances,
                search=self.search,
                seed=self.seed,
                rng_scope=(self.key, coords),
                budget=self.budget,
            )
        except SearchFailure as e:
            logger.debug("%s: combination %s rejected: %s", self.key, coords, e)
            return None

    def _advance(self) -> Optional[ModelInstanceOps]:
        while True:
            coords = self._normalize(self._cursor)
            if coords is None:
                return None
            self._cursor = list(coords[:-1]) + [coords[-1] + 1]
            inst = self._compose(coords)
            if inst is not None:
                self._skips = 0
                self._origin.append(coords)
                return inst
            self.rejected += 1
            self._skips += 1
            if self._skips >= self.wiring.max_consecutive_skips:
                raise LayerExhausted(self.key, self._skips)

    def _rematerialize(self, index: int) -> ModelInstanceOps:
        inst = self._compose(self._origin[index])
        if inst is None:
            raise LookupError(f"{self.key}: emission {index} can no longer be rebuilt")
        return inst

    def coordinates(self, index: int) -> Coordinates:
        return self._origin[index]

    def state_dict(self) -> Dict[str, Any]:
        d = super().state_dict()
        d.update({
            "cursor": list(self._cursor),
            "origin": [list(c) for c in self._origin],
            "skips": self._skips,
            "rejected": self.rejected,
        })
        return d

    def load_state_dict(self, state: Mapping[str, Any]) -> None:
        super().load_state_dict(state)
        self._cursor = [int(i) for i in state["cursor"]]
        self._origin = [tuple(int(i) for i in c) for c in state["origin"]]
        self._skips = int(state["skips"])
        self.rejected = int(state.get("rejected", 0))


__all__ = ["compose_once", "AdditiveStream"]
