# Copyright (c) 2025 MCE Maintainers
# License: MIT
"""
Dependency scheduler: validated, acyclic arena of generator declarations.

build(declarations) checks, in order:
- duplicate generator ids
- wiring patterns / product specs (dangling ids, self-gluing, schema of overlaps and bases)
- acyclicity of the dependency graph (CycleError carries the cycle path)
- a single root, unless multiple roots are explicitly allowed (MultipleRootsError)
- an explicit sharing policy for every generator referenced by more than one composite

The resulting Schedule exposes a leaves-first pull order and builds streams on demand
through a StreamGraph. Stream keys are the generator id for shared or single-referrer
generators and "<id>@<referrer key>" for reentrant expansions.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import networkx as nx

from mce_core.additive import AdditiveStream
from mce_core.errors import (
    ConfigError,
    CycleError,
    DanglingReferenceError,
    MultipleRootsError,
    SharingPolicyError,
)
from mce_core.generators import GeneratorDecl, PrimitiveSpec, ProductSpec, WiringPattern, unreachable_kind
from mce_core.homomorphism import UNBOUNDED, DefaultHomomorphismSearch, SearchBudget
from mce_core.interfaces import GeneratorId, HistoryEntry, HomomorphismSearch, Schema, StreamKey
from mce_core.loss import LossContext, LossEvaluator
from mce_core.multiplicative import ProductStream
from mce_core.streams import DEFAULT_CACHE_SIZE, ConstrainedStream, InstanceStream, LossGatedStream, PrimitiveStream

logger = logging.getLogger(__name__)


# -------------------------
# Schedule
# -------------------------


@dataclass(frozen=True)
class Schedule:
    """
    Validated search space.

    graph: edges composite -> dependency (generator ids only)
    pull_order: leaves first, ties broken by id
    roots: generators with no dependents, sorted
    """
    schema: Schema
    declarations: Mapping[GeneratorId, GeneratorDecl]
    graph: nx.DiGraph
    pull_order: Tuple[GeneratorId, ...]
    roots: Tuple[GeneratorId, ...]

    @property
    def root(self) -> GeneratorId:
        return self.roots[0]

    def referrers(self, gid: GeneratorId) -> Tuple[GeneratorId, ...]:
        return tuple(sorted(self.graph.predecessors(gid)))

    def dependencies(self, gid: GeneratorId) -> Tuple[GeneratorId, ...]:
        return self.declarations[gid].dependencies()

    def streams(
        self,
        *,
        seed: int = 0,
        search: Optional[HomomorphismSearch] = None,
        budget: SearchBudget = UNBOUNDED,
        cache_size: Optional[int] = DEFAULT_CACHE_SIZE,
    ) -> "StreamGraph":
        return StreamGraph(self, seed=seed, search=search, budget=budget, cache_size=cache_size)


def build(
    declarations: Sequence[GeneratorDecl],
    schema: Schema,
    *,
    allow_multiple_roots: bool = False,
) -> Schedule:
    """Validate declarations and return a Schedule; nothing is built on failure."""
    counts = Counter(d.id for d in declarations)
    dupes = sorted(k for k, n in counts.items() if n > 1)
    if dupes:
        raise ConfigError(f"duplicate generator ids: {dupes}", "generators")
    if not declarations:
        raise ConfigError("at least one generator is required", "generators")

    known = [d.id for d in declarations]
    for i, decl in enumerate(declarations):
        loc = f"generators[{i}]"
        body = decl.body
        if decl.kind == "primitive":
            continue
        elif decl.kind == "additive":
            assert isinstance(body, WiringPattern)
            body.validate(schema, known, f"{loc}.wiring")
        elif decl.kind == "multiplicative":
            assert isinstance(body, ProductSpec)
            body.validate(schema, known, f"{loc}.product")
        else:
            unreachable_kind(decl.kind)

    graph = nx.DiGraph()
    graph.add_nodes_from(known)
    for decl in declarations:
        for dep in decl.dependencies():
            if dep not in counts:
                raise DanglingReferenceError(f"{decl.id!r} depends on unknown generator {dep!r}", decl.id)
            graph.add_edge(decl.id, dep)

    if not nx.is_directed_acyclic_graph(graph):
        edges = nx.find_cycle(graph)
        path = [u for u, _ in edges]
        raise CycleError(path, "generators")

    roots = tuple(sorted(n for n in graph.nodes if graph.in_degree(n) == 0))
    if len(roots) > 1 and not allow_multiple_roots:
        raise MultipleRootsError(roots, "generators")

    index = {d.id: i for i, d in enumerate(declarations)}
    for decl in declarations:
        if graph.in_degree(decl.id) > 1 and decl.sharing is None:
            referrers = sorted(graph.predecessors(decl.id))
            raise SharingPolicyError(
                f"generator {decl.id!r} is referenced by {referrers}; declare sharing: shared or reentrant",
                f"generators[{index[decl.id]}].sharing",
            )

    # reverse edges so dependencies come first
    pull_order = tuple(nx.lexicographical_topological_sort(graph.reverse(copy=True)))
    logger.debug("schedule: pull order %s, roots %s", pull_order, roots)
    return Schedule(
        schema=schema,
        declarations={d.id: d for d in declarations},
        graph=graph,
        pull_order=pull_order,
        roots=roots,
    )


# -------------------------
# Stream graph (runtime)
# -------------------------


class StreamGraph:
    """
    Runtime streams for a Schedule, built on first demand.

    Each stream key maps to its layers: the raw stream, then an optional ConstrainedStream,
    then an optional LossGatedStream; the last layer is what referrers draw from.
    """

    def __init__(
        self,
        schedule: Schedule,
        *,
        seed: int = 0,
        search: Optional[HomomorphismSearch] = None,
        budget: SearchBudget = UNBOUNDED,
        cache_size: Optional[int] = DEFAULT_CACHE_SIZE,
    ) -> None:
        self.schedule = schedule
        self.seed = int(seed)
        self.search = search or DefaultHomomorphismSearch()
        self.budget = budget
        self.cache_size = cache_size
        self._layers: Dict[StreamKey, List[InstanceStream]] = {}
        self._generator: Dict[StreamKey, GeneratorId] = {}
        self._children: Dict[StreamKey, Dict[GeneratorId, StreamKey]] = {}

    # ---- Keys ----

    def key_for(self, gid: GeneratorId, referrer: Optional[StreamKey] = None) -> StreamKey:
        decl = self.schedule.declarations[gid]
        if referrer is not None and decl.sharing == "reentrant":
            return f"{gid}@{referrer}"
        return gid

    def keys(self) -> Tuple[StreamKey, ...]:
        return tuple(self._layers)

    # ---- Construction ----

    def stream(self, gid: GeneratorId, referrer: Optional[StreamKey] = None) -> InstanceStream:
        if gid not in self.schedule.declarations:
            raise KeyError(gid)
        key = self.key_for(gid, referrer)
        layers = self._layers.get(key)
        if layers is None:
            layers = self._build(gid, key)
            self._layers[key] = layers
            self._generator[key] = gid
        return layers[-1]

    def root_stream(self, root: Optional[GeneratorId] = None) -> InstanceStream:
        return self.stream(root if root is not None else self.schedule.root)

    def _build(self, gid: GeneratorId, key: StreamKey) -> List[InstanceStream]:
        decl = self.schedule.declarations[gid]
        schema = self.schedule.schema
        children: Dict[GeneratorId, StreamKey] = {}

        def child(dep: GeneratorId) -> InstanceStream:
            s = self.stream(dep, key)
            children[dep] = s.key
            return s

        raw: InstanceStream
        body = decl.body
        if decl.kind == "primitive":
            assert isinstance(body, PrimitiveSpec)
            raw = PrimitiveStream(key, body.make_source())
        elif decl.kind == "additive":
            assert isinstance(body, WiringPattern)
            boxes = [child(b.generator) for b in body.boxes]
            raw = AdditiveStream(key, schema, body, boxes, search=self.search, seed=self.seed, budget=self.budget)
        elif decl.kind == "multiplicative":
            assert isinstance(body, ProductSpec)
            dims = [child(d) for d in body.dimensions]
            raw = ProductStream(key, schema, body, dims, search=self.search, seed=self.seed, budget=self.budget)
        else:
            unreachable_kind(decl.kind)
        self._children[key] = children

        layers: List[InstanceStream] = [raw]
        if decl.constraints:
            layers.append(ConstrainedStream(key, layers[-1], decl.constraints))
        if decl.loss is not None:
            layers.append(LossGatedStream(key, layers[-1], LossEvaluator(decl.loss), self._context_for(gid, key)))
        for layer in layers:
            layer.cache_size = self.cache_size
        logger.debug("built stream %s (%s, %d layer(s))", key, decl.kind, len(layers))
        return layers

    def _context_for(self, gid: GeneratorId, key: StreamKey):
        def context() -> LossContext:
            return LossContext(gid, {dep: self.history(k) for dep, k in self._children.get(key, {}).items()})

        return context

    # ---- Inspection ----

    def history(self, key: StreamKey) -> Tuple[HistoryEntry, ...]:
        layers = self._layers.get(key)
        return layers[-1].history if layers else ()

    def histories(self) -> Dict[StreamKey, Tuple[HistoryEntry, ...]]:
        return {k: self.history(k) for k in self._layers}

    def generator_of(self, key: StreamKey) -> GeneratorId:
        return self._generator[key]

    def emitted_counts(self) -> Dict[StreamKey, int]:
        return {k: layers[-1].emitted_count for k, layers in self._layers.items()}

    # ---- Checkpointing ----

    def state_dict(self) -> Dict[str, Any]:
        return {key: [layer.state_dict() for layer in layers] for key, layers in self._layers.items()}

    def load_state_dict(self, state: Mapping[str, Any], root: Optional[GeneratorId] = None) -> None:
        """Rebuild the stream tree under `root` and restore every layer's position state."""
        self.root_stream(root)
        unknown = sorted(set(state) - set(self._layers))
        if unknown:
            raise ValueError(f"checkpoint holds state for unknown streams: {unknown}")
        for key, layer_states in state.items():
            layers = self._layers[key]
            if len(layer_states) != len(layers):
                raise ValueError(f"{key}: checkpoint holds {len(layer_states)} layer(s), expected {len(layers)}")
            for layer, s in zip(layers, layer_states):
                layer.load_state_dict(s)


__all__ = ["Schedule", "build", "StreamGraph"]
