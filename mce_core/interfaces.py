# Copyright (c) 2025 MCE Maintainers
# License: MIT
"""
Model Composition Explorer (MCE): Core typed interfaces and data models.

This module defines:
- Type aliases for identifiers
- Data models: Schema, Homomorphism, HistoryEntry, Direction
- Protocols (interfaces) for the collaborators the engine consumes:
    * ModelInstanceOps (finite realization of a Schema; implemented by a storage layer)
    * MapConstraint (restricts which source elements may map onto which target elements)
    * PrimitiveSource (leaf producer of an indexed sequence of instances)
    * DAGPrimitiveSource (a PrimitiveSource whose output is a DAG)
    * HomomorphismSearch (find / require / choose structure-preserving maps)

References:
- mce_core.instance_mem for the in-memory ModelInstanceOps backend
- mce_core.homomorphism for the default HomomorphismSearch
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any,
    Dict,
    FrozenSet,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    runtime_checkable,
)

from mce_core.errors import SchemaMismatchError

# ---------- Type aliases and identifiers ----------

EntityName = str
RelationName = str
Element = str  # element ids are plain strings, unique per entity
GeneratorId = str
StreamKey = str  # "<generator id>" or "<generator id>@<referrer id>"
Score = float
Coordinates = Tuple[int, ...]


# ---------- Entities ----------


@dataclass(frozen=True)
class Schema:
    """Typed entities and total functions between them, shared by a whole search space."""
    entities: Tuple[EntityName, ...]
    relations: Mapping[RelationName, Tuple[EntityName, EntityName]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        ents = tuple(self.entities)
        if len(set(ents)) != len(ents):
            raise SchemaMismatchError(f"duplicate entity names in schema: {list(ents)}")
        rels: Dict[RelationName, Tuple[EntityName, EntityName]] = {}
        for name, ends in dict(self.relations).items():
            dom, cod = tuple(ends)
            if dom not in ents or cod not in ents:
                raise SchemaMismatchError(f"relation {name!r} refers to unknown entity ({dom!r} -> {cod!r})")
            rels[str(name)] = (dom, cod)
        object.__setattr__(self, "entities", ents)
        object.__setattr__(self, "relations", rels)

    def __hash__(self) -> int:
        return hash((self.entities, tuple(sorted(self.relations.items()))))

    def relations_from(self, entity: EntityName) -> Tuple[RelationName, ...]:
        return tuple(sorted(r for r, (dom, _) in self.relations.items() if dom == entity))

    def relations_into(self, entity: EntityName) -> Tuple[RelationName, ...]:
        return tuple(sorted(r for r, (_, cod) in self.relations.items() if cod == entity))

    def to_jsonable(self) -> Dict[str, Any]:
        return {"entities": list(self.entities), "relations": {r: list(e) for r, e in sorted(self.relations.items())}}


class Direction(str, Enum):
    """Which side of a composition a homomorphism call serves."""
    EMBEDDING = "embedding"  # junction overlap -> box instance (additive)
    SLICING = "slicing"      # dimension instance -> shared base (multiplicative)


@dataclass(frozen=True)
class Homomorphism:
    """
    Structure-preserving map between two model instances.

    Components are stored canonically as sorted nested tuples so that maps are
    hashable, comparable and have a stable sort order for reproducible selection.
    """
    source_key: str
    target_key: str
    components: Tuple[Tuple[EntityName, Tuple[Tuple[Element, Element], ...]], ...]

    @classmethod
    def from_components(
        cls,
        source_key: str,
        target_key: str,
        components: Mapping[EntityName, Mapping[Element, Element]],
    ) -> "Homomorphism":
        canon = tuple(
            (ent, tuple(sorted(comp.items())))
            for ent, comp in sorted(components.items())
        )
        return cls(source_key=source_key, target_key=target_key, components=canon)

    def component(self, entity: EntityName) -> Dict[Element, Element]:
        for ent, pairs in self.components:
            if ent == entity:
                return dict(pairs)
        return {}

    def __call__(self, entity: EntityName, element: Element) -> Element:
        return self.component(entity)[element]

    def sort_key(self) -> Tuple[Any, ...]:
        return self.components

    def to_jsonable(self) -> Dict[str, Any]:
        return {ent: dict(pairs) for ent, pairs in self.components}


@dataclass(frozen=True)
class HistoryEntry:
    """One emitted (instance index, score) pair of a generator's loss history."""
    index: int
    score: Score

    def to_jsonable(self) -> Dict[str, Any]:
        return {"index": self.index, "score": self.score}


# ---------- Protocols (interfaces) ----------


@runtime_checkable
class ModelInstanceOps(Protocol):
    """Immutable finite realization of a Schema."""

    @property
    def schema(self) -> Schema:
        ...

    @property
    def interface(self) -> Tuple["MapConstraint", ...]:
        """Constraints exposed to enclosing layers (propagated by additive gluing)."""
        ...

    def elements(self, entity: EntityName) -> Tuple[Element, ...]:
        """Sorted element ids of an entity."""
        ...

    def apply(self, relation: RelationName, element: Element) -> Element:
        """Image of an element under a relation."""
        ...

    def tags(self, entity: EntityName, element: Element) -> FrozenSet[str]:
        ...

    def identity_key(self) -> str:
        """Stable structural identity, used for visited-set keys."""
        ...


@runtime_checkable
class MapConstraint(Protocol):
    """Predicate restricting which source elements may map onto which target elements."""

    entity: EntityName

    def admits(
        self,
        source: ModelInstanceOps,
        source_element: Element,
        target: ModelInstanceOps,
        target_element: Element,
    ) -> bool:
        ...

    def to_jsonable(self) -> Dict[str, Any]:
        ...


@runtime_checkable
class PrimitiveSource(Protocol):
    """Leaf producer of an indexed, possibly infinite, sequence of instances."""

    def get(self, index: int) -> Optional[ModelInstanceOps]:
        """Return the instance at position `index`, or None past the end."""
        ...


@runtime_checkable
class DAGPrimitiveSource(PrimitiveSource, Protocol):
    """Primitive whose output is a DAG rather than a path."""

    def successors(self, index: int) -> Sequence[int]:
        ...


@runtime_checkable
class HomomorphismSearch(Protocol):
    """Find structure-preserving maps between instances under interface constraints."""

    def find(
        self,
        source: ModelInstanceOps,
        target: ModelInstanceOps,
        constraints: Sequence[MapConstraint] = (),
        *,
        monic: bool = False,
        budget: Optional[Any] = None,
        direction: Direction = Direction.EMBEDDING,
    ) -> FrozenSet[Homomorphism]:
        """Return every admissible map; empty if none exist."""
        ...

    def choose(
        self,
        source: ModelInstanceOps,
        target: ModelInstanceOps,
        constraints: Sequence[MapConstraint],
        rng: Any,
        *,
        monic: bool = False,
        budget: Optional[Any] = None,
        direction: Direction = Direction.EMBEDDING,
    ) -> Homomorphism:
        """Pick exactly one admissible map uniformly at random; raise NoHomomorphism if none."""
        ...


def check_same_schema(a: Schema, b: Schema, what: str = "instance") -> None:
    if a != b:
        raise SchemaMismatchError(f"{what} schema mismatch: {a.to_jsonable()} != {b.to_jsonable()}")


__all__ = [
    # Types
    "EntityName",
    "RelationName",
    "Element",
    "GeneratorId",
    "StreamKey",
    "Score",
    "Coordinates",
    # Entities
    "Schema",
    "Direction",
    "Homomorphism",
    "HistoryEntry",
    # Protocols
    "ModelInstanceOps",
    "MapConstraint",
    "PrimitiveSource",
    "DAGPrimitiveSource",
    "HomomorphismSearch",
    # Helpers
    "check_same_schema",
]
