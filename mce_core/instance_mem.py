# Copyright (c) 2025 MCE Maintainers
# License: MIT
"""
In-memory ModelInstanceOps backend.

Provides:
- InMemoryModelInstance: an immutable, validated finite realization of a Schema
  suitable for CPU-based exploration and tests.
- Builders: empty(schema), terminal(schema), from_mapping(schema, data).

Notes
- Elements are strings, unique per entity; relations are total functions checked at construction.
- Optional per-element tags feed tag-based map constraints.
- identity_key() is a sha256 over the canonical JSON of elements, relations and tags;
  equality and hashing use it. The exposed interface and label are metadata and do
  not take part in identity.

References
- Protocols and entities: mce_core.interfaces
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional, Sequence, Tuple

from mce_core.errors import MissingFieldError, SchemaMismatchError
from mce_core.interfaces import (
    Element,
    EntityName,
    MapConstraint,
    ModelInstanceOps,
    RelationName,
    Schema,
)

TERMINAL_ELEMENT: Element = "*"


class InMemoryModelInstance(ModelInstanceOps):
    """
    In-memory implementation of ModelInstanceOps.

    Data structures
    - _elements: EntityName -> sorted tuple of element ids
    - _relations: RelationName -> {domain element -> codomain element}
    - _tags: EntityName -> {element -> frozenset of tags} (only tagged elements stored)
    """

    def __init__(
        self,
        schema: Schema,
        elements: Mapping[EntityName, Iterable[Element]],
        relations: Optional[Mapping[RelationName, Mapping[Element, Element]]] = None,
        tags: Optional[Mapping[EntityName, Mapping[Element, Iterable[str]]]] = None,
        *,
        interface: Sequence[MapConstraint] = (),
        label: Optional[str] = None,
    ) -> None:
        self._schema = schema
        self._interface: Tuple[MapConstraint, ...] = tuple(interface)
        self.label = label
        self._key: Optional[str] = None

        for ent in elements:
            if ent not in schema.entities:
                raise SchemaMismatchError(f"unknown entity {ent!r}")
        self._elements: Dict[EntityName, Tuple[Element, ...]] = {}
        for ent in schema.entities:
            raw = [str(x) for x in elements.get(ent, ())]
            if len(set(raw)) != len(raw):
                raise SchemaMismatchError(f"duplicate elements in entity {ent!r}")
            self._elements[ent] = tuple(sorted(raw))

        relations = dict(relations or {})
        for rel in relations:
            if rel not in schema.relations:
                raise SchemaMismatchError(f"unknown relation {rel!r}")
        self._relations: Dict[RelationName, Dict[Element, Element]] = {}
        for rel, (dom, cod) in schema.relations.items():
            fn = {str(k): str(v) for k, v in dict(relations.get(rel, {})).items()}
            dom_elems = set(self._elements[dom])
            cod_elems = set(self._elements[cod])
            missing = dom_elems - set(fn)
            if missing:
                raise SchemaMismatchError(f"relation {rel!r} undefined on {sorted(missing)}")
            extra = set(fn) - dom_elems
            if extra:
                raise SchemaMismatchError(f"relation {rel!r} defined on non-elements {sorted(extra)}")
            bad = sorted(v for v in fn.values() if v not in cod_elems)
            if bad:
                raise SchemaMismatchError(f"relation {rel!r} maps outside {cod!r}: {bad}")
            self._relations[rel] = fn

        self._tags: Dict[EntityName, Dict[Element, FrozenSet[str]]] = {}
        for ent, per_elem in dict(tags or {}).items():
            if ent not in schema.entities:
                raise SchemaMismatchError(f"tags for unknown entity {ent!r}")
            known = set(self._elements[ent])
            for elem, tset in per_elem.items():
                if str(elem) not in known:
                    raise SchemaMismatchError(f"tags for unknown element {ent}:{elem}")
                ts = frozenset(str(t) for t in tset)
                if ts:
                    self._tags.setdefault(ent, {})[str(elem)] = ts

    # ---- ModelInstanceOps ----

    @property
    def schema(self) -> Schema:
        return self._schema

    @property
    def interface(self) -> Tuple[MapConstraint, ...]:
        return self._interface

    def elements(self, entity: EntityName) -> Tuple[Element, ...]:
        return self._elements[entity]

    def apply(self, relation: RelationName, element: Element) -> Element:
        return self._relations[relation][element]

    def relation(self, relation: RelationName) -> Dict[Element, Element]:
        return dict(self._relations[relation])

    def tags(self, entity: EntityName, element: Element) -> FrozenSet[str]:
        return self._tags.get(entity, {}).get(element, frozenset())

    def identity_key(self) -> str:
        if self._key is None:
            payload = json.dumps(self._canonical(), sort_keys=True, separators=(",", ":"))
            self._key = hashlib.sha256(payload.encode("utf-8")).hexdigest()
        return self._key

    # ---- Helpers ----

    def size(self) -> int:
        """Total number of elements across entities."""
        return sum(len(v) for v in self._elements.values())

    def is_empty(self) -> bool:
        return self.size() == 0

    def with_interface(self, interface: Sequence[MapConstraint]) -> "InMemoryModelInstance":
        return InMemoryModelInstance(
            self._schema,
            self._elements,
            self._relations,
            self._tags,
            interface=tuple(interface),
            label=self.label,
        )

    def _canonical(self) -> Dict[str, Any]:
        return {
            "elements": {ent: list(elems) for ent, elems in self._elements.items()},
            "relations": {rel: dict(sorted(fn.items())) for rel, fn in self._relations.items()},
            "tags": {
                ent: {e: sorted(ts) for e, ts in sorted(per.items())}
                for ent, per in sorted(self._tags.items())
            },
        }

    def to_jsonable(self) -> Dict[str, Any]:
        d = self._canonical()
        d["interface"] = [c.to_jsonable() for c in self._interface]
        if self.label is not None:
            d["label"] = self.label
        return d

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, InMemoryModelInstance):
            return NotImplemented
        return self._schema == other._schema and self.identity_key() == other.identity_key()

    def __hash__(self) -> int:
        return hash(self.identity_key())

    def __repr__(self) -> str:
        sizes = ", ".join(f"{ent}={len(elems)}" for ent, elems in self._elements.items())
        name = f" {self.label!r}" if self.label else ""
        return f"<InMemoryModelInstance{name} {sizes}>"


# -------------------------
# Builders
# -------------------------


def empty(schema: Schema) -> InMemoryModelInstance:
    """The initial (empty) structure."""
    return InMemoryModelInstance(schema, {}, {}, label="empty")


def terminal(schema: Schema) -> InMemoryModelInstance:
    """The canonical terminal structure: one element per entity, every relation constant."""
    elements = {ent: [TERMINAL_ELEMENT] for ent in schema.entities}
    relations = {rel: {TERMINAL_ELEMENT: TERMINAL_ELEMENT} for rel in schema.relations}
    return InMemoryModelInstance(schema, elements, relations, label="terminal")


def from_mapping(
    schema: Schema,
    data: Mapping[str, Any],
    *,
    location: Optional[str] = None,
    label: Optional[str] = None,
) -> InMemoryModelInstance:
    """
    Build an instance from a plain mapping:

        {"elements": {E: [..]}, "relations": {r: {x: y}}, "tags": {E: {x: [tag, ..]}}}

    Errors are re-raised with the given location attached.
    """
    if not isinstance(data, Mapping):
        raise SchemaMismatchError("instance must be a mapping", location)
    if "elements" not in data:
        raise MissingFieldError("instance is missing 'elements'", location)
    elements = data.get("elements") or {}
    relations = data.get("relations") or {}
    tags = data.get("tags") or {}
    if not isinstance(elements, Mapping) or not isinstance(relations, Mapping) or not isinstance(tags, Mapping):
        raise SchemaMismatchError("'elements', 'relations' and 'tags' must be mappings", location)
    for ent, elems in elements.items():
        if elems is not None and not isinstance(elems, (list, tuple)):
            raise SchemaMismatchError(f"elements of {ent!r} must be a list, got {type(elems).__name__}", location)
    for rel, fn in relations.items():
        if fn is not None and not isinstance(fn, Mapping):
            raise SchemaMismatchError(f"relation {rel!r} must be a mapping, got {type(fn).__name__}", location)
    for ent, per_elem in tags.items():
        if per_elem is not None and not isinstance(per_elem, Mapping):
            raise SchemaMismatchError(f"tags of {ent!r} must be a mapping, got {type(per_elem).__name__}", location)
        for elem, tset in (per_elem or {}).items():
            if not isinstance(tset, (list, tuple)):
                raise SchemaMismatchError(f"tags of {ent}:{elem} must be a list", location)
    try:
        return InMemoryModelInstance(
            schema,
            {str(k): list(v or []) for k, v in elements.items()},
            {str(k): dict(v or {}) for k, v in relations.items()},
            {str(k): dict(v or {}) for k, v in tags.items()},
            label=label if label is not None else data.get("label"),
        )
    except SchemaMismatchError as e:
        raise SchemaMismatchError(e.message, location) from e


__all__ = ["InMemoryModelInstance", "TERMINAL_ELEMENT", "empty", "terminal", "from_mapping"]
