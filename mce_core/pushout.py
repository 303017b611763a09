# Copyright (c) 2025 MCE Maintainers
# License: MIT
"""
Colimit ("pushout") of a gluing diagram.

Diagram:
- components: box id -> box instance
- legs: (junction id, box id, map overlap -> box instance)

Construction:
1) Disjoint union of the box instances. Element names are kept when there is a single
   box, otherwise prefixed "<box>.<element>" with "\\" and "." escaped inside both parts.
2) For every junction element, all of its images (one per leg) are identified.
3) The identification is closed under relation congruence: if x ~ y then r(x) ~ r(y),
   so relations stay well-defined on classes (union-find, iterated to a fixpoint).
4) Each class is named by its smallest member name; tags are unioned.

The result carries the supplied exposed interface. A single component with no
identifications and no interface is returned unchanged (same object).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Mapping, Sequence, Set, Tuple

from mce_core.instance_mem import InMemoryModelInstance
from mce_core.interfaces import (
    Element,
    EntityName,
    Homomorphism,
    MapConstraint,
    ModelInstanceOps,
    Schema,
    check_same_schema,
)

Node = Tuple[str, Element]  # (box id, element)

_ESCAPED = str.maketrans({"\\": "\\\\", ".": "\\."})


def _escape(part: str) -> str:
    return part.translate(_ESCAPED)


@dataclass(frozen=True)
class Leg:
    junction: str
    box: str
    map: Homomorphism


class _UnionFind:
    def __init__(self) -> None:
        self.parent: Dict[Node, Node] = {}

    def add(self, n: Node) -> None:
        self.parent.setdefault(n, n)

    def find(self, n: Node) -> Node:
        root = n
        while self.parent[root] != root:
            root = self.parent[root]
        while self.parent[n] != root:
            self.parent[n], n = root, self.parent[n]
        return root

    def union(self, a: Node, b: Node) -> bool:
        ra, rb = self.find(a), self.find(b)
        if ra == rb:
            return False
        if rb < ra:
            ra, rb = rb, ra
        self.parent[rb] = ra
        return True


def glue(
    schema: Schema,
    components: Mapping[str, ModelInstanceOps],
    legs: Sequence[Leg],
    overlaps: Mapping[str, ModelInstanceOps],
    *,
    interface: Sequence[MapConstraint] = (),
) -> ModelInstanceOps:
    """Compute the pushout of the diagram; see module docstring."""
    for box_id, inst in components.items():
        check_same_schema(schema, inst.schema, f"box {box_id!r}")
    boxes = sorted(components)
    single = len(boxes) == 1

    ufs: Dict[EntityName, _UnionFind] = {ent: _UnionFind() for ent in schema.entities}
    for b in boxes:
        for ent in schema.entities:
            for x in components[b].elements(ent):
                ufs[ent].add((b, x))

    identified = False
    for ent in schema.entities:
        images: Dict[Tuple[str, Element], List[Node]] = {}
        for leg in legs:
            comp = leg.map.component(ent)
            for y in overlaps[leg.junction].elements(ent):
                images.setdefault((leg.junction, y), []).append((leg.box, comp[y]))
        for nodes in images.values():
            for other in nodes[1:]:
                identified |= ufs[ent].union(nodes[0], other)

    # congruence closure
    changed = True
    while changed:
        changed = False
        for rel, (dom, cod) in sorted(schema.relations.items()):
            seen: Dict[Node, Node] = {}
            for b in boxes:
                inst = components[b]
                for x in inst.elements(dom):
                    root = ufs[dom].find((b, x))
                    img = ufs[cod].find((b, inst.apply(rel, x)))
                    prev = seen.setdefault(root, img)
                    if prev != img and ufs[cod].union(prev, img):
                        changed = identified = True
                        seen[root] = ufs[cod].find(img)

    interface = tuple(interface)
    if single and not identified:
        only = components[boxes[0]]
        if not interface:
            return only
        if isinstance(only, InMemoryModelInstance):
            return only.with_interface(interface)

    def raw_name(n: Node) -> str:
        return n[1] if single else f"{_escape(n[0])}.{_escape(n[1])}"

    names: Dict[EntityName, Dict[Node, str]] = {}
    elements: Dict[EntityName, List[str]] = {}
    tags: Dict[EntityName, Dict[str, Set[str]]] = {}
    for ent in schema.entities:
        classes: Dict[Node, List[Node]] = {}
        for n in ufs[ent].parent:
            classes.setdefault(ufs[ent].find(n), []).append(n)
        ent_names: Dict[Node, str] = {}
        for root, members in classes.items():
            ent_names[root] = min(raw_name(m) for m in members)
            tagset: Set[str] = set()
            for b, x in members:
                tagset |= components[b].tags(ent, x)
            if tagset:
                tags.setdefault(ent, {})[ent_names[root]] = tagset
        names[ent] = ent_names
        elements[ent] = sorted(ent_names.values())

    relations: Dict[str, Dict[str, str]] = {}
    for rel, (dom, cod) in schema.relations.items():
        fn: Dict[str, str] = {}
        for b in boxes:
            inst = components[b]
            for x in inst.elements(dom):
                src = names[dom][ufs[dom].find((b, x))]
                fn[src] = names[cod][ufs[cod].find((b, inst.apply(rel, x)))]
        relations[rel] = fn

    return InMemoryModelInstance(schema, elements, relations, tags, interface=interface, label="pushout")


__all__ = ["Leg", "glue"]
