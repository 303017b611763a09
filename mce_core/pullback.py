# Copyright (c) 2025 MCE Maintainers
# License: MIT
"""
Limit ("pullback") of per-dimension slices over a shared base.

Given dimension instances D_1..D_n and slices h_i: D_i -> B, the product instance has,
per entity, every tuple (x_1, ..., x_n) whose slices agree in B (h_1(x_1) == ... == h_n(x_n)).
Relations act componentwise, which is well-defined because slices commute with relations.
Over the terminal base this is the plain product.

Naming: tuples are written "(x1,x2,...)" with backslash escapes for "\\", ",", "(" and ")" inside
a component, so distinct tuples never share a name. A single dimension keeps its instance
unchanged.
Tags of a tuple are the tags shared by all of its components.
"""

from __future__ import annotations

import itertools
from typing import Dict, List, Sequence, Set, Tuple

from mce_core.instance_mem import InMemoryModelInstance
from mce_core.interfaces import (
    Element,
    EntityName,
    Homomorphism,
    ModelInstanceOps,
    Schema,
    check_same_schema,
)


_ESCAPED = str.maketrans({"\\": "\\\\", ",": "\\,", "(": "\\(", ")": "\\)"})


def _tuple_name(parts: Sequence[Element]) -> str:
    return "(" + ",".join(p.translate(_ESCAPED) for p in parts) + ")"


def fiber_product(
    schema: Schema,
    dimensions: Sequence[ModelInstanceOps],
    slices: Sequence[Homomorphism],
    base: ModelInstanceOps,
) -> ModelInstanceOps:
    """Compute the pullback of `slices` (one per dimension) over `base`."""
    if len(dimensions) != len(slices):
        raise ValueError("one slice per dimension is required")
    if not dimensions:
        return base
    for i, d in enumerate(dimensions):
        check_same_schema(schema, d.schema, f"dimension {i}")
    if len(dimensions) == 1:
        return dimensions[0]

    elements: Dict[EntityName, List[str]] = {}
    members: Dict[EntityName, Dict[str, Tuple[Element, ...]]] = {}
    tags: Dict[EntityName, Dict[str, Set[str]]] = {}
    for ent in schema.entities:
        # fibers[i][b] -> elements of dimension i over base element b
        fibers: List[Dict[Element, List[Element]]] = []
        for d, h in zip(dimensions, slices):
            comp = h.component(ent)
            per_base: Dict[Element, List[Element]] = {}
            for x in d.elements(ent):
                per_base.setdefault(comp[x], []).append(x)
            fibers.append(per_base)
        ent_members: Dict[str, Tuple[Element, ...]] = {}
        for b in base.elements(ent):
            for combo in itertools.product(*(f.get(b, []) for f in fibers)):
                name = _tuple_name(combo)
                ent_members[name] = tuple(combo)
                shared = set(dimensions[0].tags(ent, combo[0]))
                for d, x in zip(dimensions[1:], combo[1:]):
                    shared &= d.tags(ent, x)
                if shared:
                    tags.setdefault(ent, {})[name] = shared
        members[ent] = ent_members
        elements[ent] = sorted(ent_members)

    relations: Dict[str, Dict[str, str]] = {}
    for rel, (dom, _cod) in schema.relations.items():
        fn: Dict[str, str] = {}
        for name, combo in members[dom].items():
            fn[name] = _tuple_name([d.apply(rel, x) for d, x in zip(dimensions, combo)])
        relations[rel] = fn

    return InMemoryModelInstance(schema, elements, relations, tags, label="pullback")


__all__ = ["fiber_product"]
