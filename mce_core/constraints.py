# Copyright (c) 2025 MCE Maintainers
# License: MIT
"""
Constraints used by the engine.

Map constraints (restrict homomorphism search):
- TagConstraint: source elements (optionally only those carrying `source_tag`)
  may map only onto target elements carrying `target_tag`.
- PinConstraint: one named source element must map onto one named target element.

Output constraints (applied in order to a generator's raw output):
- FilterConstraint: named predicate; the instance is dropped when it returns False.
- ChaseConstraint: named completion; returns a completed instance, or None to drop.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple, Union

from mce_core.errors import MissingFieldError, SchemaMismatchError
from mce_core.interfaces import Element, EntityName, MapConstraint, ModelInstanceOps, Schema

logger = logging.getLogger(__name__)


# -------------------------
# Map constraints
# -------------------------


@dataclass(frozen=True)
class TagConstraint:
    entity: EntityName
    target_tag: str
    source_tag: Optional[str] = None

    def admits(
        self,
        source: ModelInstanceOps,
        source_element: Element,
        target: ModelInstanceOps,
        target_element: Element,
    ) -> bool:
        if self.source_tag is not None and self.source_tag not in source.tags(self.entity, source_element):
            return True
        return self.target_tag in target.tags(self.entity, target_element)

    def to_jsonable(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"entity": self.entity, "target": self.target_tag}
        if self.source_tag is not None:
            d["source"] = self.source_tag
        return {"tag": d}


@dataclass(frozen=True)
class PinConstraint:
    entity: EntityName
    source: Element
    target: Element

    def admits(
        self,
        source: ModelInstanceOps,
        source_element: Element,
        target: ModelInstanceOps,
        target_element: Element,
    ) -> bool:
        return source_element != self.source or target_element == self.target

    def to_jsonable(self) -> Dict[str, Any]:
        return {"pin": {"entity": self.entity, "source": self.source, "target": self.target}}


def map_constraint_from_mapping(
    schema: Schema, data: Mapping[str, Any], *, location: Optional[str] = None
) -> MapConstraint:
    """Parse {"tag": {...}} or {"pin": {...}} into a map constraint."""
    if not isinstance(data, Mapping) or len(data) != 1:
        raise SchemaMismatchError("map constraint must be a single-key mapping ('tag' or 'pin')", location)
    kind, body = next(iter(data.items()))
    if not isinstance(body, Mapping):
        raise SchemaMismatchError(f"{kind!r} constraint body must be a mapping", location)
    entity = body.get("entity")
    if entity is None:
        raise MissingFieldError(f"{kind!r} constraint is missing 'entity'", location)
    if entity not in schema.entities:
        raise SchemaMismatchError(f"unknown entity {entity!r}", location)
    if kind == "tag":
        if "target" not in body:
            raise MissingFieldError("'tag' constraint is missing 'target'", location)
        src = body.get("source")
        return TagConstraint(str(entity), str(body["target"]), None if src is None else str(src))
    if kind == "pin":
        for k in ("source", "target"):
            if k not in body:
                raise MissingFieldError(f"'pin' constraint is missing {k!r}", location)
        return PinConstraint(str(entity), str(body["source"]), str(body["target"]))
    raise SchemaMismatchError(f"unknown map constraint kind {kind!r}", location)


# -------------------------
# Output constraints
# -------------------------


@dataclass(frozen=True)
class FilterConstraint:
    name: str
    predicate: Callable[..., bool] = field(compare=False, repr=False)
    params: Mapping[str, Any] = field(default_factory=dict, compare=False)

    def apply(self, instance: ModelInstanceOps) -> Optional[ModelInstanceOps]:
        return instance if self.predicate(instance, **dict(self.params)) else None


@dataclass(frozen=True)
class ChaseConstraint:
    name: str
    fn: Callable[..., Optional[ModelInstanceOps]] = field(compare=False, repr=False)
    params: Mapping[str, Any] = field(default_factory=dict, compare=False)

    def apply(self, instance: ModelInstanceOps) -> Optional[ModelInstanceOps]:
        return self.fn(instance, **dict(self.params))


OutputConstraint = Union[FilterConstraint, ChaseConstraint]


def apply_output_constraints(
    instance: ModelInstanceOps, constraints: Sequence[OutputConstraint]
) -> Optional[ModelInstanceOps]:
    """Run filters and chases in order; None means the instance was rejected."""
    current: Optional[ModelInstanceOps] = instance
    for c in constraints:
        current = c.apply(current)
        if current is None:
            logger.debug("instance rejected by %s", c.name)
            return None
    return current


def union_constraints(groups: Sequence[Sequence[MapConstraint]]) -> Tuple[MapConstraint, ...]:
    """Order-preserving union of constraint groups."""
    out: Dict[MapConstraint, None] = {}
    for g in groups:
        for c in g:
            out.setdefault(c, None)
    return tuple(out)


__all__ = [
    "TagConstraint",
    "PinConstraint",
    "FilterConstraint",
    "ChaseConstraint",
    "OutputConstraint",
    "map_constraint_from_mapping",
    "apply_output_constraints",
    "union_constraints",
]
