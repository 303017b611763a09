# Copyright (c) 2025 MCE Maintainers
# License: MIT
"""
Generator declarations: static configuration nodes of a search space.

A declaration is a closed tagged variant:
- kind "primitive"      -> PrimitiveSpec (leaf producer)
- kind "additive"       -> WiringPattern (Box / Port / Junction / Wire gluing)
- kind "multiplicative" -> ProductSpec (dimensions sliced over a shared base)

Declarations are immutable and refer to other generators by id only; the dependency
graph is an arena of ids checked for acyclicity once by mce_core.scheduler.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Literal, Mapping, NoReturn, Optional, Sequence, Tuple, Union

from mce_core.constraints import OutputConstraint
from mce_core.errors import ConfigError, DanglingReferenceError, SelfGluingError
from mce_core.interfaces import GeneratorId, MapConstraint, ModelInstanceOps, PrimitiveSource, Schema, check_same_schema
from mce_core.loss import LossSpec

GeneratorKind = Literal["primitive", "additive", "multiplicative"]
SharingPolicy = Literal["shared", "reentrant"]

GENERATOR_KINDS: Tuple[str, ...] = ("primitive", "additive", "multiplicative")
SHARING_POLICIES: Tuple[str, ...] = ("shared", "reentrant")

DEFAULT_MAX_CONSECUTIVE_SKIPS = 1000


def unreachable_kind(kind: object) -> NoReturn:
    raise AssertionError(f"unhandled generator kind {kind!r}")


# -------------------------
# Primitive
# -------------------------


@dataclass(frozen=True)
class PrimitiveSpec:
    """Leaf generator; `factory(**params)` builds a fresh PrimitiveSource per stream."""
    source_name: str
    factory: Callable[..., PrimitiveSource] = field(compare=False, repr=False)
    params: Mapping[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_source(cls, source: PrimitiveSource, name: str = "inline") -> "PrimitiveSpec":
        return cls(source_name=name, factory=lambda: source)

    def make_source(self) -> PrimitiveSource:
        return self.factory(**dict(self.params))


# -------------------------
# Additive (wiring pattern)
# -------------------------


@dataclass(frozen=True)
class Box:
    id: str
    generator: GeneratorId


@dataclass(frozen=True)
class Port:
    id: str
    box: str
    constraints: Tuple[MapConstraint, ...] = ()


@dataclass(frozen=True)
class Junction:
    id: str
    overlap: Optional[ModelInstanceOps] = field(default=None, compare=False)
    monic: bool = False


@dataclass(frozen=True)
class Wire:
    port: str
    junction: str


@dataclass(frozen=True)
class WiringPattern:
    boxes: Tuple[Box, ...]
    ports: Tuple[Port, ...] = ()
    junctions: Tuple[Junction, ...] = ()
    wires: Tuple[Wire, ...] = ()
    allow_self_gluing: bool = False
    max_consecutive_skips: int = DEFAULT_MAX_CONSECUTIVE_SKIPS

    def dependencies(self) -> Tuple[GeneratorId, ...]:
        return tuple(dict.fromkeys(b.generator for b in self.boxes))

    def port(self, port_id: str) -> Port:
        for p in self.ports:
            if p.id == port_id:
                return p
        raise KeyError(port_id)

    def active_junctions(self) -> Tuple[Junction, ...]:
        """Junctions with at least one incident wire; the others contribute nothing."""
        wired = {w.junction for w in self.wires}
        return tuple(j for j in self.junctions if j.id in wired)

    def validate(self, schema: Schema, known: Sequence[GeneratorId], location: str = "wiring") -> None:
        for what, items in (("box", self.boxes), ("port", self.ports), ("junction", self.junctions)):
            dupes = sorted(k for k, n in Counter(i.id for i in items).items() if n > 1)
            if dupes:
                raise ConfigError(f"duplicate {what} ids: {dupes}", location)
        if not self.boxes:
            raise ConfigError("additive generator needs at least one box", f"{location}.boxes")
        if self.max_consecutive_skips < 1:
            raise ConfigError("max_consecutive_skips must be >= 1", location)

        known_set = set(known)
        box_ids = {b.id for b in self.boxes}
        for i, b in enumerate(self.boxes):
            if b.generator not in known_set:
                raise DanglingReferenceError(f"box {b.id!r} references unknown generator {b.generator!r}", f"{location}.boxes[{i}].generator")
        for i, p in enumerate(self.ports):
            if p.box not in box_ids:
                raise DanglingReferenceError(f"port {p.id!r} attached to unknown box {p.box!r}", f"{location}.ports[{i}].box")
        for i, j in enumerate(self.junctions):
            if j.overlap is not None:
                check_same_schema(schema, j.overlap.schema, f"{location}.junctions[{i}].overlap")

        port_box = {p.id: p.box for p in self.ports}
        junction_ids = {j.id for j in self.junctions}
        seen: Dict[Tuple[str, str], int] = {}
        by_junction_box: Dict[Tuple[str, str], str] = {}
        for i, w in enumerate(self.wires):
            loc = f"{location}.wires[{i}]"
            if w.port not in port_box:
                raise DanglingReferenceError(f"wire references unknown port {w.port!r}", f"{loc}.port")
            if w.junction not in junction_ids:
                raise DanglingReferenceError(f"wire references unknown junction {w.junction!r}", f"{loc}.junction")
            if (w.port, w.junction) in seen:
                raise ConfigError(f"duplicate wire {w.port!r} -> {w.junction!r} (see wires[{seen[(w.port, w.junction)]}])", loc)
            seen[(w.port, w.junction)] = i
            key = (w.junction, port_box[w.port])
            other = by_junction_box.get(key)
            if other is not None and not self.allow_self_gluing:
                raise SelfGluingError(
                    f"ports {other!r} and {w.port!r} of box {port_box[w.port]!r} are both wired to junction {w.junction!r}; "
                    "set allow_self_gluing to permit this",
                    loc,
                )
            by_junction_box.setdefault(key, w.port)


# -------------------------
# Multiplicative (product spec)
# -------------------------


@dataclass(frozen=True)
class ProductSpec:
    dimensions: Tuple[GeneratorId, ...]
    base: Optional[ModelInstanceOps] = field(default=None, compare=False)
    expand_inadmissible: bool = True
    monic: bool = False
    max_consecutive_skips: int = DEFAULT_MAX_CONSECUTIVE_SKIPS

    def dependencies(self) -> Tuple[GeneratorId, ...]:
        return tuple(dict.fromkeys(self.dimensions))

    def validate(self, schema: Schema, known: Sequence[GeneratorId], location: str = "product") -> None:
        if not self.dimensions:
            raise ConfigError("multiplicative generator needs at least one dimension", f"{location}.dimensions")
        if self.max_consecutive_skips < 1:
            raise ConfigError("max_consecutive_skips must be >= 1", location)
        known_set = set(known)
        for i, d in enumerate(self.dimensions):
            if d not in known_set:
                raise DanglingReferenceError(f"unknown dimension generator {d!r}", f"{location}.dimensions[{i}]")
        if self.base is not None:
            check_same_schema(schema, self.base.schema, f"{location}.base")


# -------------------------
# Declaration
# -------------------------


GeneratorBody = Union[PrimitiveSpec, WiringPattern, ProductSpec]

_BODY_TYPES: Dict[str, type] = {
    "primitive": PrimitiveSpec,
    "additive": WiringPattern,
    "multiplicative": ProductSpec,
}


@dataclass(frozen=True)
class GeneratorDecl:
    id: GeneratorId
    kind: GeneratorKind
    body: GeneratorBody
    constraints: Tuple[OutputConstraint, ...] = ()
    loss: Optional[LossSpec] = None
    sharing: Optional[SharingPolicy] = None

    def __post_init__(self) -> None:
        if self.kind not in _BODY_TYPES:
            raise ConfigError(f"unknown generator kind {self.kind!r}; expected one of {list(GENERATOR_KINDS)}", self.id)
        if not isinstance(self.body, _BODY_TYPES[self.kind]):
            raise ConfigError(f"{self.kind} generator needs a {_BODY_TYPES[self.kind].__name__} body", self.id)
        if self.sharing is not None and self.sharing not in SHARING_POLICIES:
            raise ConfigError(f"sharing must be one of {list(SHARING_POLICIES)}, got {self.sharing!r}", self.id)

    @property
    def is_composite(self) -> bool:
        return self.kind != "primitive"

    def dependencies(self) -> Tuple[GeneratorId, ...]:
        kind = self.kind
        if kind == "primitive":
            return ()
        elif kind == "additive":
            assert isinstance(self.body, WiringPattern)
            return self.body.dependencies()
        elif kind == "multiplicative":
            assert isinstance(self.body, ProductSpec)
            return self.body.dependencies()
        unreachable_kind(kind)


# -------------------------
# Convenience constructors
# -------------------------


def primitive(
    gid: GeneratorId,
    source: PrimitiveSource,
    *,
    constraints: Sequence[OutputConstraint] = (),
    loss: Optional[LossSpec] = None,
    sharing: Optional[SharingPolicy] = None,
) -> GeneratorDecl:
    return GeneratorDecl(gid, "primitive", PrimitiveSpec.from_source(source, gid), tuple(constraints), loss, sharing)


def additive(
    gid: GeneratorId,
    wiring: WiringPattern,
    *,
    constraints: Sequence[OutputConstraint] = (),
    loss: Optional[LossSpec] = None,
    sharing: Optional[SharingPolicy] = None,
) -> GeneratorDecl:
    return GeneratorDecl(gid, "additive", wiring, tuple(constraints), loss, sharing)


def multiplicative(
    gid: GeneratorId,
    product: ProductSpec,
    *,
    constraints: Sequence[OutputConstraint] = (),
    loss: Optional[LossSpec] = None,
    sharing: Optional[SharingPolicy] = None,
) -> GeneratorDecl:
    return GeneratorDecl(gid, "multiplicative", product, tuple(constraints), loss, sharing)


__all__ = [
    "GeneratorKind",
    "SharingPolicy",
    "GENERATOR_KINDS",
    "SHARING_POLICIES",
    "DEFAULT_MAX_CONSECUTIVE_SKIPS",
    "unreachable_kind",
    "PrimitiveSpec",
    "Box",
    "Port",
    "Junction",
    "Wire",
    "WiringPattern",
    "ProductSpec",
    "GeneratorBody",
    "GeneratorDecl",
    "primitive",
    "additive",
    "multiplicative",
]
