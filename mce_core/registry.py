# Copyright (c) 2025 MCE Maintainers
# License: MIT
"""
Named callables referenced from search-space configurations.

Four namespaces:
- "filter":    predicate(instance, **params) -> bool
- "chase":     fn(instance, **params) -> instance | None
- "objective": objective(instance, context, **params) -> float
- "source":    factory(schema, **params) -> PrimitiveSource

Names resolve against the registered entries first; anything of the form
"package.module:attr" is imported on demand.
"""

from __future__ import annotations

from importlib import import_module
from typing import Any, Callable, Dict, Optional, Tuple

from mce_core.errors import DanglingReferenceError
from mce_core.interfaces import ModelInstanceOps
from mce_core.loss import BUILTIN_OBJECTIVES
from mce_core.primitives import explicit_source, path_source

NAMESPACES: Tuple[str, ...] = ("filter", "chase", "objective", "source")


def _lazy_import(spec: str, purpose: str) -> Any:
    """Import "package.module:attr", raising DanglingReferenceError with a hint on failure."""
    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise DanglingReferenceError(f"{purpose} {spec!r} is not registered and is not a 'module:attr' path")
    try:
        module = import_module(module_name)
    except ImportError as e:
        raise DanglingReferenceError(f"cannot import module {module_name!r} for {purpose} {spec!r}: {e}") from e
    try:
        obj = getattr(module, attr)
    except AttributeError as e:
        raise DanglingReferenceError(f"module {module_name!r} has no attribute {attr!r} ({purpose})") from e
    if not callable(obj):
        raise DanglingReferenceError(f"{purpose} {spec!r} is not callable")
    return obj


class Registry:
    def __init__(self) -> None:
        self._entries: Dict[str, Dict[str, Callable[..., Any]]] = {ns: {} for ns in NAMESPACES}

    def register(self, namespace: str, name: str, fn: Optional[Callable[..., Any]] = None):
        """Register fn under name; usable as a decorator when fn is omitted."""
        if namespace not in self._entries:
            raise KeyError(f"unknown namespace {namespace!r}; expected one of {list(NAMESPACES)}")

        def deco(f: Callable[..., Any]) -> Callable[..., Any]:
            self._entries[namespace][name] = f
            return f

        return deco(fn) if fn is not None else deco

    def resolve(self, namespace: str, name: str, location: Optional[str] = None) -> Callable[..., Any]:
        entries = self._entries[namespace]
        if name in entries:
            return entries[name]
        if ":" not in name:
            known = sorted(entries)
            raise DanglingReferenceError(f"unknown {namespace} {name!r}; registered: {known}", location)
        try:
            return _lazy_import(name, namespace)
        except DanglingReferenceError as e:
            raise DanglingReferenceError(e.message, location) from e

    def names(self, namespace: str) -> Tuple[str, ...]:
        return tuple(sorted(self._entries[namespace]))

    def copy(self) -> "Registry":
        out = Registry()
        for ns, entries in self._entries.items():
            out._entries[ns].update(entries)
        return out


# -------------------------
# Built-ins
# -------------------------


def nonempty(instance: ModelInstanceOps, **_: Any) -> bool:
    return any(instance.elements(ent) for ent in instance.schema.entities)


def max_elements(instance: ModelInstanceOps, *, limit: int, entity: Optional[str] = None, **_: Any) -> bool:
    ents = (entity,) if entity is not None else instance.schema.entities
    return sum(len(instance.elements(e)) for e in ents) <= int(limit)


def identity_chase(instance: ModelInstanceOps, **_: Any) -> ModelInstanceOps:
    return instance


def default_registry() -> Registry:
    reg = Registry()
    reg.register("filter", "nonempty", nonempty)
    reg.register("filter", "max_elements", max_elements)
    reg.register("chase", "identity", identity_chase)
    for name, fn in BUILTIN_OBJECTIVES.items():
        reg.register("objective", name, fn)
    reg.register("source", "explicit", explicit_source)
    reg.register("source", "paths", path_source)
    return reg


__all__ = [
    "NAMESPACES",
    "Registry",
    "default_registry",
    "nonempty",
    "max_elements",
    "identity_chase",
]
