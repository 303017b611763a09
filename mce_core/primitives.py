# Copyright (c) 2025 MCE Maintainers
# License: MIT
"""
Reference primitive sources.

A primitive source is anything with get(index) -> instance | None (None past the end);
sources may additionally expose successors(index) to present their output as a DAG.

- ExplicitSequence: a fixed list of instances, optionally with explicit DAG successors
- FunctionSequence: instances computed by a callable from the index, memoized
- PathSequence: directed path graphs with 0, 1, 2, ... edges over a graph-like schema
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple

from mce_core.errors import ConfigError
from mce_core.instance_mem import InMemoryModelInstance, from_mapping
from mce_core.interfaces import ModelInstanceOps, Schema


class ExplicitSequence:
    """Finite sequence of instances; successors default to the path i -> i + 1."""

    def __init__(
        self,
        instances: Sequence[ModelInstanceOps],
        successors: Optional[Mapping[int, Sequence[int]]] = None,
    ) -> None:
        self._instances = tuple(instances)
        self._successors = None if successors is None else {int(k): tuple(int(x) for x in v) for k, v in successors.items()}
        if self._successors is not None:
            n = len(self._instances)
            for k, vs in self._successors.items():
                if not 0 <= k < n or any(not 0 <= v < n for v in vs):
                    raise ValueError(f"successor edge {k} -> {list(vs)} outside 0..{n - 1}")

    def __len__(self) -> int:
        return len(self._instances)

    def get(self, index: int) -> Optional[ModelInstanceOps]:
        if 0 <= index < len(self._instances):
            return self._instances[index]
        return None

    def successors(self, index: int) -> Tuple[int, ...]:
        if self._successors is None:
            return (index + 1,)
        return self._successors.get(index, ())


class FunctionSequence:
    """Instances computed by fn(index); fn returns None to end the sequence."""

    def __init__(self, fn: Callable[[int], Optional[ModelInstanceOps]], length: Optional[int] = None) -> None:
        self.fn = fn
        self.length = length
        self._cache: Dict[int, Optional[ModelInstanceOps]] = {}

    def get(self, index: int) -> Optional[ModelInstanceOps]:
        if index < 0 or (self.length is not None and index >= self.length):
            return None
        if index not in self._cache:
            self._cache[index] = self.fn(index)
        return self._cache[index]


class PathSequence:
    """
    Directed paths v0 -> v1 -> ... -> vn for n = start, start + 1, ... (stop exclusive).

    Needs a schema with a vertex entity, an edge entity and source/target relations from
    edges to vertices; other entities stay empty and must have no relations.
    """

    def __init__(
        self,
        schema: Schema,
        *,
        vertex: str = "V",
        edge: str = "E",
        src: str = "src",
        tgt: str = "tgt",
        start: int = 0,
        stop: Optional[int] = None,
        tags: Optional[Mapping[str, str]] = None,
    ) -> None:
        for rel in (src, tgt):
            if schema.relations.get(rel) != (edge, vertex):
                raise ConfigError(f"relation {rel!r} must map {edge!r} to {vertex!r}")
        self.schema = schema
        self.vertex, self.edge, self.src, self.tgt = vertex, edge, src, tgt
        self.start = int(start)
        self.stop = stop
        # "first"/"last" -> tag for the path endpoints
        self.tags = dict(tags or {})
        self._cache: Dict[int, InMemoryModelInstance] = {}

    def get(self, index: int) -> Optional[InMemoryModelInstance]:
        n = self.start + index
        if index < 0 or (self.stop is not None and n >= self.stop):
            return None
        inst = self._cache.get(index)
        if inst is None:
            inst = self._path(n)
            self._cache[index] = inst
        return inst

    def _path(self, n: int) -> InMemoryModelInstance:
        verts = [f"v{i}" for i in range(n + 1)]
        edges = [f"e{i}" for i in range(n)]
        tags: Dict[str, Dict[str, list]] = {}
        if "first" in self.tags:
            tags.setdefault(self.vertex, {}).setdefault(verts[0], []).append(self.tags["first"])
        if "last" in self.tags:
            tags.setdefault(self.vertex, {}).setdefault(verts[-1], []).append(self.tags["last"])
        return InMemoryModelInstance(
            self.schema,
            {self.vertex: verts, self.edge: edges},
            {
                self.src: {e: verts[i] for i, e in enumerate(edges)},
                self.tgt: {e: verts[i + 1] for i, e in enumerate(edges)},
            },
            tags,
            label=f"path{n}",
        )


# -------------------------
# Config factories (schema bound by the config layer)
# -------------------------


def explicit_source(
    schema: Schema,
    instances: Sequence[Mapping[str, Any]] = (),
    successors: Optional[Mapping[Any, Sequence[int]]] = None,
) -> ExplicitSequence:
    built = [from_mapping(schema, data, location=f"params.instances[{i}]") for i, data in enumerate(instances)]
    succ = None if successors is None else {int(k): v for k, v in successors.items()}
    return ExplicitSequence(built, succ)


def path_source(schema: Schema, **params: Any) -> PathSequence:
    return PathSequence(schema, **params)


__all__ = [
    "ExplicitSequence",
    "FunctionSequence",
    "PathSequence",
    "explicit_source",
    "path_source",
]
