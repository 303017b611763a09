# Copyright (c) 2025 MCE Maintainers
# License: MIT
"""
Search-space configuration: YAML document -> validated SearchConfig.

Top-level layout:

    name: demo
    seed: 0
    schema: {entities: [...], relations: {r: [dom, cod]}}
    allow_multiple_roots: false
    search: {iterations: 100, timeout_s: null, call_timeout_s: null, call_max_steps: null,
             exhaustive_limit: 4096, cache_size: 4096, root: null, log_level: WARNING}
    generators: [ ... ]

Every failure is a ConfigError subclass carrying a location path such as
"generators[2].wiring.wires[0].port". Parsing either returns a complete config or raises;
a search space is never partially built.
"""

from __future__ import annotations

import functools
import hashlib
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, MutableMapping, Optional, Sequence, Tuple, Union

import yaml

from mce_core.constraints import ChaseConstraint, FilterConstraint, OutputConstraint, map_constraint_from_mapping
from mce_core.errors import ConfigError, MissingFieldError, SchemaMismatchError
from mce_core.generators import (
    DEFAULT_MAX_CONSECUTIVE_SKIPS,
    GENERATOR_KINDS,
    SHARING_POLICIES,
    Box,
    GeneratorDecl,
    Junction,
    Port,
    PrimitiveSpec,
    ProductSpec,
    Wire,
    WiringPattern,
)
from mce_core.homomorphism import SearchBudget
from mce_core.instance_mem import from_mapping
from mce_core.interfaces import Schema
from mce_core.loss import LossSpec, StopCriterion
from mce_core.registry import Registry, default_registry
from mce_core.scheduler import Schedule, build
from mce_core.streams import DEFAULT_CACHE_SIZE


# -------------------------
# Dataclasses
# -------------------------


@dataclass(frozen=True)
class SearchSettings:
    iterations: Optional[int] = 100
    timeout_s: Optional[float] = None
    call_timeout_s: Optional[float] = None
    call_max_steps: Optional[int] = None
    exhaustive_limit: int = 4096
    cache_size: Optional[int] = DEFAULT_CACHE_SIZE
    root: Optional[str] = None
    log_level: str = "WARNING"

    def call_budget(self) -> SearchBudget:
        return SearchBudget(max_steps=self.call_max_steps, timeout_s=self.call_timeout_s)


@dataclass(frozen=True)
class SearchConfig:
    name: str
    seed: int
    schema: Schema
    generators: Tuple[GeneratorDecl, ...]
    allow_multiple_roots: bool = False
    search: SearchSettings = SearchSettings()
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    def fingerprint(self) -> str:
        """Hash of the search space itself; run settings under 'search' are excluded."""
        return config_fingerprint({k: v for k, v in self.raw.items() if k != "search"})

    def build_schedule(self) -> Schedule:
        return build(self.generators, self.schema, allow_multiple_roots=self.allow_multiple_roots)


# -------------------------
# YAML and overrides
# -------------------------


def _load_yaml(path: Path) -> Dict[str, Any]:
    try:
        with Path(path).open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigError(f"cannot read config: {e}", str(path)) from e
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML: {e}", str(path)) from e
    if not isinstance(data, dict):
        raise ConfigError("YAML must be a mapping at top-level", str(path))
    return data


def _nested_set(d: MutableMapping[str, Any], keys: Sequence[str], value: Any) -> None:
    cur = d
    for k in keys[:-1]:
        if k not in cur or not isinstance(cur[k], dict):
            cur[k] = {}
        cur = cur[k]
    cur[keys[-1]] = value


def parse_dotlist(tokens: Sequence[str]) -> Dict[str, Any]:
    """
    Parse key=value overrides, e.g. ["seed=3", "search.iterations=50"].

    Values go through yaml.safe_load, so "true", "3", "0.5" and "null" get their YAML types.
    """
    overrides: Dict[str, Any] = {}
    for tok in tokens:
        if "=" not in tok:
            raise ConfigError(f"override {tok!r} is not of the form key=value", "overrides")
        key, val = tok.split("=", 1)
        try:
            coerced = yaml.safe_load(val.strip())
        except yaml.YAMLError:
            coerced = val.strip()
        _nested_set(overrides, key.strip().split("."), coerced)
    return overrides


def deep_update(dst: Mapping[str, Any], src: Mapping[str, Any]) -> Dict[str, Any]:
    out = dict(dst)
    for k, v in src.items():
        if isinstance(v, Mapping) and isinstance(out.get(k), Mapping):
            out[k] = deep_update(out[k], v)
        else:
            out[k] = v
    return out


def config_fingerprint(data: Mapping[str, Any]) -> str:
    blob = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(blob.encode("utf-8")).hexdigest()


# -------------------------
# Field helpers
# -------------------------


def _require(m: Mapping[str, Any], key: str, loc: str) -> Any:
    if key not in m or m[key] is None:
        raise MissingFieldError(f"missing required field {key!r}", f"{loc}.{key}" if loc else key)
    return m[key]


def _mapping(value: Any, loc: str) -> Mapping[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise SchemaMismatchError(f"expected a mapping, got {type(value).__name__}", loc)
    return value


def _list(value: Any, loc: str) -> List[Any]:
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise SchemaMismatchError(f"expected a list, got {type(value).__name__}", loc)
    return list(value)


def _opt_int(value: Any, loc: str) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise SchemaMismatchError(f"expected an integer, got {value!r}", loc) from e


def _int(value: Any, loc: str) -> int:
    if value is None:
        raise SchemaMismatchError("expected an integer, got null", loc)
    return int(_opt_int(value, loc))


def _opt_float(value: Any, loc: str) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise SchemaMismatchError(f"expected a number, got {value!r}", loc) from e


# -------------------------
# Sections
# -------------------------


def parse_schema(data: Any, loc: str = "schema") -> Schema:
    m = _mapping(data, loc)
    entities = [str(e) for e in _list(_require(m, "entities", loc), f"{loc}.entities")]
    relations: Dict[str, Tuple[str, str]] = {}
    for name, ends in _mapping(m.get("relations"), f"{loc}.relations").items():
        ends = _list(ends, f"{loc}.relations.{name}")
        if len(ends) != 2:
            raise SchemaMismatchError("relation must be [domain, codomain]", f"{loc}.relations.{name}")
        relations[str(name)] = (str(ends[0]), str(ends[1]))
    try:
        return Schema(tuple(entities), relations)
    except SchemaMismatchError as e:
        raise SchemaMismatchError(e.message, loc) from e


def parse_search_settings(data: Any, loc: str = "search") -> SearchSettings:
    m = _mapping(data, loc)
    d = SearchSettings()
    root = m.get("root")
    return SearchSettings(
        iterations=_opt_int(m.get("iterations", d.iterations), f"{loc}.iterations"),
        timeout_s=_opt_float(m.get("timeout_s"), f"{loc}.timeout_s"),
        call_timeout_s=_opt_float(m.get("call_timeout_s"), f"{loc}.call_timeout_s"),
        call_max_steps=_opt_int(m.get("call_max_steps"), f"{loc}.call_max_steps"),
        exhaustive_limit=_int(m.get("exhaustive_limit", d.exhaustive_limit), f"{loc}.exhaustive_limit"),
        cache_size=_opt_int(m.get("cache_size", d.cache_size), f"{loc}.cache_size"),
        root=None if root is None else str(root),
        log_level=str(m.get("log_level", d.log_level)),
    )


def _output_constraints(data: Any, loc: str, registry: Registry) -> Tuple[OutputConstraint, ...]:
    out: List[OutputConstraint] = []
    for i, item in enumerate(_list(data, loc)):
        iloc = f"{loc}[{i}]"
        m = _mapping(item, iloc)
        params = dict(_mapping(m.get("params"), f"{iloc}.params"))
        if "filter" in m:
            name = str(m["filter"])
            out.append(FilterConstraint(name, registry.resolve("filter", name, f"{iloc}.filter"), params))
        elif "chase" in m:
            name = str(m["chase"])
            out.append(ChaseConstraint(name, registry.resolve("chase", name, f"{iloc}.chase"), params))
        else:
            raise MissingFieldError("constraint needs 'filter' or 'chase'", iloc)
    return tuple(out)


def _loss(data: Any, loc: str, registry: Registry) -> Optional[LossSpec]:
    if data is None:
        return None
    m = _mapping(data, loc)
    name = str(_require(m, "objective", loc))
    direction = str(m.get("direction", "min"))
    if direction not in ("min", "max"):
        raise SchemaMismatchError(f"direction must be 'min' or 'max', got {direction!r}", f"{loc}.direction")
    s = _mapping(m.get("stop"), f"{loc}.stop")
    stop = StopCriterion(
        threshold=_opt_float(s.get("threshold"), f"{loc}.stop.threshold"),
        patience=_opt_int(s.get("patience"), f"{loc}.stop.patience"),
        max_emitted=_opt_int(s.get("max_emitted"), f"{loc}.stop.max_emitted"),
    )
    return LossSpec(
        objective_name=name,
        objective=registry.resolve("objective", name, f"{loc}.objective"),
        direction=direction,  # type: ignore[arg-type]
        stop=stop,
        params=dict(_mapping(m.get("params"), f"{loc}.params")),
    )


def _primitive(m: Mapping[str, Any], loc: str, schema: Schema, registry: Registry) -> PrimitiveSpec:
    name = str(_require(m, "source", loc))
    factory: Callable[..., Any] = registry.resolve("source", name, f"{loc}.source")
    params = dict(_mapping(m.get("params"), f"{loc}.params"))
    spec = PrimitiveSpec(source_name=name, factory=functools.partial(factory, schema), params=params)
    # build once up front so bad params surface as located config errors
    try:
        spec.make_source()
    except ConfigError as e:
        raise type(e)(e.message, f"{loc}.{e.location}" if e.location else loc) from e
    except (TypeError, ValueError) as e:
        raise ConfigError(f"source {name!r} rejected its params: {e}", f"{loc}.params") from e
    return spec


def _instance(data: Any, loc: str, schema: Schema):
    if data is None:
        return None
    return from_mapping(schema, data, location=loc)


def _wiring(data: Any, loc: str, schema: Schema) -> WiringPattern:
    m = _mapping(data, loc)
    boxes = []
    for i, b in enumerate(_list(_require(m, "boxes", loc), f"{loc}.boxes")):
        bloc = f"{loc}.boxes[{i}]"
        bm = _mapping(b, bloc)
        boxes.append(Box(id=str(_require(bm, "id", bloc)), generator=str(_require(bm, "generator", bloc))))
    ports = []
    for i, p in enumerate(_list(m.get("ports"), f"{loc}.ports")):
        ploc = f"{loc}.ports[{i}]"
        pm = _mapping(p, ploc)
        cons = tuple(
            map_constraint_from_mapping(schema, c, location=f"{ploc}.constraints[{k}]")
            for k, c in enumerate(_list(pm.get("constraints"), f"{ploc}.constraints"))
        )
        ports.append(Port(id=str(_require(pm, "id", ploc)), box=str(_require(pm, "box", ploc)), constraints=cons))
    junctions = []
    for i, j in enumerate(_list(m.get("junctions"), f"{loc}.junctions")):
        jloc = f"{loc}.junctions[{i}]"
        jm = _mapping(j, jloc)
        junctions.append(
            Junction(
                id=str(_require(jm, "id", jloc)),
                overlap=_instance(jm.get("overlap"), f"{jloc}.overlap", schema),
                monic=bool(jm.get("monic", False)),
            )
        )
    wires = []
    for i, w in enumerate(_list(m.get("wires"), f"{loc}.wires")):
        wloc = f"{loc}.wires[{i}]"
        wm = _mapping(w, wloc)
        wires.append(Wire(port=str(_require(wm, "port", wloc)), junction=str(_require(wm, "junction", wloc))))
    return WiringPattern(
        boxes=tuple(boxes),
        ports=tuple(ports),
        junctions=tuple(junctions),
        wires=tuple(wires),
        allow_self_gluing=bool(m.get("allow_self_gluing", False)),
        max_consecutive_skips=_int(
            m.get("max_consecutive_skips", DEFAULT_MAX_CONSECUTIVE_SKIPS), f"{loc}.max_consecutive_skips"
        ),
    )


def _product(data: Any, loc: str, schema: Schema) -> ProductSpec:
    m = _mapping(data, loc)
    dims = tuple(str(d) for d in _list(_require(m, "dimensions", loc), f"{loc}.dimensions"))
    return ProductSpec(
        dimensions=dims,
        base=_instance(m.get("base"), f"{loc}.base", schema),
        expand_inadmissible=bool(m.get("expand_inadmissible", True)),
        monic=bool(m.get("monic", False)),
        max_consecutive_skips=_int(
            m.get("max_consecutive_skips", DEFAULT_MAX_CONSECUTIVE_SKIPS), f"{loc}.max_consecutive_skips"
        ),
    )


def parse_generator(data: Any, loc: str, schema: Schema, registry: Registry) -> GeneratorDecl:
    m = _mapping(data, loc)
    gid = str(_require(m, "id", loc))
    kind = str(_require(m, "kind", loc))
    if kind not in GENERATOR_KINDS:
        raise SchemaMismatchError(f"unknown generator kind {kind!r}; expected one of {list(GENERATOR_KINDS)}", f"{loc}.kind")
    sharing = m.get("sharing")
    if sharing is not None and sharing not in SHARING_POLICIES:
        raise SchemaMismatchError(f"sharing must be one of {list(SHARING_POLICIES)}, got {sharing!r}", f"{loc}.sharing")

    body: Any
    if kind == "primitive":
        body = _primitive(m, loc, schema, registry)
    elif kind == "additive":
        body = _wiring(_require(m, "wiring", loc), f"{loc}.wiring", schema)
    else:
        body = _product(_require(m, "product", loc), f"{loc}.product", schema)
    return GeneratorDecl(
        id=gid,
        kind=kind,  # type: ignore[arg-type]
        body=body,
        constraints=_output_constraints(m.get("constraints"), f"{loc}.constraints", registry),
        loss=_loss(m.get("loss"), f"{loc}.loss", registry),
        sharing=sharing,
    )


def parse_config(data: Mapping[str, Any], registry: Optional[Registry] = None) -> SearchConfig:
    """Validate a config mapping end to end (including the dependency graph)."""
    registry = registry or default_registry()
    m = _mapping(data, "")
    schema = parse_schema(_require(m, "schema", ""))
    gens = _list(_require(m, "generators", ""), "generators")
    decls = tuple(parse_generator(g, f"generators[{i}]", schema, registry) for i, g in enumerate(gens))
    seed = _opt_int(m.get("seed", 0), "seed")
    cfg = SearchConfig(
        name=str(m.get("name", "search")),
        seed=int(seed or 0),
        schema=schema,
        generators=decls,
        allow_multiple_roots=bool(m.get("allow_multiple_roots", False)),
        search=parse_search_settings(m.get("search")),
        raw=dict(m),
    )
    schedule = cfg.build_schedule()
    root = cfg.search.root
    if root is not None and root not in schedule.roots:
        raise ConfigError(f"root {root!r} is not one of the schedule roots {list(schedule.roots)}", "search.root")
    return cfg


def load_config(
    path: Union[str, Path],
    overrides: Optional[Mapping[str, Any]] = None,
    registry: Optional[Registry] = None,
) -> SearchConfig:
    data = _load_yaml(Path(path))
    if overrides:
        data = deep_update(data, overrides)
    return parse_config(data, registry)


__all__ = [
    "SearchSettings",
    "SearchConfig",
    "parse_dotlist",
    "deep_update",
    "config_fingerprint",
    "parse_schema",
    "parse_search_settings",
    "parse_generator",
    "parse_config",
    "load_config",
]
