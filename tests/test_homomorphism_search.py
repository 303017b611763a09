# Copyright (c) 2025 MCE Maintainers
# License: MIT
"""
Tests for constrained homomorphism search.

Deterministic, offline, quick:
- Small directed graphs over the schema V, E with src/tgt: E -> V
- Exhaustive and backtracking strategies are checked against each other
"""

from __future__ import annotations

import threading

import numpy as np
import pytest

from mce_core.constraints import PinConstraint, TagConstraint
from mce_core.errors import NoHomomorphism, SearchFailure, SearchTimeout
from mce_core.homomorphism import (
    BacktrackingStrategy,
    DefaultHomomorphismSearch,
    ExhaustiveStrategy,
    SearchBudget,
    select_uniform,
)
from mce_core.instance_mem import InMemoryModelInstance, empty
from mce_core.interfaces import Schema
from mce_core.seeding import derive_rng

GRAPH = Schema(("V", "E"), {"src": ("E", "V"), "tgt": ("E", "V")})


def _path(n: int, tags=None) -> InMemoryModelInstance:
    verts = [f"v{i}" for i in range(n + 1)]
    edges = [f"e{i}" for i in range(n)]
    return InMemoryModelInstance(
        GRAPH,
        {"V": verts, "E": edges},
        {"src": {e: verts[i] for i, e in enumerate(edges)}, "tgt": {e: verts[i + 1] for i, e in enumerate(edges)}},
        tags,
    )


def _cycle3() -> InMemoryModelInstance:
    return InMemoryModelInstance(
        GRAPH,
        {"V": ["a", "b", "c"], "E": ["x", "y", "z"]},
        {"src": {"x": "a", "y": "b", "z": "c"}, "tgt": {"x": "b", "y": "c", "z": "a"}},
    )


def _point(name: str = "p", tags=None) -> InMemoryModelInstance:
    return InMemoryModelInstance(GRAPH, {"V": [name]}, tags=tags)


def test_vertex_maps_onto_every_vertex():
    search = DefaultHomomorphismSearch()
    maps = search.find(_point(), _path(2))
    assert sorted(h("V", "p") for h in maps) == ["v0", "v1", "v2"]


def test_edge_maps_commute_with_relations():
    search = DefaultHomomorphismSearch()
    maps = search.find(_path(1), _path(2))
    assert len(maps) == 2
    for h in maps:
        edge = h("E", "e0")
        k = int(edge[1:])
        assert h("V", "v0") == f"v{k}"
        assert h("V", "v1") == f"v{k + 1}"


def test_paths_wrap_around_a_cycle():
    search = DefaultHomomorphismSearch()
    assert len(search.find(_path(2), _cycle3())) == 3
    assert len(search.find(_path(3), _cycle3())) == 3
    # four distinct vertices cannot embed injectively into three
    assert len(search.find(_path(3), _cycle3(), monic=True)) == 0


@pytest.mark.parametrize("monic", [False, True])
def test_exhaustive_and_backtracking_agree(monic):
    source, target = _path(2), _cycle3()
    a = DefaultHomomorphismSearch(ExhaustiveStrategy()).find(source, target, monic=monic)
    b = DefaultHomomorphismSearch(BacktrackingStrategy()).find(source, target, monic=monic)
    assert a == b

    source, target = _path(1), _path(3)
    a = DefaultHomomorphismSearch(ExhaustiveStrategy()).find(source, target, monic=monic)
    b = DefaultHomomorphismSearch(BacktrackingStrategy()).find(source, target, monic=monic)
    assert a == b and len(a) == 3


def test_default_search_switches_to_backtracking_on_large_spaces():
    small_limit = DefaultHomomorphismSearch(exhaustive_limit=1)
    assert small_limit.find(_path(2), _path(4)) == DefaultHomomorphismSearch().find(_path(2), _path(4))


def test_empty_source_has_exactly_one_map():
    search = DefaultHomomorphismSearch()
    maps = search.find(empty(GRAPH), _path(2))
    assert len(maps) == 1
    (h,) = maps
    assert h.component("V") == {}


def test_require_and_choose_raise_when_no_map_exists():
    search = DefaultHomomorphismSearch()
    # an edge has nowhere to go in a structure without edges
    assert search.find(_path(1), _point()) == frozenset()
    with pytest.raises(NoHomomorphism):
        search.require(_path(1), _point())
    with pytest.raises(NoHomomorphism):
        search.choose(_path(1), _point(), (), np.random.default_rng(0))


def test_choose_is_reproducible_for_same_seed():
    search = DefaultHomomorphismSearch()
    source, target = _point(), _path(4)
    a = search.choose(source, target, (), derive_rng(42, "stream", (0, 1)))
    b = search.choose(source, target, (), derive_rng(42, "stream", (0, 1)))
    assert a == b


def test_choose_varies_with_seed():
    search = DefaultHomomorphismSearch()
    source, target = _point(), _path(4)
    picks = {search.choose(source, target, (), derive_rng(seed, "k"))("V", "p") for seed in range(20)}
    assert len(picks) > 1


def test_select_uniform_ignores_iteration_order():
    maps = DefaultHomomorphismSearch().find(_point(), _path(3))
    ordered = sorted(maps, key=lambda h: h.sort_key())
    a = select_uniform(frozenset(ordered), np.random.default_rng(5))
    b = select_uniform(frozenset(reversed(ordered)), np.random.default_rng(5))
    assert a == b


def test_tag_constraint_restricts_targets():
    search = DefaultHomomorphismSearch()
    target = _path(2, tags={"V": {"v2": ["out"]}})
    maps = search.find(_point(), target, (TagConstraint("V", "out"),))
    assert [h("V", "p") for h in maps] == ["v2"]


def test_tag_constraint_with_source_tag_only_binds_tagged_sources():
    search = DefaultHomomorphismSearch()
    target = _path(2, tags={"V": {"v2": ["out"]}})
    c = TagConstraint("V", "out", source_tag="port")
    assert len(search.find(_point(), target, (c,))) == 3
    assert len(search.find(_point(tags={"V": {"p": ["port"]}}), target, (c,))) == 1


def test_pin_constraint_fixes_one_image():
    search = DefaultHomomorphismSearch()
    maps = search.find(_point(), _path(2), (PinConstraint("V", "p", "v1"),))
    assert [h("V", "p") for h in maps] == ["v1"]


def test_step_budget_raises_search_timeout():
    search = DefaultHomomorphismSearch(ExhaustiveStrategy())
    with pytest.raises(SearchTimeout):
        search.find(_path(3), _cycle3(), budget=SearchBudget(max_steps=1))


def test_cancelled_search_is_a_search_failure():
    cancel = threading.Event()
    cancel.set()
    search = DefaultHomomorphismSearch(BacktrackingStrategy())
    with pytest.raises(SearchFailure):
        search.choose(_point(), _path(2), (), np.random.default_rng(0), budget=SearchBudget(cancel=cancel))
    assert issubclass(SearchTimeout, SearchFailure) and issubclass(NoHomomorphism, SearchFailure)
