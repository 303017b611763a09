# Copyright (c) 2025 MCE Maintainers
# License: MIT
"""
Tests for the dependency scheduler: validation order, pull order and stream sharing.
"""

from __future__ import annotations

import pytest

from mce_core.errors import ConfigError, CycleError, DanglingReferenceError, MultipleRootsError, SharingPolicyError
from mce_core.generators import (
    Box,
    GeneratorDecl,
    PrimitiveSpec,
    ProductSpec,
    WiringPattern,
    additive,
    multiplicative,
    primitive,
)
from mce_core.interfaces import Schema
from mce_core.loss import LossSpec, dependency_mean, element_count
from mce_core.primitives import FunctionSequence, PathSequence
from mce_core.scheduler import build

GRAPH = Schema(("V", "E"), {"src": ("E", "V"), "tgt": ("E", "V")})


def _leaf(gid: str, stop: int = 3, **kw) -> GeneratorDecl:
    return primitive(gid, PathSequence(GRAPH, stop=stop), **kw)


def _wrap(gid: str, *deps: str, **kw) -> GeneratorDecl:
    boxes = tuple(Box(f"b{i}", d) for i, d in enumerate(deps))
    return additive(gid, WiringPattern(boxes=boxes), **kw)


class _CountingPaths:
    """Factory for path sources that records every materialized index."""

    def __init__(self, stop: int = 3) -> None:
        self.stop = stop
        self.calls = []
        self._paths = PathSequence(GRAPH, stop=stop)

    def _make(self, i):
        self.calls.append(i)
        return self._paths.get(i)

    def __call__(self) -> FunctionSequence:
        return FunctionSequence(self._make, length=self.stop)


def _counted(gid: str, counter: _CountingPaths, sharing=None) -> GeneratorDecl:
    return GeneratorDecl(gid, "primitive", PrimitiveSpec("counting", counter), sharing=sharing)


def _diamond(counter: _CountingPaths, sharing: str):
    return build(
        [
            _counted("p", counter, sharing),
            _wrap("a", "p"),
            _wrap("b", "p"),
            multiplicative("top", ProductSpec(dimensions=("a", "b"))),
        ],
        GRAPH,
    )


# -------------------------
# Validation
# -------------------------


def test_valid_schedule_has_leaves_first_pull_order():
    schedule = build([_wrap("top", "mid"), _wrap("mid", "leaf"), _leaf("leaf")], GRAPH)
    assert schedule.pull_order == ("leaf", "mid", "top")
    assert schedule.roots == ("top",)
    assert schedule.root == "top"
    assert schedule.dependencies("top") == ("mid",)
    assert schedule.referrers("leaf") == ("mid",)


def test_cycle_is_reported_with_its_path():
    with pytest.raises(CycleError) as ei:
        build([_wrap("a", "b"), _wrap("b", "a"), _wrap("top", "a")], GRAPH)
    assert set(ei.value.cycle) == {"a", "b"}
    assert ei.value.location == "generators"


def test_self_reference_is_a_cycle():
    with pytest.raises(CycleError) as ei:
        build([_wrap("a", "a")], GRAPH)
    assert ei.value.cycle == ("a",)


def test_multiple_roots_rejected_unless_allowed():
    decls = [_leaf("p", sharing="shared"), _wrap("a", "p"), _wrap("b", "p")]
    with pytest.raises(MultipleRootsError) as ei:
        build(decls, GRAPH)
    assert ei.value.roots == ("a", "b")
    schedule = build(decls, GRAPH, allow_multiple_roots=True)
    assert schedule.roots == ("a", "b")


def test_dangling_dependency_reports_location():
    with pytest.raises(DanglingReferenceError) as ei:
        build([_wrap("top", "ghost")], GRAPH)
    assert ei.value.location == "generators[0].wiring.boxes[0].generator"


def test_multi_referenced_generator_needs_sharing_policy():
    counter = _CountingPaths()
    with pytest.raises(SharingPolicyError) as ei:
        build(
            [
                _wrap("a", "p"),
                _wrap("b", "p"),
                _counted("p", counter),
                multiplicative("top", ProductSpec(dimensions=("a", "b"))),
            ],
            GRAPH,
        )
    assert ei.value.location == "generators[2].sharing"


def test_duplicate_ids_and_empty_declarations():
    with pytest.raises(ConfigError, match="duplicate"):
        build([_leaf("p"), _leaf("p")], GRAPH)
    with pytest.raises(ConfigError):
        build([], GRAPH)


# -------------------------
# Sharing
# -------------------------


def test_shared_generator_is_drawn_once_per_index():
    counter = _CountingPaths()
    graph = _diamond(counter, "shared").streams()
    out = graph.root_stream().take(100)
    assert len(out) == 9
    assert sorted(graph.keys()) == ["a", "b", "p", "top"]
    assert sorted(counter.calls) == [0, 1, 2]


def test_reentrant_generator_gets_one_stream_per_referrer():
    counter = _CountingPaths()
    graph = _diamond(counter, "reentrant").streams()
    out = graph.root_stream().take(100)
    assert len(out) == 9
    assert sorted(graph.keys()) == ["a", "b", "p@a", "p@b", "top"]
    assert graph.generator_of("p@a") == "p"
    assert sorted(counter.calls) == [0, 0, 1, 1, 2, 2]


def test_composite_loss_reads_dependency_histories():
    scored = LossSpec("element_count", element_count)
    schedule = build(
        [
            _leaf("p", loss=scored),
            _wrap("top", "p", loss=LossSpec("dependency_mean", dependency_mean)),
        ],
        GRAPH,
    )
    graph = schedule.streams()
    graph.root_stream().take(3)
    # path n has 2n + 1 elements
    assert [e.score for e in graph.history("p")] == [1.0, 3.0, 5.0]
    assert [e.score for e in graph.history("top")] == [1.0, 3.0, 5.0]
    assert graph.emitted_counts() == {"p": 3, "top": 3}


def test_stream_graph_state_round_trip():
    schedule = build([_leaf("p", stop=4), _wrap("top", "p")], GRAPH)
    graph = schedule.streams(seed=5)
    first = [i.identity_key() for i in graph.root_stream().take(2)]
    state = graph.state_dict()

    resumed = schedule.streams(seed=5)
    resumed.load_state_dict(state)
    root = resumed.root_stream()
    assert [root.get(i).identity_key() for i in range(2)] == first
    assert len(root.take(10)) == 4

    with pytest.raises(ValueError):
        schedule.streams().load_state_dict({"ghost": []})


def test_cache_bound_applies_to_every_layer():
    schedule = build([_leaf("p", stop=4), _wrap("top", "p")], GRAPH)
    graph = schedule.streams(cache_size=1)
    root = graph.root_stream()
    first = [i.identity_key() for i in root.take(4)]
    assert [root.get(i).identity_key() for i in range(4)] == first
    assert root.cached_count == 1
    assert graph.stream("p").cached_count == 1
