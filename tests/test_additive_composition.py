# Copyright (c) 2025 MCE Maintainers
# License: MIT
"""
Tests for additive composition: wiring validation, odometer enumeration, skipping,
reproducible gluing and rematerialization after a state round trip.
"""

from __future__ import annotations

import json

import pytest

from mce_core.additive import AdditiveStream, compose_once
from mce_core.constraints import TagConstraint
from mce_core.errors import DanglingReferenceError, SelfGluingError
from mce_core.generators import Box, Junction, Port, Wire, WiringPattern
from mce_core.homomorphism import SearchBudget
from mce_core.instance_mem import InMemoryModelInstance
from mce_core.interfaces import Schema
from mce_core.primitives import ExplicitSequence, PathSequence
from mce_core.streams import PrimitiveStream

GRAPH = Schema(("V", "E"), {"src": ("E", "V"), "tgt": ("E", "V")})


def _point(name: str = "x") -> InMemoryModelInstance:
    return InMemoryModelInstance(GRAPH, {"V": [name]})


def _paths(stop: int, tags=None) -> PrimitiveStream:
    return PrimitiveStream("paths", PathSequence(GRAPH, stop=stop, tags=tags or {"first": "in", "last": "out"}))


def _chain_wiring(**kw) -> WiringPattern:
    return WiringPattern(
        boxes=(Box("head", "paths"), Box("tail", "paths")),
        ports=(
            Port("head_out", "head", (TagConstraint("V", "out"),)),
            Port("tail_in", "tail", (TagConstraint("V", "in"),)),
        ),
        junctions=(Junction("joint", overlap=_point(), monic=True),),
        wires=(Wire("head_out", "joint"), Wire("tail_in", "joint")),
        **kw,
    )


def test_single_box_without_wires_is_identity():
    raw = [PathSequence(GRAPH).get(i) for i in range(3)]
    wiring = WiringPattern(boxes=(Box("b", "g"),))
    stream = AdditiveStream("c", GRAPH, wiring, [PrimitiveStream("g", ExplicitSequence(raw))])
    out = stream.take(10)
    assert len(out) == 3
    assert all(a is b for a, b in zip(out, raw))


def test_junction_without_wires_is_dropped():
    raw = [PathSequence(GRAPH).get(i) for i in range(3)]
    wiring = WiringPattern(boxes=(Box("b", "g"),), junctions=(Junction("j", overlap=_point()),))
    assert wiring.active_junctions() == ()
    stream = AdditiveStream("c", GRAPH, wiring, [PrimitiveStream("g", ExplicitSequence(raw))])
    assert [i.identity_key() for i in stream] == [i.identity_key() for i in raw]


def test_chain_enumerates_box_draws_outermost_slowest():
    paths = _paths(3)
    stream = AdditiveStream("chain", GRAPH, _chain_wiring(), [paths, paths])
    out = stream.take(20)
    assert len(out) == 9
    assert [stream.coordinates(i) for i in range(3)] == [(0, 0), (0, 1), (0, 2)]
    # gluing path m to path n along one vertex gives m + n + 1 vertices
    assert [len(i.elements("V")) for i in out] == [1, 2, 3, 2, 3, 4, 3, 4, 5]
    assert stream.exhausted


def test_composite_exposes_port_constraints_as_interface():
    paths = _paths(2)
    stream = AdditiveStream("chain", GRAPH, _chain_wiring(), [paths, paths])
    first = stream.get(0)
    assert set(first.interface) == {TagConstraint("V", "out"), TagConstraint("V", "in")}


def test_admissible_map_never_raises_no_homomorphism():
    wiring = _chain_wiring()
    head = PathSequence(GRAPH, tags={"last": "out"}).get(3)
    tail = PathSequence(GRAPH, tags={"first": "in"}).get(2)
    for seed in range(10):
        out = compose_once(GRAPH, wiring, {"head": head, "tail": tail}, seed=seed)
        assert len(out.elements("V")) == 6


def test_inadmissible_combinations_are_skipped():
    tagged = PathSequence(GRAPH, tags={"first": "in", "last": "out"})
    untagged = PathSequence(GRAPH)
    # the middle instance carries no "out" tag, so no head draw of it is admissible
    source = ExplicitSequence([tagged.get(0), untagged.get(1), tagged.get(2)])
    stream = PrimitiveStream("paths", source)
    additive = AdditiveStream("chain", GRAPH, _chain_wiring(), [stream, stream])
    out = additive.take(20)
    heads = {additive.coordinates(i)[0] for i in range(len(out))}
    assert heads == {0, 2}
    # tails must carry "in": instance 1 is rejected as a tail too
    assert len(out) == 4
    assert additive.rejected == 5


def test_consecutive_skips_end_the_stream_quietly():
    untagged = PrimitiveStream("paths", PathSequence(GRAPH, stop=5))
    stream = AdditiveStream("chain", GRAPH, _chain_wiring(max_consecutive_skips=3), [untagged, untagged])
    assert stream.get(0) is None
    assert stream.exhausted
    assert stream.rejected == 3


def test_search_timeout_rejects_only_that_combination():
    # embedding one point into n points visits n candidates
    source = ExplicitSequence([_point("a"), InMemoryModelInstance(GRAPH, {"V": ["b", "c", "d"]}), _point("e")])
    wiring = WiringPattern(
        boxes=(Box("b", "g"),),
        ports=(Port("p", "b"),),
        junctions=(Junction("j", overlap=_point()),),
        wires=(Wire("p", "j"),),
    )
    stream = AdditiveStream("c", GRAPH, wiring, [PrimitiveStream("g", source)], budget=SearchBudget(max_steps=2))
    out = stream.take(10)
    assert [stream.coordinates(i) for i in range(len(out))] == [(0,), (2,)]
    assert [i.elements("V") for i in out] == [("a",), ("e",)]
    assert stream.rejected == 1
    assert stream.exhausted


def test_ambiguous_gluing_is_reproducible_per_seed():
    wiring = WiringPattern(
        boxes=(Box("a", "g"), Box("b", "g")),
        ports=(Port("pa", "a"), Port("pb", "b")),
        junctions=(Junction("j", overlap=_point()),),
        wires=(Wire("pa", "j"), Wire("pb", "j")),
    )

    def keys(seed):
        g = PrimitiveStream("g", PathSequence(GRAPH, stop=3))
        s = AdditiveStream("c", GRAPH, wiring, [g, g], seed=seed)
        return [i.identity_key() for i in s]

    assert keys(11) == keys(11)
    assert len(keys(11)) == 9


def test_state_round_trip_rematerializes_identical_instances():
    paths = _paths(3)
    stream = AdditiveStream("chain", GRAPH, _chain_wiring(), [paths, paths], seed=3)
    first = [i.identity_key() for i in stream.take(4)]
    state = json.loads(json.dumps({"paths": paths.state_dict(), "chain": stream.state_dict()}))

    paths2 = _paths(3)
    resumed = AdditiveStream("chain", GRAPH, _chain_wiring(), [paths2, paths2], seed=3)
    paths2.load_state_dict(state["paths"])
    resumed.load_state_dict(state["chain"])
    assert [resumed.get(i).identity_key() for i in range(4)] == first
    assert [i.identity_key() for i in resumed.take(9)] == [i.identity_key() for i in stream.take(9)]


# -------------------------
# Wiring validation
# -------------------------


def test_self_gluing_is_rejected_unless_allowed():
    wiring = WiringPattern(
        boxes=(Box("a", "g"),),
        ports=(Port("p1", "a"), Port("p2", "a")),
        junctions=(Junction("j"),),
        wires=(Wire("p1", "j"), Wire("p2", "j")),
    )
    with pytest.raises(SelfGluingError):
        wiring.validate(GRAPH, ["g"])
    allowed = WiringPattern(
        boxes=wiring.boxes, ports=wiring.ports, junctions=wiring.junctions, wires=wiring.wires, allow_self_gluing=True
    )
    allowed.validate(GRAPH, ["g"])


def test_dangling_wire_reports_location():
    wiring = WiringPattern(boxes=(Box("a", "g"),), ports=(Port("p", "a"),), wires=(Wire("p", "nowhere"),))
    with pytest.raises(DanglingReferenceError) as ei:
        wiring.validate(GRAPH, ["g"], "generators[1].wiring")
    assert ei.value.location == "generators[1].wiring.wires[0].junction"
