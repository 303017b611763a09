# Copyright (c) 2025 MCE Maintainers
# License: MIT
"""
Tests for YAML search-space parsing: located errors, overrides and fingerprints.
"""

from __future__ import annotations

import copy
from pathlib import Path

import pytest
import yaml

from mce_core.errors import (
    ConfigError,
    CycleError,
    DanglingReferenceError,
    MissingFieldError,
    SchemaMismatchError,
)
from mce_pipeline.config import deep_update, load_config, parse_config, parse_dotlist

DEMO = Path(__file__).resolve().parent.parent / "configs" / "demo.yaml"


def _base() -> dict:
    return {
        "name": "unit",
        "seed": 1,
        "schema": {"entities": ["V", "E"], "relations": {"src": ["E", "V"], "tgt": ["E", "V"]}},
        "search": {"iterations": 10},
        "generators": [
            {"id": "paths", "kind": "primitive", "source": "paths", "params": {"stop": 3, "tags": {"last": "out"}}},
            {
                "id": "pair",
                "kind": "additive",
                "wiring": {
                    "boxes": [{"id": "a", "generator": "paths"}],
                    "ports": [{"id": "out", "box": "a", "constraints": [{"tag": {"entity": "V", "target": "out"}}]}],
                    "junctions": [{"id": "j", "overlap": {"elements": {"V": ["x"]}}}],
                    "wires": [{"port": "out", "junction": "j"}],
                },
                "constraints": [{"filter": "nonempty"}],
            },
        ],
    }


def _expect(exc_type, data) -> ConfigError:
    with pytest.raises(exc_type) as ei:
        parse_config(data)
    return ei.value


def test_demo_config_loads_and_schedules():
    cfg = load_config(DEMO)
    assert cfg.name == "demo"
    assert [g.id for g in cfg.generators] == ["paths", "chain", "grid"]
    schedule = cfg.build_schedule()
    assert schedule.pull_order == ("paths", "chain", "grid")
    assert schedule.roots == ("grid",)
    assert cfg.search.iterations == 200
    assert cfg.search.call_budget().timeout_s == 2.0


def test_base_config_parses():
    cfg = parse_config(_base())
    pair = cfg.generators[1]
    assert pair.kind == "additive"
    assert pair.body.ports[0].constraints[0].target_tag == "out"
    assert [c.name for c in pair.constraints] == ["nonempty"]


def test_unknown_wire_port_is_located():
    data = _base()
    data["generators"][1]["wiring"]["wires"][0]["port"] = "nope"
    err = _expect(DanglingReferenceError, data)
    assert err.location == "generators[1].wiring.wires[0].port"


def test_missing_port_box_is_located():
    data = _base()
    del data["generators"][1]["wiring"]["ports"][0]["box"]
    err = _expect(MissingFieldError, data)
    assert err.location == "generators[1].wiring.ports[0].box"


def test_unknown_filter_is_located():
    data = _base()
    data["generators"][1]["constraints"] = [{"filter": "shiny"}]
    err = _expect(DanglingReferenceError, data)
    assert err.location == "generators[1].constraints[0].filter"


def test_cycle_in_config_is_rejected():
    data = _base()
    data["generators"].append(
        {"id": "loop", "kind": "additive", "wiring": {"boxes": [{"id": "a", "generator": "loop"}]}}
    )
    err = _expect(CycleError, data)
    assert err.cycle == ("loop",)


def test_bad_schema_is_located():
    data = _base()
    data["schema"]["relations"]["src"] = ["E", "W"]
    err = _expect(SchemaMismatchError, data)
    assert err.location == "schema"


def test_bad_explicit_instance_is_located():
    data = _base()
    data["generators"][0] = {
        "id": "paths",
        "kind": "primitive",
        "source": "explicit",
        "params": {"instances": [{"elements": {"Q": ["a"]}}]},
    }
    err = _expect(SchemaMismatchError, data)
    assert err.location == "generators[0].params.instances[0]"


def test_unknown_kind_and_sharing_are_located():
    data = _base()
    data["generators"][0]["kind"] = "quantum"
    assert _expect(SchemaMismatchError, data).location == "generators[0].kind"
    data = _base()
    data["generators"][0]["sharing"] = "sometimes"
    assert _expect(SchemaMismatchError, data).location == "generators[0].sharing"


def test_search_root_must_be_a_schedule_root():
    data = _base()
    data["search"]["root"] = "paths"
    assert _expect(ConfigError, data).location == "search.root"


def test_loss_section_is_parsed():
    data = _base()
    data["generators"][1]["loss"] = {"objective": "element_count", "direction": "max", "stop": {"threshold": 9}}
    loss = parse_config(data).generators[1].loss
    assert loss.direction == "max"
    assert loss.stop.threshold == 9.0
    data["generators"][1]["loss"]["direction"] = "up"
    assert _expect(SchemaMismatchError, data).location == "generators[1].loss.direction"


def test_null_integer_settings_are_located():
    data = _base()
    data["search"]["exhaustive_limit"] = None
    assert _expect(SchemaMismatchError, data).location == "search.exhaustive_limit"
    data = _base()
    data["generators"][1]["wiring"]["max_consecutive_skips"] = None
    assert _expect(SchemaMismatchError, data).location == "generators[1].wiring.max_consecutive_skips"
    data = _base()
    data["generators"].append(
        {"id": "grid", "kind": "multiplicative", "product": {"dimensions": ["pair"], "max_consecutive_skips": None}}
    )
    assert _expect(SchemaMismatchError, data).location == "generators[2].product.max_consecutive_skips"


def test_malformed_inline_instances_are_located():
    data = _base()
    data["generators"][1]["wiring"]["junctions"][0]["overlap"] = {"elements": {"V": 3}}
    assert _expect(SchemaMismatchError, data).location == "generators[1].wiring.junctions[0].overlap"
    data = _base()
    data["generators"][1]["wiring"]["junctions"][0]["overlap"] = {"elements": {"V": ["x"]}, "relations": {"src": 1}}
    assert _expect(SchemaMismatchError, data).location == "generators[1].wiring.junctions[0].overlap"
    data = _base()
    data["generators"].append(
        {"id": "grid", "kind": "multiplicative", "product": {"dimensions": ["pair"], "base": {"elements": {"V": 3}}}}
    )
    assert _expect(SchemaMismatchError, data).location == "generators[2].product.base"


# -------------------------
# Overrides and fingerprints
# -------------------------


def test_parse_dotlist_coerces_yaml_scalars():
    out = parse_dotlist(["seed=3", "search.iterations=50", "search.timeout_s=null", "name=x"])
    assert out == {"seed": 3, "search": {"iterations": 50, "timeout_s": None}, "name": "x"}
    with pytest.raises(ConfigError):
        parse_dotlist(["seed"])


def test_deep_update_merges_nested_sections():
    merged = deep_update({"search": {"iterations": 5, "root": "g"}}, {"search": {"iterations": 9}})
    assert merged == {"search": {"iterations": 9, "root": "g"}}


def test_fingerprint_ignores_run_settings_only():
    a = parse_config(_base())
    data = copy.deepcopy(_base())
    data["search"]["iterations"] = 999
    assert parse_config(data).fingerprint() == a.fingerprint()
    data["seed"] = 2
    assert parse_config(data).fingerprint() != a.fingerprint()


def test_load_config_applies_overrides(tmp_path: Path):
    path = tmp_path / "space.yaml"
    path.write_text(yaml.safe_dump(_base()), encoding="utf-8")
    cfg = load_config(path, parse_dotlist(["seed=7", "search.iterations=3"]))
    assert cfg.seed == 7
    assert cfg.search.iterations == 3


def test_invalid_yaml_is_a_config_error(tmp_path: Path):
    path = tmp_path / "broken.yaml"
    path.write_text("generators: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(path)
