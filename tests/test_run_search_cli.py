# Copyright (c) 2025 MCE Maintainers
# License: MIT
"""
Smoke tests for the search runner CLI.

Validates:
- exit codes: 0 success, 2 configuration error, 3 exhausted without success, 4 timeout
- one-line JSON summary on stdout and per-run artifacts
- deterministic results for identical seeds
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Optional

import pytest
import yaml

from mce_core.errors import ConfigError
from scripts.run_search import main, run_main

DEMO = Path(__file__).resolve().parent.parent / "configs" / "demo.yaml"


def _write(tmp_path: Path, constraints=None, loss: Optional[Dict[str, Any]] = None, name="cli") -> Path:
    gen: Dict[str, Any] = {"id": "paths", "kind": "primitive", "source": "paths", "params": {"stop": 3}}
    if constraints is not None:
        gen["constraints"] = constraints
    if loss is not None:
        gen["loss"] = loss
    data = {
        "name": name,
        "seed": 0,
        "schema": {"entities": ["V", "E"], "relations": {"src": ["E", "V"], "tgt": ["E", "V"]}},
        "search": {"iterations": 10},
        "generators": [gen],
    }
    path = tmp_path / f"{name}.yaml"
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


def _stdout_json(capsys) -> Dict[str, Any]:
    lines = capsys.readouterr().out.strip().splitlines()
    assert len(lines) == 1
    return json.loads(lines[0])


def test_budget_run_exits_zero(tmp_path: Path, capsys) -> None:
    cfg = _write(tmp_path)
    code = main([str(cfg), "--iterations", "2"])
    res = _stdout_json(capsys)
    assert code == 0
    assert res["status"] == "budget" and res["steps"] == 2
    assert res["best"]["index"] == 1


def test_exhausted_without_threshold_still_succeeds(tmp_path: Path, capsys) -> None:
    code = main([str(_write(tmp_path))])
    res = _stdout_json(capsys)
    assert code == 0
    assert res["status"] == "exhausted" and res["steps"] == 3


def test_everything_filtered_exits_three(tmp_path: Path, capsys) -> None:
    cfg = _write(tmp_path, constraints=[{"filter": "max_elements", "params": {"limit": 0}}])
    code = main([str(cfg)])
    res = _stdout_json(capsys)
    assert code == 3
    assert res["status"] == "exhausted" and res["best"] is None


def test_threshold_reached_stops_with_success(tmp_path: Path, capsys) -> None:
    loss = {"objective": "element_count", "direction": "max", "stop": {"threshold": 5}}
    code = main([str(_write(tmp_path, loss=loss))])
    res = _stdout_json(capsys)
    assert code == 0
    assert res["status"] == "stopped" and res["threshold_reached"] is True
    assert res["best"]["score"] == 5.0


def test_unreached_threshold_exits_three(tmp_path: Path, capsys) -> None:
    loss = {"objective": "element_count", "direction": "max", "stop": {"threshold": 100}}
    code = main([str(_write(tmp_path, loss=loss))])
    res = _stdout_json(capsys)
    assert code == 3
    assert res["threshold_reached"] is False


def test_zero_timeout_exits_four(tmp_path: Path, capsys) -> None:
    code = main([str(_write(tmp_path)), "--timeout", "0"])
    res = _stdout_json(capsys)
    assert code == 4
    assert res["status"] == "timeout" and res["steps"] == 0


def test_config_error_exits_two_with_location(tmp_path: Path, capsys) -> None:
    cfg = _write(tmp_path, constraints=[{"filter": "shiny"}])
    with pytest.raises(SystemExit) as ei:
        main([str(cfg)])
    assert ei.value.code == 2
    assert "generators[0].constraints[0].filter" in capsys.readouterr().err


def test_resume_requires_checkpoint(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        run_main(str(_write(tmp_path)), resume=True)


def test_overrides_and_artifacts(tmp_path: Path) -> None:
    res = run_main(str(DEMO), overrides=["search.iterations=4"], artifacts_dir=str(tmp_path / "out"), timeout=None)
    assert res["steps"] == 4
    run_dir = Path(res["artifacts"])
    assert (run_dir / "scores.csv").exists()
    assert (run_dir / "emissions.jsonl").exists()
    stored = json.loads((run_dir / "result.json").read_text(encoding="utf-8"))
    assert stored["config_fingerprint"] == res["config_fingerprint"]


def test_same_seed_same_result(tmp_path: Path) -> None:
    r1 = run_main(str(DEMO), iterations=6, seed=9)
    r2 = run_main(str(DEMO), iterations=6, seed=9)
    assert r1["best"] == r2["best"]
    assert r1["streams"] == r2["streams"]
    assert r1["seed"] == 9


def test_checkpoint_then_resume_via_cli(tmp_path: Path) -> None:
    ckpt = tmp_path / "run.json"
    first = run_main(str(DEMO), iterations=3, checkpoint=str(ckpt))
    assert first["checkpoint"] == str(ckpt)
    resumed = run_main(str(DEMO), iterations=6, checkpoint=str(ckpt), resume=True)
    straight = run_main(str(DEMO), iterations=6)
    assert resumed["steps"] == 6
    assert resumed["best"] == straight["best"]
