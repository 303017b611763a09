# Copyright (c) 2025 MCE Maintainers
# License: MIT
"""
Search runner CLI.

Runs a search space described by a YAML config until an iteration budget, a wall-clock
timeout, or the root generator's stopping condition.

- Determinism:
  All tie-breaking randomness derives from the run seed (config 'seed' or --seed), so the
  same config and seed reproduce the same exploration.

- Artifacts (with --artifacts-dir):
  <artifacts_dir>/<name>_<timestamp>/scores.csv, emissions.jsonl and result.json

- Checkpoints:
  --checkpoint PATH writes stream positions at the end of the run (and every
  --checkpoint-every draws); --resume continues from PATH.

- Exit status:
  0 success with a result, 2 configuration error, 3 search exhausted without success,
  4 timeout.

Usage:
  python -m scripts.run_search configs/demo.yaml --iterations 50 --artifacts-dir artifacts/search
  python -m scripts.run_search configs/demo.yaml seed=7 search.call_timeout_s=0.5
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, NoReturn, Optional, Sequence

from mce_core.errors import ConfigError
from mce_pipeline.config import load_config, parse_dotlist
from mce_pipeline.explorer import EXIT_CONFIG, SearchRun
from mce_pipeline.logging_utils import JsonIO, SearchLogger, configure_logging, make_run_dir


def run_main(
    config: str,
    *,
    iterations: Optional[int] = None,
    timeout: Optional[float] = None,
    seed: Optional[int] = None,
    checkpoint: Optional[str] = None,
    checkpoint_every: Optional[int] = None,
    resume: bool = False,
    artifacts_dir: Optional[str] = None,
    overrides: Sequence[str] = (),
    log_level: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Load, validate and run a search; return the outcome as a JSON-ready dict.

    Raises ConfigError (including checkpoint mismatches) before any stream is drawn from.
    """
    ov = parse_dotlist(list(overrides))
    if seed is not None:
        ov["seed"] = int(seed)
    cfg = load_config(config, ov)
    configure_logging(log_level or cfg.search.log_level)
    if resume and checkpoint is None:
        raise ConfigError("--resume needs --checkpoint PATH", "--resume")

    run_dir: Optional[Path] = None
    log: Optional[SearchLogger] = None
    if artifacts_dir is not None:
        run_dir = make_run_dir(Path(artifacts_dir), prefix=cfg.name)
        log = SearchLogger(run_dir)

    try:
        run = SearchRun(cfg, log=log)
        if resume:
            run.restore(checkpoint)  # type: ignore[arg-type]
        outcome = run.run(
            iterations=iterations,
            timeout_s=timeout,
            checkpoint_path=checkpoint,
            checkpoint_every=checkpoint_every,
        )
    finally:
        if log is not None:
            log.close()

    result = outcome.to_jsonable()
    result["name"] = cfg.name
    result["seed"] = cfg.seed
    result["config_fingerprint"] = cfg.fingerprint()
    if run_dir is not None:
        JsonIO.write(run_dir / "result.json", result)
        result["artifacts"] = str(run_dir)
    if checkpoint is not None:
        result["checkpoint"] = str(checkpoint)
    return result


def _exit2(msg: str) -> NoReturn:
    sys.stderr.write(msg.rstrip() + "\n")
    sys.exit(EXIT_CONFIG)


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        prog="run_search",
        description="Explore a composed search space and print a one-line JSON summary.",
    )
    p.add_argument("config", type=str, help="Path to the search-space YAML.")
    p.add_argument("overrides", nargs="*", help="Config overrides as key=value (e.g. search.iterations=20).")
    p.add_argument("--iterations", type=int, default=None, help="Root draws to make (default: config search.iterations).")
    p.add_argument("--timeout", type=float, default=None, help="Wall-clock limit in seconds.")
    p.add_argument("--seed", type=int, default=None, help="Override the config seed.")
    p.add_argument("--checkpoint", type=str, default=None, help="Checkpoint file to write (and read with --resume).")
    p.add_argument("--checkpoint-every", type=int, default=None, help="Also checkpoint every N root draws.")
    p.add_argument("--resume", action="store_true", help="Resume from --checkpoint.")
    p.add_argument("--artifacts-dir", type=str, default=None, help="Directory for scores.csv / emissions.jsonl.")
    p.add_argument("--log-level", type=str, default=None, help="Logging level (default: config search.log_level).")
    return p.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    try:
        result = run_main(
            args.config,
            iterations=args.iterations,
            timeout=args.timeout,
            seed=args.seed,
            checkpoint=args.checkpoint,
            checkpoint_every=args.checkpoint_every,
            resume=args.resume,
            artifacts_dir=args.artifacts_dir,
            overrides=args.overrides,
            log_level=args.log_level,
        )
    except ConfigError as e:
        _exit2(f"Configuration error: {e}")
    # Single-line JSON on stdout
    print(json.dumps(result, sort_keys=True))
    return int(result["exit_code"])


if __name__ == "__main__":
    sys.exit(main())


__all__ = ["run_main", "main"]
