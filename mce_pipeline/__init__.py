# Copyright (c) 2025 MCE Maintainers
# License: MIT

"""
Pipeline package: configuration, run orchestration, checkpoints and artifacts.

Primary exports
- SearchConfig / SearchSettings and load_config: YAML search spaces -> validated configs
- SearchRun / SearchOutcome: drive the root stream to a budget, timeout or stop condition
- Checkpoint, save_checkpoint, load_checkpoint: pause and resume long searches
- SearchLogger: per-run scores.csv and emissions.jsonl

See:
- scripts/run_search.py
- configs/demo.yaml
"""

from __future__ import annotations

from .config import SearchConfig, SearchSettings, load_config, parse_config
from .checkpoint import Checkpoint, CheckpointError, load_checkpoint, save_checkpoint
from .explorer import SearchOutcome, SearchRun
from .logging_utils import SearchLogger

__all__ = [
    "SearchConfig",
    "SearchSettings",
    "load_config",
    "parse_config",
    "Checkpoint",
    "CheckpointError",
    "load_checkpoint",
    "save_checkpoint",
    "SearchOutcome",
    "SearchRun",
    "SearchLogger",
]
