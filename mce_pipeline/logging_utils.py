# Copyright (c) 2025 MCE Maintainers
# License: MIT
"""
Logging and artifact utilities for search runs.

Filesystem-only; nothing here touches the engine.

Exports:
- configure_logging: one-call setup of the stdlib logging tree for the mce_* packages.
- CSVLogger: append-safe CSV writer, header written once per file.
- JSONLLogger: newline-delimited JSON writer.
- SearchLogger: per-run facade writing scores.csv and emissions.jsonl.
- JsonIO: small JSON read/write helpers.
- make_run_dir: timestamped artifact directory.
"""

from __future__ import annotations

import csv
import json
import logging
from dataclasses import asdict, is_dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Sequence, Union

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: Union[int, str] = "WARNING") -> None:
    """Attach a stderr handler to the mce_core / mce_pipeline loggers (idempotent)."""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    for name in ("mce_core", "mce_pipeline"):
        lg = logging.getLogger(name)
        lg.setLevel(level)
        if not any(getattr(h, "_mce_handler", False) for h in lg.handlers):
            h = logging.StreamHandler()
            h.setFormatter(logging.Formatter(LOG_FORMAT))
            h._mce_handler = True  # type: ignore[attr-defined]
            lg.addHandler(h)


# -------------------------
# Filesystem helpers
# -------------------------


def ensure_dir(path: Path) -> None:
    Path(path).mkdir(parents=True, exist_ok=True)


def timestamp_id() -> str:
    """Compact UTC timestamp for folder names."""
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")


def make_run_dir(root: Path, *, prefix: Optional[str] = None) -> Path:
    """
    Create root/<prefix>_<timestamp>/ (or root/<timestamp>/ without a prefix).

    A numeric suffix is appended when two runs start within the same second.
    """
    root = Path(root)
    ensure_dir(root)
    tid = timestamp_id()
    name = f"{prefix}_{tid}" if prefix else tid
    d = root / name
    n = 1
    while d.exists():
        d = root / f"{name}_{n}"
        n += 1
    ensure_dir(d)
    return d


# -------------------------
# CSV
# -------------------------


class CSVLogger:
    """
    Append-safe CSV writer.

    Parameters
    ----------
    path : str | Path
        Target CSV file.
    fieldnames : list[str] | None
        Column order; inferred from the first row's sorted keys when None.
    allow_extra : bool
        Ignore keys outside `fieldnames` instead of raising ValueError.
    """

    def __init__(
        self,
        path: Union[str, Path],
        fieldnames: Optional[Sequence[str]] = None,
        allow_extra: bool = False,
    ) -> None:
        self.path = Path(path)
        self._fieldnames = list(fieldnames) if fieldnames is not None else None
        self._allow_extra = bool(allow_extra)
        ensure_dir(self.path.parent)
        # an existing non-empty file already carries its header
        self._header_written = self.path.exists() and self.path.stat().st_size > 0
        self._f = None
        self._writer: Optional[csv.DictWriter] = None

    def write_row(self, row: Mapping[str, Any]) -> None:
        if self._f is None:
            self._f = self.path.open("a", newline="", encoding="utf-8")
        if self._writer is None:
            if self._fieldnames is None:
                self._fieldnames = sorted(row.keys())
            self._writer = csv.DictWriter(
                self._f,
                fieldnames=self._fieldnames,
                extrasaction="ignore" if self._allow_extra else "raise",
                restval="",
            )
            if not self._header_written:
                self._writer.writeheader()
                self._header_written = True
                self.flush()
        self._writer.writerow(row)

    def write_rows(self, rows: Iterable[Mapping[str, Any]]) -> None:
        for r in rows:
            self.write_row(r)

    def flush(self) -> None:
        if self._f is not None:
            self._f.flush()

    def close(self) -> None:
        try:
            if self._f is not None:
                self._f.flush()
                self._f.close()
        finally:
            self._f = None
            self._writer = None

    def __enter__(self) -> "CSVLogger":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


# -------------------------
# JSONL
# -------------------------


class JSONLLogger:
    """One JSON record per line, appended; `auto_timestamp` adds a 'ts' field when missing."""

    def __init__(self, path: Union[str, Path], auto_timestamp: bool = False) -> None:
        self.path = Path(path)
        self.auto_timestamp = bool(auto_timestamp)
        ensure_dir(self.path.parent)
        self._f = self.path.open("a", encoding="utf-8")

    def log(self, record: Mapping[str, Any]) -> None:
        data = dict(record)
        if self.auto_timestamp and "ts" not in data:
            data["ts"] = datetime.now(timezone.utc).isoformat()
        self._f.write(json.dumps(data, ensure_ascii=False, sort_keys=True) + "\n")

    def flush(self) -> None:
        if self._f is not None:
            self._f.flush()

    def close(self) -> None:
        try:
            if self._f is not None:
                self._f.flush()
                self._f.close()
        finally:
            self._f = None

    def __enter__(self) -> "JSONLLogger":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


# -------------------------
# Search run facade
# -------------------------


SCORE_FIELDS = ["step", "index", "score", "best", "identity"]


class SearchLogger:
    """
    Artifacts of one search run under `run_dir`:
    - scores.csv: one row per root emission (step, index, score, best score so far, identity key)
    - emissions.jsonl: one record per root emission plus lifecycle events
    """

    def __init__(self, run_dir: Union[str, Path]) -> None:
        self.run_dir = Path(run_dir)
        ensure_dir(self.run_dir)
        self.scores = CSVLogger(self.run_dir / "scores.csv", fieldnames=SCORE_FIELDS)
        self.events = JSONLLogger(self.run_dir / "emissions.jsonl", auto_timestamp=True)

    def log_emission(
        self,
        step: int,
        index: int,
        identity: str,
        score: Optional[float] = None,
        best: Optional[float] = None,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.scores.write_row({
            "step": step,
            "index": index,
            "score": "" if score is None else score,
            "best": "" if best is None else best,
            "identity": identity,
        })
        rec = {"event": "emission", "step": step, "index": index, "identity": identity, "score": score}
        if extra:
            rec.update(extra)
        self.events.log(rec)

    def log_event(self, event: str, **fields: Any) -> None:
        self.events.log({"event": event, **fields})

    def flush(self) -> None:
        self.scores.flush()
        self.events.flush()

    def close(self) -> None:
        self.scores.close()
        self.events.close()

    def __enter__(self) -> "SearchLogger":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


# -------------------------
# JSON helpers
# -------------------------


class JsonIO:
    @staticmethod
    def write(path: Path, obj: Any, *, sort_keys: bool = True, indent: int = 2) -> None:
        path = Path(path)
        ensure_dir(path.parent)
        if is_dataclass(obj):
            obj = asdict(obj)
        tmp = path.with_name(path.name + ".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(obj, f, indent=indent, sort_keys=sort_keys)
        tmp.replace(path)

    @staticmethod
    def read(path: Path) -> Any:
        with Path(path).open("r", encoding="utf-8") as f:
            return json.load(f)


__all__ = [
    "LOG_FORMAT",
    "configure_logging",
    "CSVLogger",
    "JSONLLogger",
    "SearchLogger",
    "SCORE_FIELDS",
    "JsonIO",
    "make_run_dir",
    "ensure_dir",
    "timestamp_id",
]
