# Copyright (c) 2025 MCE Maintainers
# License: MIT
"""
Checkpoint / resume for search runs.

A checkpoint is plain JSON: run identity (config fingerprint, seed, root), the number of
root draws consumed, the best result so far, and every stream's position state
(indices, coordinates, frontiers, visited sets, emitted identity keys, loss histories).
Instances are never stored; they are rematerialized from coordinates after resume.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

from mce_core.errors import ConfigError
from mce_pipeline.logging_utils import JsonIO

CHECKPOINT_VERSION = 2


class CheckpointError(ConfigError):
    """Checkpoint missing, malformed, or written for a different search space."""


@dataclass
class Checkpoint:
    fingerprint: str
    name: str
    seed: int
    root: str
    step: int
    streams: Dict[str, Any]
    best: Optional[Dict[str, Any]] = None
    elapsed_s: float = 0.0
    version: int = CHECKPOINT_VERSION
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_jsonable(cls, data: Mapping[str, Any]) -> "Checkpoint":
        try:
            return cls(
                fingerprint=str(data["fingerprint"]),
                name=str(data["name"]),
                seed=int(data["seed"]),
                root=str(data["root"]),
                step=int(data["step"]),
                streams=dict(data["streams"]),
                best=None if data.get("best") is None else dict(data["best"]),
                elapsed_s=float(data.get("elapsed_s", 0.0)),
                version=int(data.get("version", CHECKPOINT_VERSION)),
                extra=dict(data.get("extra") or {}),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise CheckpointError(f"malformed checkpoint: {e!r}") from e


def save_checkpoint(path: Union[str, Path], ckpt: Checkpoint) -> None:
    JsonIO.write(Path(path), asdict(ckpt))


def load_checkpoint(
    path: Union[str, Path],
    *,
    fingerprint: Optional[str] = None,
    seed: Optional[int] = None,
) -> Checkpoint:
    """Read a checkpoint and check that it belongs to the given config and seed."""
    p = Path(path)
    if not p.exists():
        raise CheckpointError("checkpoint file not found", str(p))
    try:
        data = JsonIO.read(p)
    except ValueError as e:
        raise CheckpointError(f"checkpoint is not valid JSON: {e}", str(p)) from e
    if not isinstance(data, Mapping):
        raise CheckpointError("checkpoint must be a JSON object", str(p))
    ckpt = Checkpoint.from_jsonable(data)
    if ckpt.version != CHECKPOINT_VERSION:
        raise CheckpointError(f"unsupported checkpoint version {ckpt.version}", str(p))
    if fingerprint is not None and ckpt.fingerprint != fingerprint:
        raise CheckpointError("checkpoint was written for a different configuration", str(p))
    if seed is not None and ckpt.seed != seed:
        raise CheckpointError(f"checkpoint seed {ckpt.seed} differs from run seed {seed}", str(p))
    return ckpt


__all__ = ["CHECKPOINT_VERSION", "CheckpointError", "Checkpoint", "save_checkpoint", "load_checkpoint"]
