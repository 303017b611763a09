# Copyright (c) 2025 MCE Maintainers
# License: MIT
"""
Call-scoped random sources.

Provides:
- stable_hash32: process-independent 32-bit hash of a key (unlike hash(), unaffected by PYTHONHASHSEED)
- derive_seed_sequence: numpy SeedSequence from a run seed and any number of keys
- derive_rng: numpy Generator scoped to one search/selection call

Determinism guarantees:
- derive_rng(seed, *keys) yields the same stream for the same seed and keys, in any
  process, regardless of call order. No global RNG state is read or modified.
"""

from __future__ import annotations

import hashlib
from typing import Any, List, Union

import numpy as np

Key = Union[int, str, tuple]


def stable_hash32(key: Any) -> int:
    """Stable 32-bit hash of repr(key)."""
    digest = hashlib.sha256(repr(key).encode("utf-8")).digest()
    return int.from_bytes(digest[:4], "little")


def _entropy(seed: int, keys: tuple) -> List[int]:
    words: List[int] = [int(seed) & 0xFFFFFFFF]
    for k in keys:
        if isinstance(k, bool):
            words.append(int(k))
        elif isinstance(k, int) and k >= 0:
            words.append(k & 0xFFFFFFFF)
        elif isinstance(k, tuple) and all(isinstance(x, int) and not isinstance(x, bool) and x >= 0 for x in k):
            words.append(len(k))
            words.extend(x & 0xFFFFFFFF for x in k)
        else:
            words.append(stable_hash32(k))
    return words


def derive_seed_sequence(seed: int, *keys: Key) -> np.random.SeedSequence:
    return np.random.SeedSequence(_entropy(seed, keys))


def derive_rng(seed: int, *keys: Key) -> np.random.Generator:
    """
    Build a Generator for exactly one call site.

    Example:
        rng = derive_rng(run_seed, "glued", (2, 0), "wire", 1)
    """
    return np.random.default_rng(derive_seed_sequence(seed, *keys))


__all__ = ["stable_hash32", "derive_seed_sequence", "derive_rng"]
