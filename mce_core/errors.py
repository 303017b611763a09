# Copyright (c) 2025 MCE Maintainers
# License: MIT
"""
Exception hierarchy for the Model Composition Explorer (MCE).

Three families:
- ConfigError: detected while building a search space; always fatal and located.
- SearchFailure: per-candidate failures (no admissible map, budget exceeded);
  callers recover locally by skipping the candidate.
- LayerExhausted: a composite gave up on its layer; consumed by streams and
  turned into the sequence simply ending.
"""

from __future__ import annotations

from typing import Optional, Sequence


class MCEError(Exception):
    """Base class for all MCE errors."""


# -------------------------
# Configuration errors (fatal, build time)
# -------------------------


class ConfigError(MCEError):
    """Malformed search-space configuration, with an optional location path."""

    def __init__(self, message: str, location: Optional[str] = None) -> None:
        self.message = message
        self.location = location
        super().__init__(f"{location}: {message}" if location else message)


class MissingFieldError(ConfigError):
    pass


class DanglingReferenceError(ConfigError):
    pass


class SchemaMismatchError(ConfigError):
    pass


class SharingPolicyError(ConfigError):
    pass


class SelfGluingError(ConfigError):
    pass


class CycleError(ConfigError):
    def __init__(self, cycle: Sequence[str], location: Optional[str] = None) -> None:
        self.cycle = tuple(cycle)
        path = " -> ".join(self.cycle + self.cycle[:1])
        super().__init__(f"dependency cycle: {path}", location)


class MultipleRootsError(ConfigError):
    def __init__(self, roots: Sequence[str], location: Optional[str] = None) -> None:
        self.roots = tuple(sorted(roots))
        super().__init__(
            f"expected exactly one root generator, found {len(self.roots)}: {', '.join(self.roots)}",
            location,
        )


# -------------------------
# Per-candidate failures (recoverable)
# -------------------------


class SearchFailure(MCEError):
    """No admissible map could be produced for the current candidate."""


class NoHomomorphism(SearchFailure):
    pass


class SearchTimeout(SearchFailure):
    def __init__(self, message: str = "search budget exceeded", steps: int = 0) -> None:
        self.steps = int(steps)
        super().__init__(message)


# -------------------------
# Layer exhaustion
# -------------------------


class LayerExhausted(MCEError):
    def __init__(self, key: str, skips: int) -> None:
        self.key = key
        self.skips = int(skips)
        super().__init__(f"{key}: {skips} consecutive inadmissible candidates")


__all__ = [
    "MCEError",
    "ConfigError",
    "MissingFieldError",
    "DanglingReferenceError",
    "SchemaMismatchError",
    "SharingPolicyError",
    "SelfGluingError",
    "CycleError",
    "MultipleRootsError",
    "SearchFailure",
    "NoHomomorphism",
    "SearchTimeout",
    "LayerExhausted",
]
