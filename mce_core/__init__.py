# Copyright (c) 2025 MCE Maintainers
# License: MIT

"""
Core package for the Model Composition Explorer (MCE).

Primary modules
- interfaces: schema, homomorphisms, and Protocols for instances, sources and search
- instance_mem: immutable in-memory model instances and builders (empty, terminal, from_mapping)
- homomorphism: constrained homomorphism search with budgets and seeded tie-breaking
- pushout / additive: gluing along junction overlaps and the additive stream
- pullback / multiplicative: sliced products and the breadth-first product stream
- loss: objectives, histories and stop criteria
- scheduler: validated dependency arena and on-demand stream graph

This __init__ consolidates common exports for convenience:
    from mce_core import (
        Schema, InMemoryModelInstance, DefaultHomomorphismSearch,
        GeneratorDecl, WiringPattern, ProductSpec, build,
    )
"""

from __future__ import annotations

__all__ = [
    # Data model
    "Schema",
    "Homomorphism",
    "Direction",
    "HistoryEntry",
    "InMemoryModelInstance",
    "empty",
    "terminal",
    "from_mapping",
    # Protocols
    "ModelInstanceOps",
    "MapConstraint",
    "PrimitiveSource",
    "HomomorphismSearch",
    # Constraints
    "TagConstraint",
    "PinConstraint",
    "FilterConstraint",
    "ChaseConstraint",
    # Search
    "SearchBudget",
    "DefaultHomomorphismSearch",
    # Generators
    "Box",
    "Port",
    "Junction",
    "Wire",
    "WiringPattern",
    "ProductSpec",
    "PrimitiveSpec",
    "GeneratorDecl",
    # Loss
    "LossSpec",
    "StopCriterion",
    "LossEvaluator",
    # Scheduling
    "Schedule",
    "StreamGraph",
    "build",
    # Errors
    "MCEError",
    "ConfigError",
    "SearchFailure",
    # Version
    "__version__",
]

__version__ = "0.1.0"

from .interfaces import (
    Direction,
    HistoryEntry,
    Homomorphism,
    HomomorphismSearch,
    MapConstraint,
    ModelInstanceOps,
    PrimitiveSource,
    Schema,
)
from .errors import ConfigError, MCEError, SearchFailure
from .instance_mem import InMemoryModelInstance, empty, from_mapping, terminal
from .constraints import ChaseConstraint, FilterConstraint, PinConstraint, TagConstraint
from .homomorphism import DefaultHomomorphismSearch, SearchBudget
from .generators import Box, GeneratorDecl, Junction, Port, PrimitiveSpec, ProductSpec, Wire, WiringPattern
from .loss import LossEvaluator, LossSpec, StopCriterion
from .scheduler import Schedule, StreamGraph, build
