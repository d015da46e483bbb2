# Copyright (c) 2025.
# This file is part of jaxsam, released under the MIT License.
"""
Core typed data structures for jaxsam.

This module defines the lightweight containers used throughout the factor
graph engine. They store only structure and values; all numerical work is
done by JAX functions in `slam.measurements`, `core.factor_graph` and the
optimization layer.

Classes
-------
Key
    Variable identifier made of a symbol character and an integer index,
    e.g. ``Key("x", 1)`` for pose 1 or ``Key("l", 3)`` for landmark 3.
    Keys are totally ordered (symbol first, then index) so that every
    traversal of a graph or assignment is deterministic.

Variable
    A node of the factor graph:
    - key: its `Key`
    - type: manifold type tag ("pose3", "so4", "point2", ...), which selects
      the chart used by retraction and linearization
    - value: the current estimate, a JAX array

Factor
    A constraint among a small fixed set of variables:
    - id: insertion index inside its graph
    - type: tag selecting a residual function from the closed registry in
      `slam.measurements`
    - keys: ordered keys of the connected variables
    - params: measurement parameters (JAX arrays only, so factors of one
      type can share a jitted linearization)
    - noise: shared, immutable noise model used to whiten the residual

Notes
-----
Factors are frozen: once appended to a graph they never change. Several
factors may hold the same noise model object; none of them may mutate it.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, NewType, Tuple

FactorId = NewType("FactorId", int)


@dataclass(frozen=True, order=True)
class Key:
    """Symbol + index variable identifier."""
    symbol: str
    index: int

    def __post_init__(self) -> None:
        if len(self.symbol) != 1 or not self.symbol.isalpha():
            raise ValueError(f"Key symbol must be a single letter, got {self.symbol!r}")
        if self.index < 0:
            raise ValueError(f"Key index must be non-negative, got {self.index}")

    @classmethod
    def parse(cls, text: str) -> "Key":
        """Parse ``"x12"`` into ``Key("x", 12)``."""
        text = text.strip()
        if len(text) < 2 or not text[1:].isdigit():
            raise ValueError(f"Cannot parse key from {text!r}")
        return cls(text[0], int(text[1:]))

    def __str__(self) -> str:
        return f"{self.symbol}{self.index}"


def symbol(c: str, j: int) -> Key:
    return Key(c, int(j))


def as_key(k: Any) -> Key:
    """Accept a `Key` or its string form."""
    if isinstance(k, Key):
        return k
    if isinstance(k, str):
        return Key.parse(k)
    raise TypeError(f"Expected Key or str, got {type(k).__name__}")


@dataclass
class Variable:
    """Optimization variable node in the factor graph."""
    key: Key
    type: str          # "pose3", "so4", "point2", "point3", "vector", "camera_snavely"
    value: Any         # JAX array


@dataclass(frozen=True)
class Factor:
    """Constraint connecting variables."""
    id: FactorId
    type: str          # "prior", "between", "odometry", "landmark_observation", ...
    keys: Tuple[Key, ...]
    params: Dict[str, Any] = field(default_factory=dict)
    noise: Any = None  # slam.noise.DiagonalNoise, shared by reference
