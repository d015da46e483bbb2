# Copyright (c) 2025.
# This file is part of jaxsam, released under the MIT License.
"""
Manifold charts for the variable types of jaxsam.

This module centralizes the *geometric* logic that lets the optimizer work
in a local tangent space while the state lives on a manifold:

    • A `Chart` bundles, for one manifold:
        - `retract(x, delta)`   x ⊕ δ, the update rule
        - `local(x, y)`         y ⊖ x, the exact inverse of retract at x
        - `between(x, y)`       group difference x⁻¹ ∘ y (or y − x)
        - `tangent_dim(x)`      size of δ

    • Metadata that maps variable types to their manifold model:
        - `TYPE_TO_MANIFOLD`           (var type → "se3", "so4", "euclidean")
        - `get_manifold_for_var_type`, `get_chart`
        - `build_manifold_metadata`    (Key → slice, manifold type)

Charts
------
se3
    Right retraction T ∘ Exp(δ) with the SE(3) exponential map and its
    logarithm as local coordinates.

so4
    Cayley chart Q ∘ Cay(δ). It is not the exponential map; it is cheaper,
    exact only near the evaluation point, and differentiable everywhere the
    optimizer needs it.

euclidean
    x + δ and y − x.

All chart functions are pure JAX and safe under `jax.jit` and
`jax.jacfwd`; the linearization in `core.factor_graph` differentiates
residuals *through* `retract` at δ = 0.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Tuple

import jax.numpy as jnp

from jaxsam.core.types import Key
from jaxsam.core import math3d
from jaxsam.core import so4


@dataclass(frozen=True)
class Chart:
    name: str
    retract: Callable[[jnp.ndarray, jnp.ndarray], jnp.ndarray]
    local: Callable[[jnp.ndarray, jnp.ndarray], jnp.ndarray]
    between: Callable[[jnp.ndarray, jnp.ndarray], jnp.ndarray]
    tangent_dim: Callable[[jnp.ndarray], int]


def _euclidean_retract(x: jnp.ndarray, delta: jnp.ndarray) -> jnp.ndarray:
    return x + delta


def _euclidean_local(x: jnp.ndarray, y: jnp.ndarray) -> jnp.ndarray:
    return y - x


SE3 = Chart(
    name="se3",
    retract=math3d.se3_retract,
    local=math3d.se3_local,
    between=math3d.relative_pose_se3,
    tangent_dim=lambda x: 6,
)

SO4 = Chart(
    name="so4",
    retract=so4.so4_retract,
    local=so4.so4_local,
    between=so4.so4_between,
    tangent_dim=lambda x: so4.DIM,
)

EUCLIDEAN = Chart(
    name="euclidean",
    retract=_euclidean_retract,
    local=_euclidean_local,
    between=_euclidean_local,
    tangent_dim=lambda x: int(x.shape[0]),
)

MANIFOLDS: Dict[str, Chart] = {c.name: c for c in (SE3, SO4, EUCLIDEAN)}

TYPE_TO_MANIFOLD: Dict[str, str] = {
    "pose3": "se3",
    "so4": "so4",
    "point2": "euclidean",
    "point3": "euclidean",
    "vector": "euclidean",
    "camera_snavely": "euclidean",
}

# Expected value shapes per variable type; None means any 1-D length.
TYPE_TO_SHAPE: Dict[str, Tuple[int, ...]] = {
    "pose3": (4, 4),
    "so4": (4, 4),
    "point2": (2,),
    "point3": (3,),
    "camera_snavely": (9,),
}


def get_manifold_for_var_type(var_type: str) -> str:
    try:
        return TYPE_TO_MANIFOLD[var_type]
    except KeyError:
        raise ValueError(
            f"Unknown variable type '{var_type}', expected one of {sorted(TYPE_TO_MANIFOLD)}"
        ) from None


def get_chart(var_type: str) -> Chart:
    return MANIFOLDS[get_manifold_for_var_type(var_type)]


def check_value_shape(var_type: str, value: jnp.ndarray) -> None:
    expected = TYPE_TO_SHAPE.get(var_type)
    shape = tuple(value.shape)
    if expected is None:
        if len(shape) != 1:
            raise ValueError(f"'{var_type}' values must be 1-D, got shape {shape}")
    elif shape != expected:
        raise ValueError(f"'{var_type}' values must have shape {expected}, got {shape}")


def build_manifold_metadata(
    values,
    ordering: Iterable[Key],
) -> Tuple[Dict[Key, slice], Dict[Key, str]]:
    """
    Build metadata for solvers that work on one flat tangent vector:

      - block_slices: Key -> slice of the variable's tangent block, laid out
        in ordering order
      - manifold_types: Key -> 'se3', 'so4' or 'euclidean'
    """
    block_slices: Dict[Key, slice] = {}
    manifold_types: Dict[Key, str] = {}

    offset = 0
    for key in ordering:
        var_type = values.type_of(key)
        chart = get_chart(var_type)
        dim = chart.tangent_dim(values.at(key))
        block_slices[key] = slice(offset, offset + dim)
        manifold_types[key] = chart.name
        offset += dim

    return block_slices, manifold_types
