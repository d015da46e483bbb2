# Copyright (c) 2025.
# This file is part of jaxsam, released under the MIT License.
"""
Diagonal Gaussian noise models.

A noise model whitens a raw residual so that its squared norm is a
statistically meaningful error: ``whiten(r) = r / sigmas``. Noise models are
frozen and are meant to be shared: every factor built from the same sensor
can hold the same object.
"""

from __future__ import annotations
from dataclasses import dataclass

import jax.numpy as jnp


@dataclass(frozen=True, eq=False)
class DiagonalNoise:
    """Independent per-axis standard deviations."""
    sigmas: jnp.ndarray

    def __post_init__(self) -> None:
        s = jnp.asarray(self.sigmas, dtype=jnp.float64).reshape(-1)
        if s.shape[0] == 0 or bool(jnp.any(s <= 0.0)):
            raise ValueError(f"Noise sigmas must be positive, got {s}")
        object.__setattr__(self, "sigmas", s)

    @property
    def dim(self) -> int:
        return int(self.sigmas.shape[0])

    def whiten(self, r: jnp.ndarray) -> jnp.ndarray:
        return whiten_residual(r, self.sigmas)


def whiten_residual(r: jnp.ndarray, sigmas: jnp.ndarray) -> jnp.ndarray:
    """Array form of `DiagonalNoise.whiten`, usable inside jitted kernels."""
    return r / sigmas


def isotropic(dim: int, sigma: float) -> DiagonalNoise:
    return DiagonalNoise(jnp.full((dim,), float(sigma)))


def unit(dim: int) -> DiagonalNoise:
    return DiagonalNoise(jnp.ones(dim))
