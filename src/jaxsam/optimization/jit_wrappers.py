# Copyright (c) 2025.
# This file is part of jaxsam, released under the MIT License.
"""
JIT-compiled per-factor-type kernels.

Every factor of a given type, connected to variables of the same manifolds,
runs the same computation with different arrays. This module builds that
computation once and jits it:

    • whiten(xs, params, sigmas)       -> whitened residual r
    • linearize(xs, params, sigmas)    -> (J_1, ..., J_k), r

where J_i = ∂ r(x_1, ..., x_i ⊕ δ_i, ..., x_k) / ∂ δ_i at δ = 0, i.e. the
Jacobian in each variable's *chart* coordinates, obtained by forward-mode
autodiff through the chart's retraction.

Kernels are cached on (factor type, manifold names), so a graph with
thousands of observation factors compiles one kernel for all of them. JAX
re-traces automatically when array shapes differ.

Notes
-----
The cached functions are pure: the graph passes values, params and noise
sigmas as arguments, never through closures, so no stale state can leak
between graphs or iterations.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, Tuple

import jax
import jax.numpy as jnp

from jaxsam.slam.manifold import MANIFOLDS
from jaxsam.slam.measurements import get_factor_spec
from jaxsam.slam.noise import whiten_residual


@dataclass(frozen=True)
class JittedFactorFns:
    """
    Jitted whitening and linearization kernels for one factor signature.

    Usage:
        fns = factor_kernels("odometry", ("se3", "se3"))
        r = fns.whiten(xs, params, sigmas)
        jacobians, r = fns.linearize(xs, params, sigmas)
    """
    factor_type: str
    manifolds: Tuple[str, ...]
    whiten: Callable
    linearize: Callable

    @staticmethod
    def build(factor_type: str, manifolds: Tuple[str, ...]) -> "JittedFactorFns":
        spec = get_factor_spec(factor_type)
        charts = tuple(MANIFOLDS[m] for m in manifolds)

        def whitened(xs, params, sigmas):
            return whiten_residual(spec.residual(xs, params, charts), sigmas)

        def whitened_at(deltas, xs, params, sigmas):
            moved = tuple(c.retract(x, d) for c, x, d in zip(charts, xs, deltas))
            return whitened(moved, params, sigmas)

        def linearize(xs, params, sigmas):
            deltas = tuple(
                jnp.zeros(c.tangent_dim(x), dtype=x.dtype) for c, x in zip(charts, xs)
            )
            r = whitened(xs, params, sigmas)
            jacobians = jax.jacfwd(whitened_at, argnums=0)(deltas, xs, params, sigmas)
            return jacobians, r

        return JittedFactorFns(
            factor_type=factor_type,
            manifolds=manifolds,
            whiten=jax.jit(whitened),
            linearize=jax.jit(linearize),
        )


@lru_cache(maxsize=None)
def factor_kernels(factor_type: str, manifolds: Tuple[str, ...]) -> JittedFactorFns:
    return JittedFactorFns.build(factor_type, manifolds)
