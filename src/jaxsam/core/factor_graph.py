"""
Nonlinear factor graph for jaxsam.

This module implements the central structure of the system: an ordered
collection of factors, each a probabilistic constraint among a few
variables, that can report its total error at an assignment and produce its
linearization for the optimizer.

The FactorGraph stores:
    - Factors, in insertion order (the order errors are summed in)
    - Nothing else: variable values live in `core.values.Values`, and the
      residual functions live in the closed registry
      `slam.measurements.FACTOR_TYPES`

Key Features
------------
• Deterministic error
    error(values) = ½ Σ_f ‖whitened residual_f‖², summed in insertion order
    so the same graph and assignment always give the same float.

• Chart-based linearization
    Each factor's Jacobian is taken with respect to the local chart
    coordinates of its variables, ∂ r(x ⊕ δ)/∂δ at δ = 0, by forward-mode
    autodiff through the retraction (see `optimization.jit_wrappers`).

• Fail-fast validation
    Unknown factor types, wrong arity, wrong variable types and missing
    variables are reported with descriptive errors instead of computing
    against defaults.

Primary Methods
---------------
add_factor(factor_type, keys, params, noise)
    Append one factor; returns its FactorId.

error(values), error_vector(values), factor_error(factor, values)
    Whitened residuals and the scalar objective.

linearize(values, ordering=None)
    Returns a `GaussianFactorGraph` of Jacobian factors A δ ≈ b with
    b = −r, ready for elimination.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

import jax.numpy as jnp
from loguru import logger

from .errors import MissingVariableError
from .types import Factor, FactorId, Key, as_key
from jaxsam.optimization.jit_wrappers import factor_kernels
from jaxsam.optimization.linear import GaussianFactorGraph, JacobianFactor
from jaxsam.slam.manifold import get_manifold_for_var_type
from jaxsam.slam.measurements import get_factor_spec
from jaxsam.slam.noise import DiagonalNoise


class FactorGraph:
    """Ordered, append-only collection of nonlinear factors."""

    def __init__(self) -> None:
        self.factors: List[Factor] = []

    def add(self, factor: Factor) -> None:
        assert factor.id == len(self.factors), "factor ids must follow insertion order"
        self.factors.append(factor)

    def add_factor(
        self,
        factor_type: str,
        keys: Iterable[Any],
        params: Optional[Dict[str, Any]] = None,
        noise: Optional[DiagonalNoise] = None,
    ) -> FactorId:
        """
        Allocate a new factor id, create the Factor, append it, and return
        its FactorId.
        """
        spec = get_factor_spec(factor_type)
        keys = tuple(as_key(k) for k in keys)
        if len(keys) != spec.arity:
            raise ValueError(
                f"Factor type '{factor_type}' connects {spec.arity} variable(s), got {len(keys)}"
            )
        if noise is None:
            raise ValueError(f"Factor type '{factor_type}' requires a noise model")

        params = {
            name: jnp.asarray(v, dtype=jnp.float64) for name, v in (params or {}).items()
        }
        fid = FactorId(len(self.factors))
        self.add(Factor(id=fid, type=factor_type, keys=keys, params=params, noise=noise))
        return fid

    def size(self) -> int:
        return len(self.factors)

    def __len__(self) -> int:
        return len(self.factors)

    def __iter__(self) -> Iterator[Factor]:
        return iter(self.factors)

    def keys(self) -> List[Key]:
        """Every key referenced by at least one factor, sorted."""
        return sorted({k for f in self.factors for k in f.keys})

    # --- evaluation ---

    def _gather(self, factor: Factor, values) -> Tuple[Tuple[jnp.ndarray, ...], Tuple[str, ...]]:
        spec = get_factor_spec(factor.type)
        xs = []
        manifolds = []
        var_types = []
        for slot, key in enumerate(factor.keys):
            if key not in values:
                raise MissingVariableError(key, f"referenced by factor {factor.id} ({factor.type})")
            var_type = values.type_of(key)
            if spec.var_types is not None and var_type not in spec.var_types[slot]:
                raise ValueError(
                    f"Factor {factor.id} ({factor.type}) expects {spec.var_types[slot]} "
                    f"for {key}, got '{var_type}'"
                )
            xs.append(values.at(key))
            manifolds.append(get_manifold_for_var_type(var_type))
            var_types.append(var_type)
        if spec.same_type and len(set(var_types)) != 1:
            raise ValueError(
                f"Factor {factor.id} ({factor.type}) connects mismatched types {var_types}"
            )
        return tuple(xs), tuple(manifolds)

    def _check_dim(self, factor: Factor, r: jnp.ndarray) -> None:
        if r.shape[0] != factor.noise.dim:
            raise ValueError(
                f"Factor {factor.id} ({factor.type}) has a {r.shape[0]}-d residual "
                f"but a {factor.noise.dim}-d noise model"
            )

    def factor_error(self, factor: Factor, values) -> jnp.ndarray:
        """Whitened residual of one factor."""
        xs, manifolds = self._gather(factor, values)
        kernels = factor_kernels(factor.type, manifolds)
        r = kernels.whiten(xs, factor.params, factor.noise.sigmas)
        self._check_dim(factor, r)
        return r

    def error_vector(self, values) -> jnp.ndarray:
        res = [self.factor_error(f, values) for f in self.factors]
        if not res:
            return jnp.zeros((0,))
        return jnp.concatenate(res)

    def error(self, values) -> float:
        """½ Σ ‖whitened residual‖², in insertion order."""
        total = 0.0
        for f in self.factors:
            r = self.factor_error(f, values)
            total += 0.5 * float(jnp.dot(r, r))
        return total

    # --- linearization ---

    def linearize_factor(self, factor: Factor, values) -> JacobianFactor:
        xs, manifolds = self._gather(factor, values)
        kernels = factor_kernels(factor.type, manifolds)
        jacobians, r = kernels.linearize(xs, factor.params, factor.noise.sigmas)
        self._check_dim(factor, r)
        return JacobianFactor(keys=factor.keys, blocks=tuple(jacobians), b=-r)

    def linearize(self, values, ordering: Optional[Iterable[Key]] = None) -> GaussianFactorGraph:
        """
        Linear factor graph at `values`. When an ordering is given, every
        key of the graph must appear in it.
        """
        if ordering is not None:
            in_order = set(ordering)
            for key in self.keys():
                if key not in in_order:
                    raise MissingVariableError(key, "not in ordering")
        gfg = GaussianFactorGraph(self.linearize_factor(f, values) for f in self.factors)
        logger.debug("Linearized {} factors", len(gfg))
        return gfg
