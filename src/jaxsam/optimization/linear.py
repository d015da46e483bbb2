# Copyright (c) 2025.
# This file is part of jaxsam, released under the MIT License.
"""
Linearized factor graphs and their solution by variable elimination.

A nonlinear factor graph linearized at an assignment becomes a list of
`JacobianFactor`s, each a dense block row

    A_1 δ_1 + ... + A_k δ_k ≈ b

over the tangent-space deltas of its k variables. The least-squares
solution of the whole system is found by sequential elimination:

    1. For the next key in the ordering, gather every factor touching it.
    2. Stack those factors into one dense [A | b] over the key and its
       separator (the other keys involved), and QR-factorize it.
    3. The first d rows form a Gaussian conditional
           R δ_key + S δ_separator = d
       and the remaining rows form a new factor on the separator, which
       goes back into the pool.
    4. Once every key is eliminated, back-substitute through the
       conditionals in reverse order.

The ordering decides how large the separators become (fill-in) and hence
the cost; the solution does not depend on it.

Levenberg–Marquardt damping is applied by `GaussianFactorGraph.damped`,
which appends √λ·I prior rows per variable; in normal-equation form that
adds λ to the diagonal of AᵀA. A dense normal-equations path
(`solve_dense`) is kept for small problems and for cross-checking the
elimination.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Set, Tuple

import jax.numpy as jnp
from jax.scipy.linalg import solve_triangular
from loguru import logger

from jaxsam.core.errors import IndeterminantLinearSystemError, MissingVariableError
from jaxsam.core.types import Key

_RANK_TOL = 1e-12


@dataclass(frozen=True)
class JacobianFactor:
    """Block row Σ_k A_k δ_k ≈ b."""
    keys: Tuple[Key, ...]
    blocks: Tuple[jnp.ndarray, ...]
    b: jnp.ndarray

    @property
    def rows(self) -> int:
        return int(self.b.shape[0])

    def block(self, key: Key) -> jnp.ndarray:
        return self.blocks[self.keys.index(key)]

    def residual(self, delta: Mapping[Key, jnp.ndarray]) -> jnp.ndarray:
        r = -self.b
        for k, A in zip(self.keys, self.blocks):
            r = r + A @ delta[k]
        return r

    def error(self, delta: Mapping[Key, jnp.ndarray]) -> float:
        r = self.residual(delta)
        return 0.5 * float(jnp.dot(r, r))


@dataclass(frozen=True)
class GaussianConditional:
    """R δ_key + Σ_p S_p δ_p = d, with R upper triangular."""
    key: Key
    R: jnp.ndarray
    parents: Tuple[Key, ...]
    S: Tuple[jnp.ndarray, ...]
    d: jnp.ndarray

    def solve(self, solution: Mapping[Key, jnp.ndarray]) -> jnp.ndarray:
        rhs = self.d
        for p, S in zip(self.parents, self.S):
            rhs = rhs - S @ solution[p]
        return solve_triangular(self.R, rhs, lower=False)


@dataclass
class GaussianBayesNet:
    """Conditionals in elimination order."""
    conditionals: List[GaussianConditional] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.conditionals)

    def back_substitute(self) -> Dict[Key, jnp.ndarray]:
        solution: Dict[Key, jnp.ndarray] = {}
        for cond in reversed(self.conditionals):
            solution[cond.key] = cond.solve(solution)
        return solution


class GaussianFactorGraph:
    """Linear factor graph; rebuilt at every linearization point."""

    def __init__(self, factors: Optional[Iterable[JacobianFactor]] = None) -> None:
        self.factors: List[JacobianFactor] = list(factors) if factors else []

    def add(self, factor: JacobianFactor) -> None:
        self.factors.append(factor)

    def __len__(self) -> int:
        return len(self.factors)

    def __iter__(self) -> Iterator[JacobianFactor]:
        return iter(self.factors)

    def keys(self) -> List[Key]:
        return sorted({k for f in self.factors for k in f.keys})

    def dims(self) -> Dict[Key, int]:
        dims: Dict[Key, int] = {}
        for f in self.factors:
            for k, A in zip(f.keys, f.blocks):
                d = int(A.shape[1])
                if dims.setdefault(k, d) != d:
                    raise ValueError(f"Inconsistent block width for {k}: {dims[k]} vs {d}")
        return dims

    def error(self, delta: Mapping[Key, jnp.ndarray]) -> float:
        return sum(f.error(delta) for f in self.factors)

    def hessian_diagonal(self) -> Dict[Key, jnp.ndarray]:
        """diag(AᵀA) restricted to each variable's block."""
        diag: Dict[Key, jnp.ndarray] = {}
        for f in self.factors:
            for k, A in zip(f.keys, f.blocks):
                col = jnp.sum(A * A, axis=0)
                diag[k] = diag[k] + col if k in diag else col
        return diag

    # --- damping ---

    def damped(
        self,
        lam: float,
        diagonal: bool = False,
        min_diagonal: float = 1e-6,
        max_diagonal: float = 1e32,
    ) -> "GaussianFactorGraph":
        """
        Copy of the graph with √λ·I (or √(λ·diag(AᵀA))) prior rows appended
        for every variable, so that the normal equations become
        (AᵀA + λD) δ = Aᵀb.
        """
        dims = self.dims()
        hdiag = self.hessian_diagonal() if diagonal else {}
        damped = GaussianFactorGraph(self.factors)
        for k in sorted(dims):
            d = dims[k]
            if diagonal:
                D = jnp.clip(hdiag[k], min_diagonal, max_diagonal)
            else:
                D = jnp.ones(d)
            damped.add(
                JacobianFactor(keys=(k,), blocks=(jnp.diag(jnp.sqrt(lam * D)),), b=jnp.zeros(d))
            )
        return damped

    # --- elimination ---

    def eliminate_sequential(self, ordering: Iterable[Key]) -> GaussianBayesNet:
        """
        Eliminate the variables one at a time in `ordering` by dense QR of
        each variable's stacked factors. Raises MissingVariableError if a
        factor touches a key that the ordering does not contain, and
        IndeterminantLinearSystemError on a rank-deficient variable.
        """
        order = list(ordering)
        position = {k: i for i, k in enumerate(order)}
        dims = self.dims()
        for k in dims:
            if k not in position:
                raise MissingVariableError(k, "not in elimination ordering")

        pool: Dict[int, JacobianFactor] = dict(enumerate(self.factors))
        involved_in: Dict[Key, Set[int]] = {}
        for i, f in pool.items():
            for k in f.keys:
                involved_in.setdefault(k, set()).add(i)
        next_id = len(pool)

        bayes_net = GaussianBayesNet()
        max_separator = 0
        for key in order:
            if key not in dims:
                continue
            ids = sorted(involved_in.pop(key, set()))
            if not ids:
                raise IndeterminantLinearSystemError(key)
            gathered = [pool.pop(i) for i in ids]
            for i, f in zip(ids, gathered):
                for k in f.keys:
                    if k != key:
                        involved_in[k].discard(i)

            separator = sorted(
                {k for f in gathered for k in f.keys if k != key}, key=position.__getitem__
            )
            max_separator = max(max_separator, len(separator))
            frontal = [key] + separator
            Ab = _stack(gathered, frontal, dims)

            R = jnp.linalg.qr(Ab, mode="r")
            d = dims[key]
            scale = max(1.0, float(jnp.max(jnp.abs(Ab[:, :-1])))) if Ab.size else 1.0
            if R.shape[0] < d or float(jnp.min(jnp.abs(jnp.diag(R[:d, :d])))) <= _RANK_TOL * scale:
                raise IndeterminantLinearSystemError(key)

            S_blocks, _ = _split_columns(R[:d, d:], separator, dims)
            bayes_net.conditionals.append(
                GaussianConditional(
                    key=key, R=R[:d, :d], parents=tuple(separator), S=S_blocks, d=R[:d, -1]
                )
            )

            remainder = R[d:, d:]
            if separator and remainder.shape[0] > 0:
                blocks, b = _split_columns(remainder, separator, dims)
                pool[next_id] = JacobianFactor(keys=tuple(separator), blocks=blocks, b=b)
                for k in separator:
                    involved_in[k].add(next_id)
                next_id += 1

        logger.debug(
            "Eliminated {} variables, largest separator {}", len(bayes_net), max_separator
        )
        return bayes_net

    def optimize(self, ordering: Iterable[Key]) -> Dict[Key, jnp.ndarray]:
        """Least-squares solution by elimination and back-substitution."""
        return self.eliminate_sequential(ordering).back_substitute()

    # --- dense path ---

    def to_dense(self, block_slices: Mapping[Key, slice]) -> Tuple[jnp.ndarray, jnp.ndarray]:
        """Assemble the full (m, n) Jacobian and right-hand side."""
        n = max((sl.stop for sl in block_slices.values()), default=0)
        rows = []
        for f in self.factors:
            row = jnp.zeros((f.rows, n))
            for k, A in zip(f.keys, f.blocks):
                if k not in block_slices:
                    raise MissingVariableError(k, "not in block layout")
                row = row.at[:, block_slices[k]].set(A)
            rows.append(row)
        A = jnp.concatenate(rows, axis=0) if rows else jnp.zeros((0, n))
        b = jnp.concatenate([f.b for f in self.factors]) if rows else jnp.zeros(0)
        return A, b

    def solve_dense(
        self,
        block_slices: Mapping[Key, slice],
        lam: float = 0.0,
        diagonal: bool = False,
    ) -> Dict[Key, jnp.ndarray]:
        """
        Normal equations (AᵀA + λD) δ = Aᵀb solved densely:

            H = AᵀA, g = Aᵀb
        """
        A, b = self.to_dense(block_slices)
        H = A.T @ A
        g = A.T @ b
        if lam > 0.0:
            D = jnp.clip(jnp.diag(H), 1e-6, 1e32) if diagonal else jnp.ones(H.shape[0])
            H = H + lam * jnp.diag(D)
        delta = jnp.linalg.solve(H, g)
        return {k: delta[sl] for k, sl in block_slices.items()}


def _stack(
    factors: List[JacobianFactor],
    frontal: List[Key],
    dims: Mapping[Key, int],
) -> jnp.ndarray:
    """Dense [A | b] of `factors` with columns laid out in `frontal` order."""
    rows = []
    for f in factors:
        cols = []
        for k in frontal:
            if k in f.keys:
                cols.append(f.block(k))
            else:
                cols.append(jnp.zeros((f.rows, dims[k])))
        cols.append(f.b[:, None])
        rows.append(jnp.concatenate(cols, axis=1))
    return jnp.concatenate(rows, axis=0)


def _split_columns(
    M: jnp.ndarray,
    keys: List[Key],
    dims: Mapping[Key, int],
) -> Tuple[Tuple[jnp.ndarray, ...], jnp.ndarray]:
    """Split [B_1 ... B_k | b] into per-key blocks and the last column."""
    blocks = []
    offset = 0
    for k in keys:
        d = dims[k]
        blocks.append(M[:, offset : offset + d])
        offset += d
    return tuple(blocks), M[:, -1]
