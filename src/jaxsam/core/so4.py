# Copyright (c) 2025.
# This file is part of jaxsam, released under the MIT License.
"""
SO(4): the group of 4×4 rotations.

Elements are stored as 4×4 orthogonal JAX arrays with unit determinant and
tangent vectors are 6-vectors. The upper-left 3×3 block of the Lie algebra is
the SO(3) subgroup, so ``so4_hat(xi)[:3, :3] == hat(xi[:3])``.

Operations
----------
so4_hat / so4_vee
    Linear bijection between R^6 and 4×4 skew-symmetric generators.

so4_expmap
    Closed-form exponential map. The two rotation rates a ≥ b ≥ 0 are read
    off the eigenvalues {±ai, ±bi} of Hat(xi), then exp(X) is a cubic
    polynomial in X whose coefficients depend on whether the rotation is
    single-plane (b = 0), isoclinic (a = b) or general (a ≠ b). The
    eigen-solver sits behind `_skew_eigenvalues` and runs on concrete values
    only, so this map is not differentiable.

so4_logmap
    Unsupported: no closed form is implemented.

so4_retract_at_origin / so4_local_at_origin
    Cayley chart (I + X)(I - X)^{-1} with X = Hat(xi / 2), and its exact
    inverse. This is the chart used by the optimizer; it is cheaper than the
    exponential map and fully differentiable.

so4_adjoint_map
    6×6 matrix transporting tangent vectors: column i is Vee(Q G_i Q^T).

so4_vec / so4_top_left / so4_stiefel
    Column-major flattenings and sub-blocks of Q with their 16×6, 9×6 and
    12×6 Jacobians with respect to the chart at Q.

so4_random
    Random element from two random SO(3) rotation vectors, for tests.
"""

from __future__ import annotations

from typing import Tuple, Union

import jax
import jax.numpy as jnp
import numpy as np

from .errors import (
    EigenvalueStructureError,
    NotSkewSymmetricError,
    UnsupportedOperationError,
)

DIM = 6
_SKEW_TOL = 1e-9
_EIG_TOL = 1e-9


def so4_hat(xi: jnp.ndarray) -> jnp.ndarray:
    """R^6 -> 4×4 skew-symmetric generator."""
    xi = jnp.asarray(xi)
    zero = jnp.zeros((), dtype=xi.dtype)
    Y = jnp.array(
        [
            [zero, -xi[2], xi[1], -xi[3]],
            [zero, zero, -xi[0], -xi[4]],
            [zero, zero, zero, -xi[5]],
            [zero, zero, zero, zero],
        ]
    )
    return Y - Y.T


def so4_vee(X: jnp.ndarray, check: bool = True) -> jnp.ndarray:
    """
    4×4 skew-symmetric generator -> R^6, the exact left inverse of `so4_hat`.

    With ``check=True`` the input must be concrete and skew-symmetric within
    tolerance, otherwise `NotSkewSymmetricError` is raised. Traced callers
    (charts, residuals) pass ``check=False``.
    """
    X = jnp.asarray(X)
    if check:
        asym = float(jnp.max(jnp.abs(X + X.T)))
        if asym > _SKEW_TOL * max(1.0, float(jnp.max(jnp.abs(X)))):
            raise NotSkewSymmetricError(
                f"so4_vee expects a skew-symmetric matrix, |X + X^T| = {asym:.3e}"
            )
    return jnp.array([-X[1, 2], X[0, 2], -X[0, 1], -X[0, 3], -X[1, 3], -X[2, 3]])


# Generators G_i = Hat(e_i) and the projection P = [vec(G_0) ... vec(G_5)],
# computed once at import and never mutated.
GENERATORS: Tuple[jnp.ndarray, ...] = tuple(
    so4_hat(jnp.eye(DIM)[i]) for i in range(DIM)
)
P: jnp.ndarray = jnp.stack([G.T.reshape(-1) for G in GENERATORS], axis=1)  # (16, 6)


def so4_identity() -> jnp.ndarray:
    return jnp.eye(4)


def so4_compose(Q1: jnp.ndarray, Q2: jnp.ndarray) -> jnp.ndarray:
    return Q1 @ Q2


def so4_inverse(Q: jnp.ndarray) -> jnp.ndarray:
    return Q.T


def so4_between(Q1: jnp.ndarray, Q2: jnp.ndarray) -> jnp.ndarray:
    """Q1^{-1} Q2."""
    return Q1.T @ Q2


def _skew_eigenvalues(X: jnp.ndarray) -> np.ndarray:
    """Complex eigenvalues of a concrete 4×4 matrix (LAPACK via numpy)."""
    try:
        Xn = np.asarray(X, dtype=np.float64)
    except jax.errors.TracerArrayConversionError as e:
        raise UnsupportedOperationError(
            "so4_expmap has no derivative; use the Cayley chart "
            "(so4_retract_at_origin) inside differentiated code"
        ) from e
    return np.linalg.eigvals(Xn)


def _rotation_rates(X: jnp.ndarray) -> Tuple[float, float]:
    """
    Rotation rates (a, b), a >= b >= 0, from the eigenvalues {±ai, ±bi}.

    Raises EigenvalueStructureError if the spectrum is not purely imaginary
    and paired.
    """
    e = sorted(_skew_eigenvalues(X), key=lambda z: abs(z.imag), reverse=True)
    scale = max(1.0, float(np.max(np.abs(np.asarray(X)))))
    tol = _EIG_TOL * scale

    a, b = e[0].imag, e[2].imag
    if (
        max(abs(z.real) for z in e) > tol
        or abs(e[1].imag + a) > tol
        or abs(e[3].imag + b) > tol
    ):
        raise EigenvalueStructureError(
            f"so4_expmap: wrong eigenvalues {np.round(np.asarray(e), 12)}"
        )
    return abs(a), abs(b)


def so4_expmap(xi: jnp.ndarray) -> jnp.ndarray:
    """
    Exponential map R^6 -> SO(4).

    Follows Rohan, "Some remarks on the exponential map on the groups SO(n)
    and SE(n)": exp(X) = c0 I + c1 X + c2 X^2 + c3 X^3.
    """
    X = so4_hat(xi)
    a, b = _rotation_rates(X)

    I = jnp.eye(4, dtype=X.dtype)
    X2 = X @ X
    X3 = X2 @ X
    a2, a3, b2, b3 = a * a, a ** 3, b * b, b ** 3

    if a > _EIG_TOL and b <= _EIG_TOL:
        # single-plane rotation
        c2 = (1.0 - np.cos(a)) / a2
        c3 = (a - np.sin(a)) / a3
        return I + X + c2 * X2 + c3 * X3
    elif a > _EIG_TOL and abs(a - b) <= _EIG_TOL:
        # isoclinic rotation
        sin_a, cos_a = np.sin(a), np.cos(a)
        c0 = (a * sin_a + 2.0 * cos_a) / 2.0
        c1 = (3.0 * sin_a - a * cos_a) / (2.0 * a)
        c2 = sin_a / (2.0 * a)
        c3 = (sin_a - a * cos_a) / (2.0 * a3)
        return c0 * I + c1 * X + c2 * X2 + c3 * X3
    elif a > _EIG_TOL:
        sin_a, cos_a = np.sin(a), np.cos(a)
        sin_b, cos_b = np.sin(b), np.cos(b)
        d = b2 - a2
        c0 = (b2 * cos_a - a2 * cos_b) / d
        c1 = (b3 * sin_a - a3 * sin_b) / (a * b * d)
        c2 = (cos_a - cos_b) / d
        c3 = (b * sin_a - a * sin_b) / (a * b * d)
        return c0 * I + c1 * X + c2 * X2 + c3 * X3
    # both rates below tolerance: second-order series is exact to machine precision
    return I + X + 0.5 * X2


def so4_logmap(Q: jnp.ndarray) -> jnp.ndarray:
    """Not available for SO(4); always raises `UnsupportedOperationError`."""
    raise UnsupportedOperationError(
        "so4_logmap has no closed form; use so4_local_at_origin for chart coordinates"
    )


def so4_retract_at_origin(xi: jnp.ndarray) -> jnp.ndarray:
    """Cayley retraction (I + X)(I - X)^{-1}, X = Hat(xi / 2)."""
    X = so4_hat(jnp.asarray(xi) / 2.0)
    I = jnp.eye(4, dtype=X.dtype)
    return (I + X) @ jnp.linalg.inv(I - X)


def so4_local_at_origin(Q: jnp.ndarray) -> jnp.ndarray:
    """Inverse Cayley map: -2 Vee((I - Q)(I + Q)^{-1})."""
    Q = jnp.asarray(Q)
    I = jnp.eye(4, dtype=Q.dtype)
    X = (I - Q) @ jnp.linalg.inv(I + Q)
    return -2.0 * so4_vee(X, check=False)


def so4_retract(Q: jnp.ndarray, xi: jnp.ndarray) -> jnp.ndarray:
    """Chart at Q: Q ∘ Retract(xi)."""
    return Q @ so4_retract_at_origin(xi)


def so4_local(Q1: jnp.ndarray, Q2: jnp.ndarray) -> jnp.ndarray:
    """Chart coordinates of Q2 around Q1: Local(Q1^{-1} Q2)."""
    return so4_local_at_origin(so4_between(Q1, Q2))


def so4_adjoint_map(Q: jnp.ndarray) -> jnp.ndarray:
    """Adjoint representation, computed column by column."""
    Qt = Q.T
    return jnp.stack(
        [so4_vee(Q @ G @ Qt, check=False) for G in GENERATORS], axis=1
    )


def _vec(M: jnp.ndarray) -> jnp.ndarray:
    """Column-major flattening."""
    return M.T.reshape(-1)


def so4_vec(
    Q: jnp.ndarray, jacobian: bool = False
) -> Union[jnp.ndarray, Tuple[jnp.ndarray, jnp.ndarray]]:
    """
    Column-major 16-vector of Q, optionally with its 16×6 Jacobian
    (I_4 ⊗ Q) P.
    """
    v = _vec(Q)
    if not jacobian:
        return v
    H = jnp.concatenate([Q @ P[4 * k : 4 * k + 4, :] for k in range(4)], axis=0)
    return v, H


def so4_top_left(
    Q: jnp.ndarray, jacobian: bool = False
) -> Union[jnp.ndarray, Tuple[jnp.ndarray, jnp.ndarray]]:
    """Upper-left 3×3 block of Q, optionally with its 9×6 Jacobian."""
    M = Q[:3, :3]
    if not jacobian:
        return M
    m1, m2, m3 = M[:, 0], M[:, 1], M[:, 2]
    q = Q[:3, 3]
    z = jnp.zeros(3, dtype=Q.dtype)
    H = jnp.concatenate(
        [
            jnp.stack([z, -m3, m2, q, z, z], axis=1),
            jnp.stack([m3, z, -m1, z, q, z], axis=1),
            jnp.stack([-m2, m1, z, z, z, q], axis=1),
        ],
        axis=0,
    )
    return M, H


def so4_stiefel(
    Q: jnp.ndarray, jacobian: bool = False
) -> Union[jnp.ndarray, Tuple[jnp.ndarray, jnp.ndarray]]:
    """First three columns of Q (a point on the Stiefel manifold V(4, 3))."""
    M = Q[:, :3]
    if not jacobian:
        return M
    m1, m2, m3, q = Q[:, 0], Q[:, 1], Q[:, 2], Q[:, 3]
    z = jnp.zeros(4, dtype=Q.dtype)
    H = jnp.concatenate(
        [
            jnp.stack([z, -m3, m2, q, z, z], axis=1),
            jnp.stack([m3, z, -m1, z, q, z], axis=1),
            jnp.stack([-m2, m1, z, z, z, q], axis=1),
        ],
        axis=0,
    )
    return M, H


def _random_omega(key: jax.Array) -> jnp.ndarray:
    k_dir, k_angle = jax.random.split(key)
    direction = jax.random.normal(k_dir, (3,))
    direction = direction / jnp.linalg.norm(direction)
    angle = jax.random.uniform(k_angle, (), minval=-jnp.pi, maxval=jnp.pi)
    return direction * angle


def so4_random(key: jax.Array) -> jnp.ndarray:
    """Random SO(4) element from the direct product of two so(3) samples."""
    k1, k2 = jax.random.split(key)
    delta = jnp.concatenate([_random_omega(k1), _random_omega(k2)])
    return so4_expmap(delta)


def so4_is_valid(Q: jnp.ndarray, tol: float = 1e-9) -> bool:
    """Orthogonality and unit determinant within tolerance."""
    Q = jnp.asarray(Q)
    ortho = float(jnp.max(jnp.abs(Q.T @ Q - jnp.eye(4))))
    return ortho <= tol and abs(float(jnp.linalg.det(Q)) - 1.0) <= tol
