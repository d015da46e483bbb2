"""
SO(3) and SE(3) operations for jaxsam.

This module implements the 3D Lie-group mathematics used by robot poses and
camera models:

    • SO(3) exponential & logarithm maps
    • SE(3) exponential & logarithm maps
    • Composition and inversion of 4×4 homogeneous transforms
    • Small-angle branches that keep forward-mode Jacobians finite at the
      identity, where every linearization in the optimizer is evaluated

Poses are stored as 4×4 homogeneous matrices. Tangent vectors of SE(3) are
ordered translation-first, ``xi = [v_x, v_y, v_z, w_x, w_y, w_z]``.

All functions are written in JAX and support:
    - JIT compilation (branches use `jax.lax.cond` / `jax.lax.switch`)
    - Automatic differentiation
    - float64 when the package enables x64

Key Functions
-------------
so3_exp(w)
    Maps a 3-vector (axis-angle) to a 3×3 rotation matrix.

so3_log(R)
    Maps a rotation matrix back to its axis-angle representation, including
    rotations at (or numerically next to) π.

se3_exp(xi)
    Maps a 6-vector twist ξ = (v, ω) to a 4×4 SE(3) transform matrix.

se3_log(T)
    Inverse of se3_exp; extracts a twist from an SE3 matrix.

se3_inverse(T), se3_compose(A, B)
    Group inverse and composition A ∘ B.

Utilities
---------
hat(ω)
    Converts a 3-vector to its skew-symmetric matrix.

vee(Ω)
    Converts a 3×3 (near-)skew matrix back into a 3-vector.
"""

from __future__ import annotations

import jax
import jax.numpy as jnp

_SMALL_ANGLE = 1e-5
# cos(theta) thresholds equivalent to theta < 1e-5 and pi - theta < ~1e-5
_COS_SMALL = 1.0 - 0.5 * _SMALL_ANGLE * _SMALL_ANGLE
_TRACE_NEAR_PI = 1e-10


def hat(v: jnp.ndarray) -> jnp.ndarray:
    """so(3) hat operator: R^3 -> 3x3 skew-symmetric matrix."""
    x, y, z = v[0], v[1], v[2]
    return jnp.array(
        [
            [0.0, -z, y],
            [z, 0.0, -x],
            [-y, x, 0.0],
        ]
    )


def vee(R: jnp.ndarray) -> jnp.ndarray:
    """
    vee: so(3) -> R^3, inverse of hat.

    Extracts the skew-symmetric part, so it also gives the first-order
    rotation vector of a near-identity rotation matrix.
    """
    return jnp.array([
        R[2, 1] - R[1, 2],
        R[0, 2] - R[2, 0],
        R[1, 0] - R[0, 1],
    ]) / 2.0


def so3_exp(w: jnp.ndarray) -> jnp.ndarray:
    """
    Exponential map from so(3) (rotation vector) to SO(3).

    Uses Rodrigues' formula with a second-order small-angle branch.
    """
    w = jnp.asarray(w)
    theta2 = jnp.dot(w, w)
    I = jnp.eye(3, dtype=w.dtype)
    W = hat(w)

    def small_angle() -> jnp.ndarray:
        return I + W + 0.5 * (W @ W)

    def normal_angle() -> jnp.ndarray:
        theta = jnp.sqrt(theta2)
        A = jnp.sin(theta) / theta
        B = (1.0 - jnp.cos(theta)) / theta2
        return I + A * W + B * (W @ W)

    return jax.lax.cond(theta2 < _SMALL_ANGLE * _SMALL_ANGLE, small_angle, normal_angle)


def so3_log(R: jnp.ndarray) -> jnp.ndarray:
    """
    Numerically stable logarithm map for SO(3).

    Handles:
      - small angles via first-order approximation
      - rotations by π, where the general formula divides by sin(θ) = 0
      - trace slightly outside [-1, 3] via clamping

    Returns w in R^3 such that Exp(w) ~ R.
    """
    R = jnp.asarray(R)
    trace = jnp.trace(R)
    cos_theta = jnp.clip((trace - 1.0) / 2.0, -1.0, 1.0)

    def small_angle(_) -> jnp.ndarray:
        # R ~ I + hat(w)
        return vee(R)

    def general(_) -> jnp.ndarray:
        theta = jnp.arccos(cos_theta)
        return (theta / jnp.sin(theta)) * vee(R)

    def near_pi(_) -> jnp.ndarray:
        # R + I ~ 2 k k^T: read the axis off the largest diagonal entry.
        d = jnp.diag(R)
        i = jnp.argmax(d)
        col = (R[:, i] + jnp.eye(3, dtype=R.dtype)[:, i])
        axis = col / jnp.sqrt(2.0 + 2.0 * d[i])
        return jnp.pi * axis

    branch = jnp.where(
        cos_theta > _COS_SMALL,
        0,
        jnp.where(trace + 1.0 < _TRACE_NEAR_PI, 2, 1),
    )
    return jax.lax.switch(branch, [small_angle, general, near_pi], None)


def se3_identity() -> jnp.ndarray:
    """The identity SE(3) pose as a 4×4 matrix."""
    return jnp.eye(4)


def pose3_from_rt(R: jnp.ndarray, t: jnp.ndarray) -> jnp.ndarray:
    """Build a 4×4 homogeneous transform from rotation R and translation t."""
    T = jnp.eye(4)
    T = T.at[:3, :3].set(jnp.asarray(R, dtype=T.dtype))
    T = T.at[:3, 3].set(jnp.asarray(t, dtype=T.dtype))
    return T


def rot_z(yaw) -> jnp.ndarray:
    """Rotation about the z axis."""
    c, s = jnp.cos(yaw), jnp.sin(yaw)
    return jnp.array([
        [c, -s, 0.0],
        [s, c, 0.0],
        [0.0, 0.0, 1.0],
    ])


def _left_jacobian_terms(w: jnp.ndarray):
    """Coefficients (B, C) of V = I + B W + C W^2 for W = hat(w)."""
    theta2 = jnp.dot(w, w)

    def small_angle():
        return jnp.asarray(0.5, dtype=w.dtype), jnp.asarray(1.0 / 6.0, dtype=w.dtype)

    def normal_angle():
        theta = jnp.sqrt(theta2)
        B = (1.0 - jnp.cos(theta)) / theta2
        C = (theta - jnp.sin(theta)) / (theta2 * theta)
        return B, C

    return jax.lax.cond(theta2 < _SMALL_ANGLE * _SMALL_ANGLE, small_angle, normal_angle)


def se3_exp(xi: jnp.ndarray) -> jnp.ndarray:
    """
    Exponential map from se(3) -> SE(3).

    xi = [v_x, v_y, v_z, w_x, w_y, w_z]
      - v: translational part in R^3
      - w: rotation vector in R^3 (axis-angle)

    Returns the 4×4 homogeneous matrix

        T = [ R, V v ]
            [ 0, 1   ]

    with V = I + (1 - cos θ)/θ² W + (θ - sin θ)/θ³ W², the left Jacobian
    of SO(3).
    """
    xi = jnp.asarray(xi)
    v = xi[:3]
    w = xi[3:]

    R = so3_exp(w)
    W = hat(w)
    B, C = _left_jacobian_terms(w)
    V = jnp.eye(3, dtype=xi.dtype) + B * W + C * (W @ W)

    return pose3_from_rt(R, V @ v)


def se3_log(T: jnp.ndarray) -> jnp.ndarray:
    """
    Logarithm map SE(3) -> se(3); exact inverse of `se3_exp`.

    Returns xi = [v, w] with w = so3_log(R) and v = V^{-1} t.
    """
    T = jnp.asarray(T)
    R = T[:3, :3]
    t = T[:3, 3]

    w = so3_log(R)
    W = hat(w)
    theta2 = jnp.dot(w, w)

    def small_angle():
        return jnp.asarray(1.0 / 12.0, dtype=T.dtype)

    def normal_angle():
        theta = jnp.sqrt(theta2)
        return (1.0 - theta * jnp.sin(theta) / (2.0 * (1.0 - jnp.cos(theta)))) / theta2

    D = jax.lax.cond(theta2 < _SMALL_ANGLE * _SMALL_ANGLE, small_angle, normal_angle)
    V_inv = jnp.eye(3, dtype=T.dtype) - 0.5 * W + D * (W @ W)

    return jnp.concatenate([V_inv @ t, w])


def se3_inverse(T: jnp.ndarray) -> jnp.ndarray:
    """Inverse of a 4×4 SE(3) transform."""
    R = T[:3, :3]
    t = T[:3, 3]
    return pose3_from_rt(R.T, -R.T @ t)


def se3_compose(A: jnp.ndarray, B: jnp.ndarray) -> jnp.ndarray:
    """Compose two SE(3) transforms: A ∘ B."""
    return A @ B


def relative_pose_se3(a: jnp.ndarray, b: jnp.ndarray) -> jnp.ndarray:
    """
    Relative transform from pose a to pose b:

        T_rel = T_a^{-1} T_b
    """
    return se3_inverse(a) @ b


def se3_retract(T: jnp.ndarray, delta: jnp.ndarray) -> jnp.ndarray:
    """
    Right-multiplicative SE(3) retraction

        T_new = T ∘ Exp(delta)

    so that delta is expressed in the body frame of T.
    """
    return T @ se3_exp(delta)


def se3_local(T1: jnp.ndarray, T2: jnp.ndarray) -> jnp.ndarray:
    """Inverse of `se3_retract`: the delta with T1 ∘ Exp(delta) = T2."""
    return se3_log(relative_pose_se3(T1, T2))
