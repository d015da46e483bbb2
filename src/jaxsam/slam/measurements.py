# Copyright (c) 2025.
# This file is part of jaxsam, released under the MIT License.
"""
Residual models (measurement factors) for jaxsam.

This module defines the *measurement-level* building blocks used by the
factor graph:

    • Each function here implements an unwhitened residual

          r(xs; params, charts) ∈ ℝᵏ

      where ``xs`` is the tuple of connected variable values (in factor key
      order), ``params`` holds the measurement as JAX arrays and ``charts``
      is the tuple of `slam.manifold.Chart` of the connected variables.
      The graph whitens r with the factor's noise model.

    • The set of factor types is closed. `FACTOR_TYPES` maps each type tag to
      its residual, arity and accepted variable types; `core.factor_graph`
      rejects any other tag.

Factor families
---------------
1. Generic manifold factors
    • `prior_residual`:       r = Local(target, x)
    • `between_residual`:     r = Local(measured, Between(x_i, x_j))

   Both work for every chart (SE(3), SO(4), Euclidean). An origin constraint
   is a prior at the canonical origin.

2. Robot motion
    • `odometry_residual`:
        relative motion between two SE(3) poses, split into a translation
        part and a rotation part so each can carry its own sigma:
            r = [ t_rel − t_meas ; log(R_measᵀ R_rel) ]

3. Observations
    • `landmark_observation_residual`:
        a planar landmark (z = 0) seen from a pose through a sensor mounted
        at ``sensor_pose`` in the body frame; predicts the first two
        coordinates of the landmark in the sensor frame.

    • `snavely_projection_residual`:
        reprojection error of a 3-D point in a Snavely/BAL camera
        (axis-angle, translation, focal length, two radial terms).

Notes
-----
Residuals must stay pure JAX functions: the linearization differentiates
them (through each variable's retraction) with `jax.jacfwd` and jits them
once per factor type.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Sequence, Tuple

import jax.numpy as jnp

from jaxsam.core.math3d import relative_pose_se3, se3_compose, se3_inverse, so3_exp, so3_log

Values_ = Tuple[jnp.ndarray, ...]
ResidualFn = Callable[[Values_, Dict[str, jnp.ndarray], Tuple], jnp.ndarray]


def prior_residual(xs: Values_, params: Dict[str, jnp.ndarray], charts) -> jnp.ndarray:
    """
    Prior on a single variable, in the variable's chart:
        residual = Local(target, x)
    """
    return charts[0].local(params["target"], xs[0])


def between_residual(xs: Values_, params: Dict[str, jnp.ndarray], charts) -> jnp.ndarray:
    """
    Relative constraint between two variables of the same manifold:
        residual = Local(measured, x_i⁻¹ ∘ x_j)
    """
    chart = charts[0]
    return chart.local(params["measured"], chart.between(xs[0], xs[1]))


def odometry_residual(xs: Values_, params: Dict[str, jnp.ndarray], charts) -> jnp.ndarray:
    """
    SE(3) odometry between consecutive poses.

        T_rel   = T_i⁻¹ T_j
        r_trans = t_rel − t_meas                 (3,)
        r_rot   = log(R_measᵀ R_rel)             (3,)

    params:
      - "measured": 4×4 expected relative transform
    """
    T_rel = relative_pose_se3(xs[0], xs[1])
    meas = params["measured"]

    r_trans = T_rel[:3, 3] - meas[:3, 3]
    r_rot = so3_log(meas[:3, :3].T @ T_rel[:3, :3])
    return jnp.concatenate([r_trans, r_rot])


def landmark_observation_residual(
    xs: Values_,
    params: Dict[str, jnp.ndarray],
    charts,
) -> jnp.ndarray:
    """
    Planar landmark observed from a pose.

    xs: (pose 4×4, landmark in R^2)

    params:
      - "measured":    (dx, dy), landmark coordinates in the sensor frame
      - "sensor_pose": 4×4 body_T_sensor transform

    We compute:
        p_world  = [lx, ly, 0, 1]
        p_sensor = (T_pose · body_T_sensor)⁻¹ p_world
        residual = p_sensor[:2] − measured
    """
    pose, landmark = xs
    p_world = jnp.concatenate([landmark, jnp.zeros(1, dtype=landmark.dtype), jnp.ones(1, dtype=landmark.dtype)])
    world_T_sensor = se3_compose(pose, params["sensor_pose"])
    p_sensor = se3_inverse(world_T_sensor) @ p_world
    return p_sensor[:2] - params["measured"]


def snavely_projection_residual(
    xs: Values_,
    params: Dict[str, jnp.ndarray],
    charts,
) -> jnp.ndarray:
    """
    Reprojection error for a BAL camera.

    xs: (camera in R^9 = [axis-angle(3), t(3), f, k1, k2], point in R^3)

        p      = R(aa) X + t
        p'     = −p[:2] / p[2]
        d      = 1 + k1 |p'|² + k2 |p'|⁴
        uv     = f · d · p'
        r      = uv − measured
    """
    camera, point = xs
    R = so3_exp(camera[:3])
    p = R @ point + camera[3:6]
    xp = -p[:2] / p[2]
    f, k1, k2 = camera[6], camera[7], camera[8]
    r2 = jnp.dot(xp, xp)
    distortion = 1.0 + r2 * (k1 + k2 * r2)
    return f * distortion * xp - params["measured"]


@dataclass(frozen=True)
class FactorSpec:
    residual: ResidualFn
    arity: int
    # accepted variable types per slot; None means any chart
    var_types: Optional[Tuple[Optional[Sequence[str]], ...]] = None
    same_type: bool = False


FACTOR_TYPES: Dict[str, FactorSpec] = {
    "prior": FactorSpec(prior_residual, arity=1),
    "between": FactorSpec(between_residual, arity=2, same_type=True),
    "odometry": FactorSpec(odometry_residual, arity=2, var_types=(("pose3",), ("pose3",))),
    "landmark_observation": FactorSpec(
        landmark_observation_residual, arity=2, var_types=(("pose3",), ("point2",))
    ),
    "snavely_projection": FactorSpec(
        snavely_projection_residual, arity=2, var_types=(("camera_snavely",), ("point3",))
    ),
}


def get_factor_spec(factor_type: str) -> FactorSpec:
    try:
        return FACTOR_TYPES[factor_type]
    except KeyError:
        raise ValueError(
            f"Unknown factor type '{factor_type}', expected one of {sorted(FACTOR_TYPES)}"
        ) from None
