# Copyright (c) 2025.
# This file is part of jaxsam, released under the MIT License.
"""
Urban robot graph: a planar-landmark SLAM front end on top of `FactorGraph`.

This module defines a thin, typed layer over the core factor graph for a
vehicle driving through a city block and observing planar landmarks (e.g.
building corners projected onto the ground plane).

Key responsibilities
--------------------
- `UrbanGraph` appends the three measurement types the scenario needs:
    • add_measurement: a landmark seen from a pose, in the sensor frame
    • add_odometry:    forward motion and yaw between consecutive poses
    • add_origin_constraint: fixes one pose to the canonical origin
  Every call appends exactly one factor.
- `UrbanConfig` is the matching assignment, with helpers that insert robot
  poses (`x{i}`, 4×4 SE(3)) and landmarks (`l{j}`, 2-D points).

Conventions
-----------
Robot frames follow the Navlab convention: x forward, y right, z down.
Landmarks live on the plane z = 0 of the world frame. Odometry is expressed
in the frame of the earlier pose.
"""

from __future__ import annotations

from typing import Optional

import jax.numpy as jnp
from loguru import logger

from jaxsam.core.factor_graph import FactorGraph
from jaxsam.core.math3d import pose3_from_rt, rot_z, se3_identity
from jaxsam.core.types import FactorId, Key, symbol
from jaxsam.core.values import Values
from jaxsam.slam.noise import DiagonalNoise, isotropic

DEFAULT_ORIGIN_SIGMA = 1e-4


def pose_key(i: int) -> Key:
    return symbol("x", i)


def landmark_key(j: int) -> Key:
    return symbol("l", j)


class UrbanGraph(FactorGraph):
    """Factor graph over robot poses `x{i}` and planar landmarks `l{j}`."""

    def __init__(self, origin_sigma: float = DEFAULT_ORIGIN_SIGMA) -> None:
        super().__init__()
        self._origin_noise = isotropic(6, origin_sigma)

    def add_measurement(
        self,
        sensor_matrix,
        dx: float,
        dy: float,
        sigma: float,
        pose_index: int,
        landmark_index: int,
    ) -> FactorId:
        """
        Landmark `l{landmark_index}` observed at (dx, dy) in the sensor frame
        of pose `x{pose_index}`. ``sensor_matrix`` is the 4×4 body_T_sensor
        transform; None means the sensor sits at the body origin.
        """
        if sensor_matrix is None:
            sensor_matrix = se3_identity()
        fid = self.add_factor(
            "landmark_observation",
            (pose_key(pose_index), landmark_key(landmark_index)),
            params={"measured": jnp.array([dx, dy]), "sensor_pose": sensor_matrix},
            noise=isotropic(2, sigma),
        )
        logger.debug(
            "measurement x{} -> l{}: ({:.3f}, {:.3f}) sigma {}", pose_index, landmark_index, dx, dy, sigma
        )
        return fid

    def add_odometry(
        self,
        dx: float,
        dyaw: float,
        sigma_dx: float,
        sigma_yaw: float,
        from_index: int,
    ) -> FactorId:
        """
        Motion from `x{from_index}` to `x{from_index + 1}`: ``dx`` forward and
        ``dyaw`` about the vertical axis. Translation axes share ``sigma_dx``
        and rotation axes share ``sigma_yaw``.
        """
        measured = pose3_from_rt(rot_z(dyaw), jnp.array([dx, 0.0, 0.0]))
        noise = DiagonalNoise(jnp.array([sigma_dx] * 3 + [sigma_yaw] * 3))
        return self.add_factor(
            "odometry",
            (pose_key(from_index), pose_key(from_index + 1)),
            params={"measured": measured},
            noise=noise,
        )

    def add_origin_constraint(self, pose_index: int, origin=None) -> FactorId:
        """Tie `x{pose_index}` to ``origin`` (the identity pose by default)."""
        target = se3_identity() if origin is None else jnp.asarray(origin)
        return self.add_factor(
            "prior",
            (pose_key(pose_index),),
            params={"target": target},
            noise=self._origin_noise,
        )


class UrbanConfig(Values):
    """Assignment of robot poses and landmarks."""

    def add_robot_pose(self, i: int, pose) -> Key:
        return self.insert(pose_key(i), "pose3", pose)

    def add_landmark(self, j: int, point) -> Key:
        return self.insert(landmark_key(j), "point2", point)

    def robot_pose(self, i: int) -> jnp.ndarray:
        return self.at(pose_key(i))

    def landmark(self, j: int) -> jnp.ndarray:
        return self.at(landmark_key(j))

    def retract(self, delta) -> "UrbanConfig":
        return UrbanConfig(super().retract(delta)._vars)

    def copy(self) -> "UrbanConfig":
        return UrbanConfig(self._vars)
