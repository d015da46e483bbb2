from __future__ import annotations

import math

import jax
import jax.numpy as jnp

from jaxsam.core.math3d import pose3_from_rt, se3_retract
from jaxsam.optimization.ordering import Ordering
from jaxsam.optimization.solvers import LevenbergMarquardtOptimizer
from jaxsam.world.urban import UrbanConfig, UrbanGraph, landmark_key, pose_key


def setup_urban_block(num_poses: int = 8):
    """
    A vehicle drives straight down a street lined with building corners:

      - poses x1..xN, 1m apart along the world x axis, heading along +x
      - landmarks l1..l6 on both sides of the street (z = 0 plane)
      - every pose observes every landmark closer than 8m

    Returns the graph, the ground truth and a noisy initial estimate.
    """
    sigma = 0.2
    sigma_dx = 0.01
    sigma_yaw = math.pi / 180.0

    landmarks = {
        1: jnp.array([2.0, 3.0]),
        2: jnp.array([5.0, 3.0]),
        3: jnp.array([8.0, 3.0]),
        4: jnp.array([2.0, -3.0]),
        5: jnp.array([5.0, -3.0]),
        6: jnp.array([8.0, -3.0]),
    }

    truth = UrbanConfig()
    for i in range(1, num_poses + 1):
        truth.add_robot_pose(i, pose3_from_rt(jnp.eye(3), jnp.array([i - 1.0, 0.0, 0.0])))
    for j, l in landmarks.items():
        truth.add_landmark(j, l)

    g = UrbanGraph()
    g.add_origin_constraint(1)
    for i in range(1, num_poses + 1):
        if i > 1:
            g.add_odometry(1.0, 0.0, sigma_dx, sigma_yaw, i - 1)
        T = truth.robot_pose(i)
        for j, l in landmarks.items():
            # landmark in the body frame
            local = T[:3, :3].T @ (jnp.array([l[0], l[1], 0.0]) - T[:3, 3])
            if jnp.linalg.norm(local[:2]) < 8.0:
                g.add_measurement(None, float(local[0]), float(local[1]), sigma, i, j)

    # Initial estimate: drift the trajectory and jitter the landmarks
    key = jax.random.PRNGKey(0)
    initial = UrbanConfig()
    for i in range(1, num_poses + 1):
        key, sub = jax.random.split(key)
        drift = jnp.concatenate([0.05 * jax.random.normal(sub, (3,)), jnp.array([0.0, 0.0, 0.01 * i])])
        initial.add_robot_pose(i, se3_retract(truth.robot_pose(i), drift))
    for j, l in landmarks.items():
        key, sub = jax.random.split(key)
        initial.add_landmark(j, l + 0.3 * jax.random.normal(sub, (2,)))

    return g, truth, initial


def main():
    g, truth, initial = setup_urban_block()
    print(f"factors = {g.size()}, variables = {len(initial)}")

    ordering = Ordering.minimum_degree(g)
    optimizer = LevenbergMarquardtOptimizer(g, ordering, initial, 1e-5)
    print(f"initial error: {optimizer.error:.6e}")

    result = optimizer.optimize()
    print(f"final error:   {result.error:.6e} ({result.status.value}, {result.iterations} iterations)")

    for i in (1, 4, 8):
        t = result.values.at(pose_key(i))[:3, 3]
        print(f"x{i}: {t}  (truth {truth.at(pose_key(i))[:3, 3]})")
    for j in (1, 6):
        print(f"l{j}: {result.values.at(landmark_key(j))}  (truth {truth.at(landmark_key(j))})")


if __name__ == "__main__":
    main()
