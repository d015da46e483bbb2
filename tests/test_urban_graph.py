from __future__ import annotations

import math

import jax.numpy as jnp
import pytest

from jaxsam.core.errors import MissingVariableError
from jaxsam.core.math3d import pose3_from_rt, se3_identity
from jaxsam.core.types import Key
from jaxsam.optimization.ordering import Ordering
from jaxsam.optimization.solvers import (
    LevenbergMarquardtOptimizer,
    OptimizerStatus,
    TerminationReason,
)
from jaxsam.world.urban import UrbanConfig, UrbanGraph

LANDMARKS = {
    1: jnp.array([2.0, 5.0]),
    2: jnp.array([2.0, 10.0]),
    3: jnp.array([-2.0, 5.0]),
    4: jnp.array([-2.0, 10.0]),
}

# Robot at the origin looking along global y; body frame x forward, y right, z down.
NAVLAB_R = jnp.array(
    [
        [0.0, 1.0, 0.0],
        [1.0, 0.0, 0.0],
        [0.0, 0.0, -1.0],
    ]
)
ROBOT_POSE = pose3_from_rt(NAVLAB_R, jnp.zeros(3))
# one metre forward
ROBOT_POSE2 = pose3_from_rt(NAVLAB_R, jnp.array([0.0, 1.0, 0.0]))

SENSOR = se3_identity()
SIGMA = 0.2
SIGMA_DX = 0.01
SIGMA_YAW = math.pi / 180.0


def ground_truth() -> UrbanConfig:
    config = UrbanConfig()
    config.add_robot_pose(1, ROBOT_POSE)
    config.add_robot_pose(2, ROBOT_POSE2)
    for j, l in LANDMARKS.items():
        config.add_landmark(j, l)
    return config


def urban_graph() -> UrbanGraph:
    """Measurements are in the robot frame, which differs from the global frame."""
    g = UrbanGraph()
    g.add_origin_constraint(1, origin=ROBOT_POSE)
    g.add_measurement(SENSOR, 5, 2, SIGMA, 1, 1)
    g.add_measurement(SENSOR, 10, 2, SIGMA, 1, 2)
    g.add_measurement(SENSOR, 5, -2, SIGMA, 1, 3)
    g.add_measurement(SENSOR, 10, -2, SIGMA, 1, 4)
    g.add_odometry(1, 0, SIGMA_DX, SIGMA_YAW, 1)
    g.add_measurement(SENSOR, 4, 2, SIGMA, 2, 1)
    g.add_measurement(SENSOR, 9, 2, SIGMA, 2, 2)
    g.add_measurement(SENSOR, 4, -2, SIGMA, 2, 3)
    g.add_measurement(SENSOR, 9, -2, SIGMA, 2, 4)
    return g


def test_add_measurement():
    g = UrbanGraph()
    g.add_measurement(SENSOR, 4, 2, SIGMA, 1, 1)  # ground truth would be (5, 2)
    assert g.size() == 1

    config = UrbanConfig()
    config.add_robot_pose(1, ROBOT_POSE)
    config.add_landmark(1, LANDMARKS[1])

    assert g.error(config) == pytest.approx(0.5 / SIGMA / SIGMA, abs=1e-9)


def test_add_odometry():
    g = UrbanGraph()
    g.add_odometry(2, 0, SIGMA_DX, SIGMA_YAW, 1)  # 2m forward, but the robot moved 1m
    assert g.size() == 1
    assert g.factors[0].keys == (Key("x", 1), Key("x", 2))

    config = UrbanConfig()
    config.add_robot_pose(1, ROBOT_POSE)
    with pytest.raises(MissingVariableError):
        g.error(config)

    config.add_robot_pose(2, ROBOT_POSE2)
    assert g.error(config) == pytest.approx(0.5 / SIGMA_DX / SIGMA_DX, rel=1e-9)


def test_add_origin_constraint_defaults_to_identity():
    g = UrbanGraph()
    g.add_origin_constraint(1)
    config = UrbanConfig()
    config.add_robot_pose(1, se3_identity())
    assert g.size() == 1
    assert g.error(config) == pytest.approx(0.0, abs=1e-20)


def test_every_call_adds_one_factor():
    g = urban_graph()
    assert g.size() == 10
    assert g.keys() == sorted([Key("l", j) for j in LANDMARKS] + [Key("x", 1), Key("x", 2)])


def test_error_is_zero_at_ground_truth():
    g = urban_graph()
    config = ground_truth()
    assert jnp.allclose(g.error_vector(config), jnp.zeros(6 + 8 * 2 + 6), atol=1e-9)
    assert g.error(config) == pytest.approx(0.0, abs=1e-12)


def test_one_iteration_from_ground_truth_changes_nothing():
    g = urban_graph()
    initial = ground_truth()
    ordering = Ordering.from_strings(["l1", "l2", "l3", "l4", "x1", "x2"])

    optimizer = LevenbergMarquardtOptimizer(g, ordering, initial, 1e-5)
    assert optimizer.status is OptimizerStatus.INITIALIZED
    assert optimizer.error == pytest.approx(0.0, abs=1e-12)

    state = optimizer.iterate()
    assert state.status is OptimizerStatus.CONVERGED
    assert optimizer.error == pytest.approx(0.0, abs=1e-12)
    assert state.values.equals(initial, tol=1e-9)


def test_ordering_missing_a_variable():
    g = urban_graph()
    ordering = Ordering.from_strings(["l1", "l2", "l3", "x1", "x2"])
    with pytest.raises(MissingVariableError):
        LevenbergMarquardtOptimizer(g, ordering, ground_truth(), 1e-5)


def test_lm_recovers_ground_truth_from_perturbed_start():
    g = urban_graph()
    truth = ground_truth()

    initial = UrbanConfig()
    initial.add_robot_pose(1, ROBOT_POSE)
    initial.add_robot_pose(2, pose3_from_rt(NAVLAB_R, jnp.array([0.1, 1.2, 0.0])))
    offsets = {1: (0.3, -0.2), 2: (-0.4, 0.1), 3: (0.2, 0.3), 4: (-0.1, -0.3)}
    for j, l in LANDMARKS.items():
        initial.add_landmark(j, l + jnp.array(offsets[j]))

    ordering = Ordering.from_strings(["l1", "l2", "l3", "l4", "x1", "x2"])
    result = LevenbergMarquardtOptimizer(g, ordering, initial, 1e-5).optimize()

    assert result.converged
    assert result.reason is not TerminationReason.NONE
    assert result.error < 1e-6
    assert result.values.equals(truth, tol=1e-4)
    history = result.error_history
    assert all(b <= a for a, b in zip(history, history[1:]))
