from __future__ import annotations

import jax.numpy as jnp
import pytest

from jaxsam.core.errors import MissingVariableError, OrderingError
from jaxsam.core.factor_graph import FactorGraph
from jaxsam.core.math3d import pose3_from_rt, rot_z, se3_exp, se3_identity, se3_retract
from jaxsam.core.so4 import so4_expmap, so4_retract
from jaxsam.core.types import Key
from jaxsam.core.values import Values
from jaxsam.optimization.ordering import Ordering
from jaxsam.optimization.solvers import (
    GaussNewtonOptimizer,
    GNConfig,
    LevenbergMarquardtOptimizer,
    LMConfig,
    OptimizerStatus,
    TerminationReason,
)
from jaxsam.slam.noise import isotropic

THETA = 0.1


def three_pose_chain():
    """
    Ground truth:
      x0: identity
      x1: 1m forward, yaw theta
      x2: 2m along the arc, yaw 2 theta

    Factors:
      - prior on x0: identity
      - between x0 -> x1 and x1 -> x2: 1m forward, yaw theta
    """
    graph = FactorGraph()
    graph.add_factor("prior", ("x0",), params={"target": se3_identity()}, noise=isotropic(6, 1e-2))
    meas = pose3_from_rt(rot_z(THETA), jnp.array([1.0, 0.0, 0.0]))
    noise = isotropic(6, 0.1)
    graph.add_factor("between", ("x0", "x1"), params={"measured": meas}, noise=noise)
    graph.add_factor("between", ("x1", "x2"), params={"measured": meas}, noise=noise)

    truth = Values()
    truth.insert("x0", "pose3", se3_identity())
    truth.insert("x1", "pose3", meas)
    truth.insert("x2", "pose3", meas @ meas)

    # Initial guesses (intentionally a bit off)
    initial = Values()
    initial.insert("x0", "pose3", se3_exp(jnp.array([0.10, -0.05, 0.02, 0.02, -0.01, -0.01])))
    initial.insert("x1", "pose3", se3_retract(meas, jnp.array([-0.1, 0.05, -0.02, 0.01, 0.01, 0.03])))
    initial.insert("x2", "pose3", se3_retract(meas @ meas, jnp.array([0.1, -0.02, 0.01, -0.02, 0.02, -0.04])))
    return graph, truth, initial


def test_lm_three_pose_chain():
    graph, truth, initial = three_pose_chain()
    result = LevenbergMarquardtOptimizer(graph, Ordering.natural(graph), initial).optimize()

    assert result.status is OptimizerStatus.CONVERGED
    assert result.error == pytest.approx(0.0, abs=1e-8)
    assert result.values.equals(truth, tol=1e-5)
    assert result.error_history[0] > result.error_history[-1]
    assert all(b <= a for a, b in zip(result.error_history, result.error_history[1:]))


def test_gauss_newton_three_pose_chain():
    graph, truth, initial = three_pose_chain()
    result = GaussNewtonOptimizer(graph, Ordering.natural(graph), initial).optimize()

    assert result.converged
    assert result.values.equals(truth, tol=1e-5)
    # one entry per step taken, rising or not
    assert len(result.error_history) == result.iterations + 1
    assert result.error_history[-1] == result.error


def test_dense_solver_agrees_with_elimination():
    graph, _, initial = three_pose_chain()
    ordering = Ordering.from_strings(["x2", "x0", "x1"])
    a = LevenbergMarquardtOptimizer(graph, ordering, initial, config=LMConfig(max_iters=3))
    b = LevenbergMarquardtOptimizer(
        graph, ordering, initial, config=LMConfig(max_iters=3, linear_solver="dense")
    )
    sa, sb = a.iterate(), b.iterate()
    assert sa.error == pytest.approx(sb.error, rel=1e-9)
    assert sa.values.equals(sb.values, tol=1e-9)


def test_state_machine_transitions():
    graph, _, initial = three_pose_chain()
    opt = LevenbergMarquardtOptimizer(graph, Ordering.natural(graph), initial)
    assert opt.status is OptimizerStatus.INITIALIZED
    assert opt.state.iterations == 0

    state = opt.iterate()
    assert state.status is OptimizerStatus.ITERATING
    assert state.iterations == 1
    assert state.lambda_ == pytest.approx(1e-6)


def test_max_iterations_is_a_failure_status():
    graph, _, initial = three_pose_chain()
    result = LevenbergMarquardtOptimizer(
        graph, Ordering.natural(graph), initial, config=LMConfig(max_iters=1)
    ).optimize()
    assert result.status is OptimizerStatus.FAILED
    assert result.reason is TerminationReason.MAX_ITERATIONS
    assert result.iterations == 1


def test_no_lambda_trials_exhausts_damping():
    graph, _, initial = three_pose_chain()
    opt = LevenbergMarquardtOptimizer(
        graph, Ordering.natural(graph), initial, config=LMConfig(max_lambda_trials=0)
    )
    result = opt.optimize()
    assert result.status is OptimizerStatus.FAILED
    assert result.reason is TerminationReason.LAMBDA_EXHAUSTED
    assert result.values.equals(initial)


def test_iterate_after_termination_is_a_no_op():
    graph, _, initial = three_pose_chain()
    opt = LevenbergMarquardtOptimizer(graph, Ordering.natural(graph), initial)
    result = opt.optimize()
    assert opt.iterate().iterations == result.iterations


def test_missing_initial_value():
    graph, _, initial = three_pose_chain()
    partial = Values()
    partial.insert("x0", "pose3", initial["x0"])
    partial.insert("x1", "pose3", initial["x1"])
    with pytest.raises(MissingVariableError):
        LevenbergMarquardtOptimizer(graph, Ordering.natural(graph), partial)


def test_ordering_with_unreferenced_key():
    graph, _, initial = three_pose_chain()
    with pytest.raises(OrderingError):
        LevenbergMarquardtOptimizer(graph, Ordering.from_strings(["x0", "x1", "x2", "x3"]), initial)


def test_unknown_linear_solver():
    graph, _, initial = three_pose_chain()
    with pytest.raises(ValueError):
        GaussNewtonOptimizer(graph, Ordering.natural(graph), initial, config=GNConfig(linear_solver="cg"))


def test_lm_on_so4():
    Q1 = so4_expmap(jnp.array([0.1, 0.2, 0.3, 0.4, 0.5, 0.6]))
    Q2 = so4_expmap(jnp.array([-0.3, 0.1, 0.25, 0.0, -0.2, 0.35]))

    graph = FactorGraph()
    graph.add_factor("prior", ("q1",), params={"target": Q1}, noise=isotropic(6, 0.01))
    graph.add_factor("between", ("q1", "q2"), params={"measured": Q1.T @ Q2}, noise=isotropic(6, 0.1))

    initial = Values()
    initial.insert("q1", "so4", so4_retract(Q1, jnp.array([0.05, -0.02, 0.03, 0.0, 0.01, -0.04])))
    initial.insert("q2", "so4", so4_retract(Q2, jnp.array([-0.1, 0.05, 0.0, 0.08, -0.03, 0.02])))

    result = LevenbergMarquardtOptimizer(graph, [Key("q", 1), Key("q", 2)], initial).optimize()
    assert result.converged
    assert jnp.allclose(result.values["q1"], Q1, atol=1e-6)
    assert jnp.allclose(result.values["q2"], Q2, atol=1e-6)
