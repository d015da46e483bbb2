# Copyright (c) 2025.
# This file is part of jaxsam, released under the MIT License.

import time
import jax.numpy as jnp

from jaxsam.core.factor_graph import FactorGraph
from jaxsam.core.math3d import pose3_from_rt, rot_z, se3_identity
from jaxsam.core.types import symbol
from jaxsam.core.values import Values
from jaxsam.optimization.ordering import Ordering
from jaxsam.optimization.solvers import (
    GaussNewtonOptimizer,
    GNConfig,
    LevenbergMarquardtOptimizer,
    LMConfig,
)
from jaxsam.slam.noise import isotropic


def build_se3_chain(num_poses: int = 10):
    """
    Simple SE3 pose chain:
        x0 --between--> x1 --between--> ... --between--> x_{N-1}
    Prior on x0, edges of +1m in x with a small yaw.
    """
    graph = FactorGraph()
    values = Values()

    # Initial guesses: slightly perturbed around ground truth
    for i in range(num_poses):
        t = jnp.array([i + 0.1 * jnp.sin(0.3 * i), 0.05 * jnp.cos(0.2 * i), 0.0])
        values.insert(symbol("x", i), "pose3", pose3_from_rt(rot_z(0.02 * i), t))

    graph.add_factor(
        "prior", (symbol("x", 0),), params={"target": se3_identity()}, noise=isotropic(6, 1e-3)
    )

    meas = pose3_from_rt(rot_z(0.01), jnp.array([1.0, 0.0, 0.0]))
    odo_noise = isotropic(6, 0.1)
    for i in range(num_poses - 1):
        graph.add_factor(
            "between",
            (symbol("x", i), symbol("x", i + 1)),
            params={"measured": meas},
            noise=odo_noise,
        )
    return graph, values


def run_benchmark(num_poses: int = 50, max_iters: int = 20):
    print("=== SE3 chain benchmark ===")
    print(f"num_poses = {num_poses}, max_iters = {max_iters}")

    graph, values = build_se3_chain(num_poses)
    ordering = Ordering.minimum_degree(graph)

    # Warmup: compile the kernels once
    graph.linearize(values, ordering)

    for name, make in (
        ("LM", lambda: LevenbergMarquardtOptimizer(graph, ordering, values, config=LMConfig(max_iters=max_iters))),
        ("GN", lambda: GaussNewtonOptimizer(graph, ordering, values, config=GNConfig(max_iters=max_iters))),
    ):
        t0 = time.time()
        result = make().optimize()
        t1 = time.time()
        print(
            f"{name}: {(t1 - t0) * 1000:.3f} ms, {result.iterations} iterations, "
            f"error {result.error:.3e}, {result.status.value}"
        )

    last = result.values.at(symbol("x", num_poses - 1))
    print(f"x{num_poses - 1} (opt) translation: {last[:3, 3]}")


if __name__ == "__main__":
    run_benchmark(num_poses=50, max_iters=20)
