# Copyright (c) 2025.
# This file is part of jaxsam, released under the MIT License.

import sys
import time

import jax

from jaxsam.datasets.bal import read_bal
from jaxsam.optimization.solvers import LevenbergMarquardtOptimizer, LMConfig
from jaxsam.world.sfm import build_sfm_problem, point_key, synthetic_scene


def load_scene(path=None):
    """
    BAL file if a path is given, otherwise a synthetic scene whose points
    are pushed off their true positions.
    """
    if path is not None:
        return read_bal(path), False
    return synthetic_scene(n_cameras=6, n_points=40), True


def run_benchmark(path=None, max_iters: int = 20):
    print("=== SfM Levenberg-Marquardt Benchmark ===")
    data, synthetic = load_scene(path)
    print(
        f"cameras = {data.number_cameras}, points = {data.number_tracks}, "
        f"observations = {data.number_observations}"
    )

    graph, values, ordering = build_sfm_problem(data)
    if synthetic:
        noise = 0.05 * jax.random.normal(jax.random.PRNGKey(1), (data.number_tracks, 3))
        for j in range(data.number_tracks):
            values.update(point_key(j), values.at(point_key(j)) + noise[j])

    cfg = LMConfig(max_iters=max_iters, rel_tol=1e-6)

    # Warmup: compile the per-factor kernels on one linearization
    graph.linearize(values, ordering)

    t0 = time.time()
    result = LevenbergMarquardtOptimizer(graph, ordering, values, config=cfg).optimize()
    t1 = time.time()

    print(f"Elapsed time: {(t1 - t0) * 1000:.3f} ms")
    print(f"status = {result.status.value} ({result.reason.value}), iterations = {result.iterations}")
    print(f"error: {result.error_history[0]:.6e} -> {result.error:.6e}")


if __name__ == "__main__":
    run_benchmark(sys.argv[1] if len(sys.argv) > 1 else None)
