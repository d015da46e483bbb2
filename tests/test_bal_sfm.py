from __future__ import annotations

import bz2

import jax
import numpy as np
import pytest

from jaxsam.core.types import Key
from jaxsam.datasets.bal import read_bal
from jaxsam.optimization.solvers import LevenbergMarquardtOptimizer, LMConfig
from jaxsam.world.sfm import build_sfm_problem, point_key, synthetic_scene

TINY_BAL = """2 3 4
0 0 -3.859900e+02 3.871200e+02
1 0 -3.844000e+01 4.921200e+02
0 1 -6.679200e+02 1.231100e+02
1 2 -5.991800e+02 4.079300e+02
1.57e-02 -1.27e-02 -4.40e-03 -3.41e-02 -1.07e-01 1.12e+00 3.99e+02 -3.18e-07 5.88e-13
1.59e-02 -2.51e-02 -9.41e-03 -8.54e-03 -1.21e-01 7.19e-01 4.02e+02 -3.78e-07 9.31e-13
-6.12e-01
5.71e-01
-1.85e+00
1.70e+00
3.73e-01
-1.02e+00
6.10e-01
-1.01e+00
-1.38e+00
"""


def test_read_bal(tmp_path):
    path = tmp_path / "tiny.txt"
    path.write_text(TINY_BAL)
    data = read_bal(path)

    assert data.number_cameras == 2
    assert data.number_tracks == 3
    assert data.number_observations == 4
    assert data.cameras[1][6] == pytest.approx(402.0)
    assert np.allclose(data.tracks[2].point, [0.61, -1.01, -1.38])
    cams = [i for i, _ in data.tracks[0].measurements]
    assert cams == [0, 1]
    assert np.allclose(data.tracks[0].measurements[1][1], [-38.44, 492.12])


def test_read_bal_bz2(tmp_path):
    path = tmp_path / "tiny.txt.bz2"
    path.write_bytes(bz2.compress(TINY_BAL.encode()))
    assert read_bal(path).number_observations == 4


def test_truncated_bal_rejected(tmp_path):
    path = tmp_path / "broken.txt"
    path.write_text("\n".join(TINY_BAL.splitlines()[:-2]))
    with pytest.raises(ValueError):
        read_bal(path)


def test_bad_observation_index_rejected(tmp_path):
    path = tmp_path / "bad.txt"
    path.write_text(TINY_BAL.replace("1 2 -5.991800e+02", "5 2 -5.991800e+02"))
    with pytest.raises(ValueError):
        read_bal(path)


def test_build_sfm_problem_from_file(tmp_path):
    path = tmp_path / "tiny.txt"
    path.write_text(TINY_BAL)
    graph, values, ordering = build_sfm_problem(read_bal(path))

    assert graph.size() == 4
    assert len(values) == 5
    assert list(ordering) == [Key("p", 0), Key("p", 1), Key("p", 2), Key("c", 0), Key("c", 1)]
    ordering.validate(graph)
    assert np.isfinite(graph.error(values))


def test_synthetic_scene_has_zero_error():
    data = synthetic_scene(n_cameras=3, n_points=8)
    graph, values, _ = build_sfm_problem(data)
    assert graph.size() == 24
    assert graph.error(values) == pytest.approx(0.0, abs=1e-12)


def test_lm_reduces_reprojection_error():
    data = synthetic_scene(n_cameras=3, n_points=10)
    graph, values, ordering = build_sfm_problem(data)

    noise = 0.05 * jax.random.normal(jax.random.PRNGKey(3), (data.number_tracks, 3))
    for j in range(data.number_tracks):
        values.update(point_key(j), values.at(point_key(j)) + noise[j])

    result = LevenbergMarquardtOptimizer(
        graph, ordering, values, config=LMConfig(max_iters=30)
    ).optimize()
    assert result.error < 1e-3 * result.error_history[0]
    assert all(b <= a for a, b in zip(result.error_history, result.error_history[1:]))
