# Copyright (c) 2025.
# This file is part of jaxsam, released under the MIT License.
"""
Structure-from-motion problems as factor graphs.

`build_sfm_problem` turns an `SfmData` scene into the three inputs of an
optimizer: a graph with one Snavely reprojection factor per observation
(unit noise), the initial values (cameras `c{i}` as 9-vectors, points
`p{j}`), and a points-first ordering so that elimination removes every point
before touching the cameras.

`synthetic_scene` generates a small, noiseless scene for benchmarks and tests.
"""

from __future__ import annotations

from typing import Tuple

import jax
import jax.numpy as jnp
import numpy as np

from jaxsam.core.factor_graph import FactorGraph
from jaxsam.core.math3d import so3_log
from jaxsam.core.types import Key, symbol
from jaxsam.core.values import Values
from jaxsam.datasets.bal import SfmData, SfmTrack
from jaxsam.optimization.ordering import Ordering
from jaxsam.slam.measurements import snavely_projection_residual
from jaxsam.slam.noise import unit


def camera_key(i: int) -> Key:
    return symbol("c", i)


def point_key(j: int) -> Key:
    return symbol("p", j)


def build_sfm_problem(data: SfmData) -> Tuple[FactorGraph, Values, Ordering]:
    unit2 = unit(2)
    graph = FactorGraph()
    for j, track in enumerate(data.tracks):
        for i, uv in track.measurements:
            graph.add_factor(
                "snavely_projection",
                (camera_key(i), point_key(j)),
                params={"measured": uv},
                noise=unit2,
            )

    values = Values()
    for i, camera in enumerate(data.cameras):
        values.insert(camera_key(i), "camera_snavely", camera)
    for j, track in enumerate(data.tracks):
        values.insert(point_key(j), "point3", track.point)

    observed = set(graph.keys())
    points = [point_key(j) for j in range(data.number_tracks) if point_key(j) in observed]
    cameras = [camera_key(i) for i in range(data.number_cameras) if camera_key(i) in observed]
    return graph, values, Ordering(points + cameras)


def _project(camera: jnp.ndarray, point: jnp.ndarray) -> jnp.ndarray:
    return snavely_projection_residual((camera, point), {"measured": jnp.zeros(2)}, None)


def synthetic_scene(
    n_cameras: int = 4,
    n_points: int = 30,
    seed: int = 0,
    focal: float = 500.0,
) -> SfmData:
    """
    Cameras on a circle of radius 10 looking at a cloud of points around the
    origin; every camera observes every point. Observations are exact.
    """
    key = jax.random.PRNGKey(seed)
    points = jax.random.uniform(key, (n_points, 3), minval=-1.0, maxval=1.0)

    cameras = []
    for i in range(n_cameras):
        angle = 2.0 * np.pi * i / n_cameras
        # camera looks down its -z axis; rotate world so that axis points at the origin
        center = np.array([10.0 * np.cos(angle), 10.0 * np.sin(angle), 0.0])
        back = center / np.linalg.norm(center)
        right = np.cross(np.array([0.0, 0.0, 1.0]), back)
        up = np.cross(back, right)
        R = np.stack([right, up, back])          # world -> camera
        aa = np.asarray(so3_log(jnp.asarray(R)))
        t = -R @ center
        cameras.append(np.concatenate([aa, t, [focal, 0.0, 0.0]]))

    data = SfmData(cameras=cameras)
    for j in range(n_points):
        X = np.asarray(points[j])
        track = SfmTrack(point=X)
        for i, cam in enumerate(cameras):
            uv = np.asarray(_project(jnp.asarray(cam), jnp.asarray(X)))
            track.measurements.append((i, uv))
        data.tracks.append(track)
    return data