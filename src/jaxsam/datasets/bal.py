# Copyright (c) 2025.
# This file is part of jaxsam, released under the MIT License.
"""
Reader for Bundle Adjustment in the Large (BAL) problem files.

Format (whitespace separated, optionally bz2-compressed)::

    <num_cameras> <num_points> <num_observations>
    <camera_index> <point_index> <u> <v>        × num_observations
    <camera parameter>                          × 9 · num_cameras
    <point coordinate>                          × 3 · num_points

Each camera is the Snavely 9-vector [axis-angle(3), t(3), f, k1, k2]; image
coordinates are centred on the principal point.
"""

from __future__ import annotations

import bz2
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Tuple, Union

import numpy as np
from loguru import logger


@dataclass
class SfmTrack:
    """A 3-D point and the cameras that observe it."""
    point: np.ndarray
    measurements: List[Tuple[int, np.ndarray]] = field(default_factory=list)


@dataclass
class SfmData:
    cameras: List[np.ndarray] = field(default_factory=list)
    tracks: List[SfmTrack] = field(default_factory=list)

    @property
    def number_cameras(self) -> int:
        return len(self.cameras)

    @property
    def number_tracks(self) -> int:
        return len(self.tracks)

    @property
    def number_observations(self) -> int:
        return sum(len(t.measurements) for t in self.tracks)


def _read_text(path: Path) -> str:
    if path.suffix == ".bz2":
        with bz2.open(path, "rt") as f:
            return f.read()
    with open(path, "r") as f:
        return f.read()


def read_bal(path: Union[str, Path]) -> SfmData:
    """Parse a BAL file; raises ValueError if it is truncated or inconsistent."""
    path = Path(path)
    tokens = _read_text(path).split()
    if len(tokens) < 3:
        raise ValueError(f"{path}: missing BAL header")

    try:
        n_cameras, n_points, n_obs = (int(t) for t in tokens[:3])
    except ValueError:
        raise ValueError(f"{path}: malformed BAL header {tokens[:3]}") from None

    expected = 3 + 4 * n_obs + 9 * n_cameras + 3 * n_points
    if len(tokens) != expected:
        raise ValueError(f"{path}: expected {expected} tokens, found {len(tokens)}")

    try:
        numbers = np.asarray(tokens[3:], dtype=np.float64)
    except ValueError as e:
        raise ValueError(f"{path}: non-numeric entry ({e})") from None

    obs = numbers[: 4 * n_obs].reshape(n_obs, 4)
    offset = 4 * n_obs
    cameras = numbers[offset : offset + 9 * n_cameras].reshape(n_cameras, 9)
    offset += 9 * n_cameras
    points = numbers[offset:].reshape(n_points, 3)

    data = SfmData(
        cameras=[c.copy() for c in cameras],
        tracks=[SfmTrack(point=p.copy()) for p in points],
    )
    for cam_f, pt_f, u, v in obs:
        i, j = int(cam_f), int(pt_f)
        if i != cam_f or j != pt_f or not (0 <= i < n_cameras and 0 <= j < n_points):
            raise ValueError(f"{path}: observation refers to camera {cam_f}, point {pt_f}")
        data.tracks[j].measurements.append((i, np.array([u, v])))

    logger.info(
        "Read {}: {} cameras, {} points, {} observations", path.name, n_cameras, n_points, n_obs
    )
    return data
