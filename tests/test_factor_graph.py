from __future__ import annotations

import jax.numpy as jnp
import pytest

from jaxsam.core.errors import MissingVariableError
from jaxsam.core.factor_graph import FactorGraph
from jaxsam.core.math3d import pose3_from_rt, rot_z, se3_identity
from jaxsam.core.so4 import so4_expmap
from jaxsam.core.types import Key
from jaxsam.core.values import Values
from jaxsam.slam.manifold import get_chart
from jaxsam.slam.measurements import prior_residual
from jaxsam.slam.noise import DiagonalNoise, isotropic, unit


def test_single_point_prior_error():
    """
    One 2-D point, one prior:
        residual = (x - target) / sigma
    """
    fg = FactorGraph()
    fid = fg.add_factor("prior", ("l1",), params={"target": jnp.array([2.0, 0.0])}, noise=isotropic(2, 0.5))
    assert fid == 0
    assert fg.size() == 1

    v = Values()
    v.insert("l1", "point2", jnp.array([1.0, 0.0]))

    assert jnp.allclose(fg.factor_error(fg.factors[0], v), jnp.array([-2.0, 0.0]))
    assert fg.error(v) == pytest.approx(2.0)


def test_unknown_factor_type_rejected():
    fg = FactorGraph()
    with pytest.raises(ValueError):
        fg.add_factor("range_bearing", ("x1",), noise=unit(6))
    assert fg.size() == 0


def test_wrong_arity_rejected():
    fg = FactorGraph()
    with pytest.raises(ValueError):
        fg.add_factor("between", ("x1",), params={"measured": se3_identity()}, noise=unit(6))


def test_missing_variable_raises():
    fg = FactorGraph()
    fg.add_factor("between", ("x1", "x2"), params={"measured": se3_identity()}, noise=unit(6))
    v = Values()
    v.insert("x1", "pose3", se3_identity())
    with pytest.raises(MissingVariableError):
        fg.error(v)


def test_mismatched_between_types_rejected():
    fg = FactorGraph()
    fg.add_factor("between", ("x1", "l1"), params={"measured": se3_identity()}, noise=unit(6))
    v = Values()
    v.insert("x1", "pose3", se3_identity())
    v.insert("l1", "point2", jnp.zeros(2))
    with pytest.raises(ValueError):
        fg.error(v)


def test_error_is_sum_in_insertion_order():
    fg = FactorGraph()
    fg.add_factor("prior", ("l1",), params={"target": jnp.array([1.0, 0.0])}, noise=unit(2))
    fg.add_factor("prior", ("l2",), params={"target": jnp.array([0.0, 3.0])}, noise=unit(2))
    v = Values()
    v.insert("l1", "point2", jnp.zeros(2))
    v.insert("l2", "point2", jnp.zeros(2))

    assert fg.keys() == [Key("l", 1), Key("l", 2)]
    assert fg.error_vector(v).shape == (4,)
    assert fg.error(v) == pytest.approx(0.5 * (1.0 + 9.0))
    assert fg.error(v) == fg.error(v)


def test_linearize_between_pose_matches_finite_difference():
    fg = FactorGraph()
    meas = pose3_from_rt(rot_z(0.1), jnp.array([1.0, 0.0, 0.0]))
    fg.add_factor("between", ("x1", "x2"), params={"measured": meas}, noise=isotropic(6, 0.1))

    v = Values()
    v.insert("x1", "pose3", pose3_from_rt(rot_z(0.05), jnp.array([0.1, 0.0, 0.0])))
    v.insert("x2", "pose3", pose3_from_rt(rot_z(0.2), jnp.array([1.0, 0.2, 0.0])))

    jf = fg.linearize_factor(fg.factors[0], v)
    assert jf.keys == (Key("x", 1), Key("x", 2))
    assert jf.blocks[0].shape == (6, 6)
    r0 = fg.factor_error(fg.factors[0], v)
    assert jnp.allclose(jf.b, -r0)

    eps = 1e-6
    for slot, key in enumerate(jf.keys):
        for i in range(6):
            d = jnp.zeros(6).at[i].set(eps)
            r1 = fg.factor_error(fg.factors[0], v.retract({key: d}))
            assert jnp.allclose((r1 - r0) / eps, jf.blocks[slot][:, i], atol=1e-4)


def test_so4_between_factor_zero_at_truth():
    Q1 = so4_expmap(jnp.array([0.1, 0.2, 0.3, 0.0, 0.1, 0.0]))
    Q2 = so4_expmap(jnp.array([0.0, -0.2, 0.1, 0.3, 0.0, 0.2]))
    fg = FactorGraph()
    fg.add_factor("between", ("q1", "q2"), params={"measured": Q1.T @ Q2}, noise=unit(6))
    v = Values()
    v.insert("q1", "so4", Q1)
    v.insert("q2", "so4", Q2)

    assert fg.error(v) == pytest.approx(0.0, abs=1e-20)
    gfg = fg.linearize(v)
    assert len(gfg) == 1
    assert jnp.all(jnp.isfinite(gfg.factors[0].blocks[0]))


def test_linearize_rejects_incomplete_ordering():
    fg = FactorGraph()
    fg.add_factor("prior", ("l1",), params={"target": jnp.zeros(2)}, noise=unit(2))
    fg.add_factor("prior", ("l2",), params={"target": jnp.zeros(2)}, noise=unit(2))
    v = Values()
    v.insert("l1", "point2", jnp.zeros(2))
    v.insert("l2", "point2", jnp.zeros(2))
    with pytest.raises(MissingVariableError):
        fg.linearize(v, ordering=[Key("l", 1)])


def test_noise_model_whitens_and_validates():
    noise = DiagonalNoise(jnp.array([0.1, 2.0]))
    assert noise.dim == 2
    assert jnp.allclose(noise.whiten(jnp.array([1.0, 1.0])), jnp.array([10.0, 0.5]))
    with pytest.raises(ValueError):
        DiagonalNoise(jnp.array([1.0, 0.0]))


def test_noise_model_is_shared_between_factors():
    noise = isotropic(2, 0.3)
    fg = FactorGraph()
    fg.add_factor("prior", ("l1",), params={"target": jnp.zeros(2)}, noise=noise)
    fg.add_factor("prior", ("l2",), params={"target": jnp.zeros(2)}, noise=noise)
    assert fg.factors[0].noise is fg.factors[1].noise


def test_factor_error_is_noise_model_whitening_of_raw_residual():
    noise = DiagonalNoise(jnp.array([0.5, 4.0]))
    target = jnp.array([2.0, -1.0])
    fg = FactorGraph()
    fg.add_factor("prior", ("l1",), params={"target": target}, noise=noise)
    v = Values()
    v.insert("l1", "point2", jnp.array([1.0, 3.0]))

    raw = prior_residual((v.at("l1"),), {"target": target}, (get_chart("point2"),))
    assert jnp.allclose(raw, jnp.array([-1.0, 4.0]))
    assert jnp.allclose(fg.factor_error(fg.factors[0], v), noise.whiten(raw))
