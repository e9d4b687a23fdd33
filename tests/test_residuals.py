from dataclasses import replace

import numpy as np
import pytest

from procamcalib.ba.layout import ParameterLayout
from procamcalib.ba.residuals import (
    PoseObservations,
    RefinedPointResiduals,
    ReprojectionResiduals,
    anchor_weight,
    reprojection_rms,
)
from procamcalib.errors import ShapeMismatchError
from procamcalib.sim.synthetic import make_synthetic_rig, planar_grid


def _rig_with_counts(counts: tuple[int, ...]):
    rig = make_synthetic_rig(len(counts), model_points=planar_grid(4, 3, 30.0), seed=4)
    obs = [
        PoseObservations(
            model_points=o.model_points[:n],
            cam_points=o.cam_points[:n],
            prj_points=o.prj_points[:n],
        )
        for o, n in zip(rig.observations, counts)
    ]
    return rig, obs


def test_residual_lengths():
    counts = (5, 12, 7)
    rig, obs = _rig_with_counts(counts)
    fixed = ParameterLayout(counts)
    refined = ParameterLayout(counts, refine_points=True)

    params = rig.params()
    r_fixed = ReprojectionResiduals(fixed, obs)(fixed.pack(params))
    params_pts = replace(params, points=tuple(o.model_points for o in obs))
    r_refined = RefinedPointResiduals(refined, obs)(refined.pack(params_pts))

    assert r_fixed.shape == (4 * sum(counts),)
    assert r_refined.shape == (7 * sum(counts),)


def test_residual_zero_at_ground_truth_two_poses_four_points():
    rig = make_synthetic_rig(2, model_points=planar_grid(2, 2, 50.0), seed=5)
    layout = ParameterLayout.for_points([o.model_points for o in rig.observations])
    r = ReprojectionResiduals(layout, rig.observations)(layout.pack(rig.params()))
    assert r.shape == (32,)
    assert np.max(np.abs(r)) < 1e-8


def test_residual_ordering():
    counts = (4, 4)
    rig, obs = _rig_with_counts(counts)
    obs[1] = PoseObservations(
        model_points=obs[1].model_points,
        cam_points=obs[1].cam_points + np.array([[0.0, 0.0]] * 2 + [[1.0, 0.0]] + [[0.0, 0.0]]),
        prj_points=obs[1].prj_points,
    )
    obs[0] = PoseObservations(
        model_points=obs[0].model_points,
        cam_points=obs[0].cam_points,
        prj_points=obs[0].prj_points + np.array([[0.0, 0.0], [0.0, -2.0], [0.0, 0.0], [0.0, 0.0]]),
    )
    layout = ParameterLayout(counts)
    r = ReprojectionResiduals(layout, obs)(layout.pack(rig.params()))

    expected = np.zeros(32)
    expected[16 + 2] = 1.0  # pose 1, cam_x, point 2
    expected[12 + 1] = -2.0  # pose 0, prj_y, point 1
    assert np.allclose(r, expected, atol=1e-8)


def test_anchor_weight_limits():
    assert anchor_weight(np.zeros((1, 3)))[0] == 1.0
    assert anchor_weight(np.array([[1.0, 0.0, 0.0]]))[0] == pytest.approx(np.exp(-1.0))
    assert anchor_weight(np.array([[2.0, 0.0, 0.0]]), scale=2.0)[0] == pytest.approx(np.exp(-1.0))

    d = np.array([[0.0, 0.0, 1e3]])
    w = anchor_weight(d)
    assert w[0] == pytest.approx(0.0)
    assert np.all(np.abs(d * w[:, None]) < 1e-12)


def test_refined_residual_anchor_block():
    rig = make_synthetic_rig(2, model_points=planar_grid(3, 2, 40.0), seed=6)
    obs = list(rig.observations)
    layout = ParameterLayout.for_points([o.model_points for o in obs], refine_points=True)
    fun = RefinedPointResiduals(layout, obs)
    params = rig.params()
    params = replace(params, points=tuple(o.model_points for o in obs))
    x = layout.pack(params)

    r0 = fun(x)
    assert np.max(np.abs(r0)) < 1e-8

    x_shift = x.copy()
    x_shift[layout.points_slice(1).start + 3 * 2 + 1] += 0.5  # pose 1, point 2, Y
    r = fun(x_shift)
    anchor = r[4 * layout.n_points :].reshape(-1, 3)
    assert anchor.shape == (layout.n_points, 3)
    k = 6 + 2
    assert anchor[k, 1] == pytest.approx(0.5 * np.exp(-0.25))
    assert np.count_nonzero(anchor) == 1
    # Only pose 1 reprojection rows see the moved point.
    assert np.max(np.abs(r[: 4 * 6])) < 1e-8
    assert np.max(np.abs(r[4 * 6 : 4 * 12])) > 1e-3


def test_evaluator_is_pure():
    rig = make_synthetic_rig(3, model_points=planar_grid(3, 3, 30.0), seed=7)
    layout = ParameterLayout.for_points([o.model_points for o in rig.observations])
    fun = ReprojectionResiduals(layout, rig.observations)
    x = layout.pack(rig.params()) + 1e-3
    x_copy = x.copy()
    a = fun(x)
    b = fun(x)
    assert np.array_equal(a, b)
    assert np.array_equal(x, x_copy)


def test_shape_mismatch():
    rig = make_synthetic_rig(2, model_points=planar_grid(2, 2, 50.0), seed=8)
    obs = list(rig.observations)
    layout = ParameterLayout((4, 4))

    bad = PoseObservations(model_points=obs[0].model_points, cam_points=obs[0].cam_points[:3], prj_points=obs[0].prj_points)
    with pytest.raises(ShapeMismatchError):
        ReprojectionResiduals(layout, [bad, obs[1]])

    empty = PoseObservations(model_points=np.zeros((0, 3)), cam_points=np.zeros((0, 2)), prj_points=np.zeros((0, 2)))
    with pytest.raises(ShapeMismatchError):
        ReprojectionResiduals(layout, [empty, obs[1]])

    with pytest.raises(ShapeMismatchError):
        ReprojectionResiduals(ParameterLayout((4, 5)), obs)
    with pytest.raises(ShapeMismatchError):
        ReprojectionResiduals(ParameterLayout((4, 4), refine_points=True), obs)
    with pytest.raises(ShapeMismatchError):
        RefinedPointResiduals(layout, obs)

    fun = ReprojectionResiduals(layout, obs)
    with pytest.raises(ShapeMismatchError):
        fun(np.zeros(layout.size + 3))


def test_reprojection_rms():
    layout = ParameterLayout((2, 3))
    r = np.zeros(layout.residual_size)
    r[0:4] = 1.0  # pose 0 camera x,y
    r[8 + 6 : 8 + 12] = 2.0  # pose 1 projector x,y
    rms = reprojection_rms(r, layout)
    assert rms["camera_rms_px"] == pytest.approx(np.sqrt(4.0 / 5.0))
    assert rms["projector_rms_px"] == pytest.approx(np.sqrt(24.0 / 5.0))
