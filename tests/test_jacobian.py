from dataclasses import replace

import numpy as np
import pytest

from procamcalib.ba.jacobian import build_jacobian_pattern
from procamcalib.ba.layout import ParameterLayout
from procamcalib.ba.residuals import RefinedPointResiduals
from procamcalib.errors import ShapeMismatchError
from procamcalib.sim.synthetic import make_synthetic_rig, planar_grid


def _cols(pattern, row: int) -> set[int]:
    return set(int(c) for c in np.flatnonzero(pattern.toarray()[row]))


def test_pattern_shapes():
    fixed = build_jacobian_pattern(ParameterLayout((4, 4)))
    refined = build_jacobian_pattern(ParameterLayout((4, 4), refine_points=True))
    assert fixed.shape == (32, 34)
    assert refined.shape == (56, 58)
    assert fixed.dtype == np.int8
    assert set(np.unique(refined.toarray()).tolist()) <= {0, 1}


def test_reduced_row_columns():
    pattern = build_jacobian_pattern(ParameterLayout((4, 4), refine_points=True), "reduced")
    point_cols = {49, 50, 51}  # pose 1, point 1

    # pose 1 starts at row 16: cam_x 16..19, cam_y 20..23, prj_x 24..27, prj_y 28..31
    assert _cols(pattern, 17) == {0, 2, 4, 5, 6, 7} | {28, 29, 30, 31, 33} | point_cols
    assert _cols(pattern, 21) == {1, 3, 4, 5, 6, 7} | {28, 29, 30, 32, 33} | point_cols
    assert _cols(pattern, 25) == {8, 10, 12, 13, 14, 15} | {16, 17, 18, 19, 21} | {28, 29, 30, 31, 33} | point_cols
    assert _cols(pattern, 29) == {9, 11, 12, 13, 14, 15} | {16, 17, 18, 20, 21} | {28, 29, 30, 32, 33} | point_cols


def test_fixed_layout_has_no_point_columns():
    pattern = build_jacobian_pattern(ParameterLayout((4, 4)), "reduced")
    assert _cols(pattern, 0) == {0, 2, 4, 5, 6, 7} | {22, 23, 24, 25, 27}


def test_regularization_rows_are_identity():
    layout = ParameterLayout((4, 4), refine_points=True)
    J = build_jacobian_pattern(layout, "reduced").toarray()
    block = layout.point_block_slice
    assert np.array_equal(J[32:, block], np.eye(24, dtype=np.int8))
    assert not np.any(J[32:, : block.start])


def test_full_contains_reduced():
    layout = ParameterLayout((5, 3, 4), refine_points=True)
    reduced = build_jacobian_pattern(layout, "reduced").toarray()
    full = build_jacobian_pattern(layout, "full").toarray()
    assert np.all(full >= reduced)
    assert full.sum() > reduced.sum()


def _numeric_jacobian(fun, x: np.ndarray) -> np.ndarray:
    r0 = fun(x)
    J = np.zeros((r0.size, x.size), dtype=np.float64)
    for k in range(x.size):
        h = 1e-6 * max(1.0, abs(float(x[k])))
        xp = x.copy()
        xm = x.copy()
        xp[k] += h
        xm[k] -= h
        J[:, k] = (fun(xp) - fun(xm)) / (2.0 * h)
    return J


def test_numeric_derivatives_stay_inside_full_pattern():
    rig = make_synthetic_rig(2, model_points=planar_grid(3, 2, 40.0), seed=3)
    obs = list(rig.observations)
    layout = ParameterLayout.for_points([o.model_points for o in obs], refine_points=True)
    fun = RefinedPointResiduals(layout, obs)
    params = replace(rig.params(), points=tuple(o.model_points for o in obs))
    rng = np.random.default_rng(0)
    x = layout.pack(params)
    x[layout.point_block_slice] += rng.normal(scale=0.2, size=3 * layout.n_points)

    J = _numeric_jacobian(fun, x)
    full = build_jacobian_pattern(layout, "full", x0=x).toarray()
    assert not np.any((J != 0.0) & (full == 0))

    # The cross rotation mixes pose translation axes: a projector x row sees the pose ty.
    reduced = build_jacobian_pattern(layout, "reduced").toarray()
    row = 2 * 6  # pose 0, prj_x, point 0
    col = layout.pose_slice(0).start + 4
    assert reduced[row, col] == 0
    assert abs(J[row, col]) > 1e-6


def test_pattern_errors():
    layout = ParameterLayout((4, 4))
    with pytest.raises(ValueError):
        build_jacobian_pattern(layout, "diagonal")
    with pytest.raises(ShapeMismatchError):
        build_jacobian_pattern(layout, "full", x0=np.zeros(layout.size + 1))


def test_full_table_anchor_rows_see_whole_point():
    layout = ParameterLayout((2, 3), refine_points=True)
    J = build_jacobian_pattern(layout, "full").toarray()
    block = layout.point_block_slice
    expected = np.kron(np.eye(5, dtype=np.int8), np.ones((3, 3), dtype=np.int8))
    assert np.array_equal(J[4 * 5 :, block], expected)
    assert not np.any(J[4 * 5 :, : block.start])
