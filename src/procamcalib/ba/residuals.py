from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np

from procamcalib.ba.layout import ParameterLayout, StereoParams
from procamcalib.core.pinhole import project_brown_pinhole
from procamcalib.errors import ShapeMismatchError


@dataclass(frozen=True)
class PoseObservations:
    """
    Correspondences for one placement of the calibration target.

    - `model_points`: target points in the board (model) frame
    - `cam_points`: observed camera pixels
    - `prj_points`: decoded projector pixels

    Row j of each array refers to the same target point.
    """

    model_points: np.ndarray  # (N,3)
    cam_points: np.ndarray  # (N,2)
    prj_points: np.ndarray  # (N,2)

    @property
    def n_points(self) -> int:
        return int(np.asarray(self.model_points).reshape(-1, 3).shape[0])


def validate_observations(observations: Sequence[PoseObservations]) -> list[PoseObservations]:
    """
    Returns read-only float64 copies; raises ShapeMismatchError on empty or misaligned poses.
    """
    if len(observations) == 0:
        raise ShapeMismatchError("no calibration poses")
    clean: list[PoseObservations] = []
    for i, obs in enumerate(observations):
        P = np.array(obs.model_points, dtype=np.float64)
        uv_c = np.array(obs.cam_points, dtype=np.float64)
        uv_p = np.array(obs.prj_points, dtype=np.float64)
        if P.ndim != 2 or P.shape[1] != 3:
            raise ShapeMismatchError(f"pose {i}: model_points must be (N,3), got {P.shape}")
        if uv_c.ndim != 2 or uv_c.shape[1] != 2 or uv_p.ndim != 2 or uv_p.shape[1] != 2:
            raise ShapeMismatchError(f"pose {i}: image points must be (N,2)")
        if P.shape[0] <= 0:
            raise ShapeMismatchError(f"pose {i}: no points")
        if uv_c.shape[0] != P.shape[0] or uv_p.shape[0] != P.shape[0]:
            raise ShapeMismatchError(
                f"pose {i}: {P.shape[0]} model points but {uv_c.shape[0]} camera / {uv_p.shape[0]} projector points"
            )
        for a in (P, uv_c, uv_p):
            a.setflags(write=False)
        clean.append(PoseObservations(model_points=P, cam_points=uv_c, prj_points=uv_p))
    return clean


def anchor_weight(deviation: np.ndarray, scale: float = 1.0) -> np.ndarray:
    """
    Soft anchor weight exp(-|d|^2 / scale^2) per row of `deviation` (N,3).

    Equals 1 at zero deviation and decays to 0, so w*d stays bounded for large drifts.
    """
    d = np.asarray(deviation, dtype=np.float64).reshape(-1, 3)
    return np.exp(-np.sum(d * d, axis=1) / (float(scale) ** 2))


def _reprojection(params: StereoParams, model_points: Sequence[np.ndarray], observations: Sequence[PoseObservations]) -> np.ndarray:
    res_parts: list[np.ndarray] = []
    for i, obs in enumerate(observations):
        P_cam = params.poses[i].apply(model_points[i])
        P_prj = params.cross_pose.apply(P_cam)
        res_cam = obs.cam_points - project_brown_pinhole(params.camera, P_cam)
        res_prj = obs.prj_points - project_brown_pinhole(params.projector, P_prj)
        res_parts.extend([res_cam[:, 0], res_cam[:, 1], res_prj[:, 0], res_prj[:, 1]])
    return np.concatenate(res_parts, axis=0)


class ReprojectionResiduals:
    """
    Residual function with fixed model points.

    Per pose the output holds [cam_x, cam_y, prj_x, prj_y] blocks of observed minus
    predicted pixels; poses are concatenated in order (length 4 * total points).
    """

    def __init__(self, layout: ParameterLayout, observations: Sequence[PoseObservations]) -> None:
        if layout.refine_points:
            raise ShapeMismatchError("ReprojectionResiduals needs a fixed-points layout")
        self.layout = layout
        self.observations = _check_against_layout(layout, observations)

    def __call__(self, x: np.ndarray) -> np.ndarray:
        params = self.layout.unpack(x)
        return _reprojection(params, [obs.model_points for obs in self.observations], self.observations)


class RefinedPointResiduals:
    """
    Residual function when model points are optimized as well.

    Reprojection blocks as in `ReprojectionResiduals` (using the candidate points),
    followed by the anchor block w * (p - p0) for every point, (x,y,z) per point in
    pose-major order (length 7 * total points).
    """

    def __init__(
        self,
        layout: ParameterLayout,
        observations: Sequence[PoseObservations],
        anchor_scale: float = 1.0,
    ) -> None:
        if not layout.refine_points:
            raise ShapeMismatchError("RefinedPointResiduals needs a refined-points layout")
        if anchor_scale <= 0:
            raise ValueError("anchor_scale must be > 0")
        self.layout = layout
        self.observations = _check_against_layout(layout, observations)
        self.anchor_scale = float(anchor_scale)
        self._points0 = np.concatenate([obs.model_points for obs in self.observations], axis=0)
        self._points0.setflags(write=False)

    def __call__(self, x: np.ndarray) -> np.ndarray:
        params = self.layout.unpack(x)
        assert params.points is not None
        reproj = _reprojection(params, params.points, self.observations)

        deviation = np.concatenate(params.points, axis=0) - self._points0
        w = anchor_weight(deviation, self.anchor_scale)
        anchor = (deviation * w[:, None]).reshape(-1)
        return np.concatenate([reproj, anchor], axis=0)


def _check_against_layout(layout: ParameterLayout, observations: Sequence[PoseObservations]) -> list[PoseObservations]:
    clean = validate_observations(observations)
    counts = tuple(obs.n_points for obs in clean)
    if counts != layout.point_counts:
        raise ShapeMismatchError(f"observation point counts {list(counts)} do not match layout {list(layout.point_counts)}")
    return clean


def reprojection_rms(residual: np.ndarray, layout: ParameterLayout) -> dict[str, float]:
    """RMS pixel error per device from a residual vector laid out as above."""
    residual = np.asarray(residual, dtype=np.float64).reshape(-1)
    if residual.size != layout.residual_size:
        raise ShapeMismatchError(f"residual has {residual.size} entries, layout expects {layout.residual_size}")
    sq_cam = 0.0
    sq_prj = 0.0
    pos = 0
    for n in layout.point_counts:
        block = residual[pos : pos + 4 * n]
        sq_cam += float(np.sum(block[: 2 * n] ** 2))
        sq_prj += float(np.sum(block[2 * n :] ** 2))
        pos += 4 * n
    n_total = float(layout.n_points)
    return {
        "camera_rms_px": float(np.sqrt(sq_cam / n_total)),
        "projector_rms_px": float(np.sqrt(sq_prj / n_total)),
    }
