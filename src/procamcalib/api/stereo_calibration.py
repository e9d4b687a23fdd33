from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, replace
from typing import Sequence

import numpy as np

from procamcalib.ba.jacobian import build_jacobian_pattern
from procamcalib.ba.layout import ParameterLayout, StereoParams
from procamcalib.ba.residuals import (
    PoseObservations,
    RefinedPointResiduals,
    ReprojectionResiduals,
    reprojection_rms,
    validate_observations,
)
from procamcalib.ba.solver import run_least_squares
from procamcalib.config import CalibrationConfig, CalibrationMode, CrossPoseConfig, PointsFixed, PointsRefined
from procamcalib.core.geometry import RigidPose, rotation_angle_between, skew
from procamcalib.core.monocular import MonocularCalibrator, calibrate_monocular
from procamcalib.core.pinhole import Intrinsics
from procamcalib.errors import DegenerateGeometryWarning, MonocularCalibrationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PoseResult:
    model_points: np.ndarray  # (N,3), refined when points were optimized
    world_points: np.ndarray  # (N,3), camera view frame
    camera_pose: RigidPose  # model -> camera view
    projector_pose: RigidPose  # model -> projector view
    cam_points: np.ndarray  # (N,2) observed
    prj_points: np.ndarray  # (N,2) observed


@dataclass(frozen=True)
class StereoCalibrationResult:
    """
    Joint camera/projector calibration.

    Convention:
    - the camera optical center is the world origin (camera view == world)
    - the cross pose maps camera view to projector view: X_P = R X_C + T
      therefore the projector center in world coordinates is -R^T T
    - E and F satisfy x_P^T E x_C = 0 (normalized) and u_P^T F u_C = 0 (undistorted pixels)
    """

    camera: Intrinsics
    projector: Intrinsics
    cross_pose: RigidPose
    E: np.ndarray  # (3,3)
    F: np.ndarray  # (3,3)
    poses: tuple[PoseResult, ...]
    mode: CalibrationMode
    converged: bool
    status: int
    message: str
    x: np.ndarray  # optimized parameter vector
    diagnostics: dict[str, float]

    @property
    def R(self) -> np.ndarray:
        return self.cross_pose.matrix()

    @property
    def T(self) -> np.ndarray:
        return self.cross_pose.tvec.copy()

    @property
    def projector_center(self) -> np.ndarray:
        return -self.R.T @ self.T


def essential_matrix(cross_pose: RigidPose) -> np.ndarray:
    """
    Essential matrix from the camera->projector transform.

    Built from the projector's pose in the camera frame (R_p = R^T, t_p = -R^T T) as
    ([t_p]x R_p)^T, which equals [T]x R.
    """
    Rm = cross_pose.matrix()
    R_p = Rm.T
    t_p = -Rm.T @ cross_pose.tvec
    return (skew(t_p) @ R_p).T


def fundamental_matrix(E: np.ndarray, camera: Intrinsics, projector: Intrinsics) -> np.ndarray:
    return np.linalg.inv(projector.K()).T @ np.asarray(E, dtype=np.float64) @ np.linalg.inv(camera.K())


def epipolar_distances(
    F: np.ndarray,
    camera: Intrinsics,
    projector: Intrinsics,
    cam_points: np.ndarray,
    prj_points: np.ndarray,
) -> np.ndarray:
    """
    Distance (projector pixels) from each projector point to the epipolar line of its
    camera point. F applies to undistorted pixels, so both sides are undistorted first.
    """
    u_c = camera.undistort_pixels(cam_points)
    u_p = projector.undistort_pixels(prj_points)
    h_c = np.column_stack([u_c, np.ones(u_c.shape[0])])
    h_p = np.column_stack([u_p, np.ones(u_p.shape[0])])
    lines = h_c @ np.asarray(F, dtype=np.float64).T  # (N,3), one line per camera point
    num = np.abs(np.sum(lines * h_p, axis=1))
    return num / np.maximum(np.hypot(lines[:, 0], lines[:, 1]), 1e-300)


def _degenerate(msg: str) -> None:
    logger.warning(msg)
    warnings.warn(msg, DegenerateGeometryWarning, stacklevel=3)


def estimate_cross_pose(
    cam_poses: Sequence[RigidPose],
    prj_poses: Sequence[RigidPose],
    config: CrossPoseConfig | None = None,
) -> RigidPose:
    """
    Initial camera->projector transform from per-pose monocular extrinsics.

    Each target pose gives a candidate prj ∘ cam^-1; the estimate is the per-component
    median of the candidates' rotation vectors and translations, so a single bad
    monocular pose cannot drag it away. Ill-conditioned pose sets raise a
    DegenerateGeometryWarning; the median is returned regardless.
    """
    if config is None:
        config = CrossPoseConfig()
    if len(cam_poses) != len(prj_poses):
        raise ValueError("cam_poses and prj_poses must have the same length")
    if not cam_poses:
        raise ValueError("no poses")

    candidates = [p.compose(c.inverse()) for c, p in zip(cam_poses, prj_poses)]
    rvecs = np.stack([c.rvec for c in candidates], axis=0)
    tvecs = np.stack([c.tvec for c in candidates], axis=0)
    median = RigidPose(rvec=np.median(rvecs, axis=0), tvec=np.median(tvecs, axis=0))

    n = len(candidates)
    if n < 2:
        _degenerate("cross pose estimated from a single target pose")

    if any(c.angle_rad > np.pi - 0.1 for c in candidates):
        _degenerate("cross rotation is close to 180 degrees, rotation-vector median is ill-defined")

    spread = max(rotation_angle_between(cam_poses[0], c) for c in cam_poses)
    if n >= 2 and spread < float(config.min_rotation_spread_rad):
        _degenerate(f"target poses share one orientation (spread {spread:.2e} rad)")

    # Baseline length, floored by the typical target distance for near co-located devices.
    target_distance = float(np.median([np.linalg.norm(c.tvec) for c in cam_poses]))
    t_ref = max(float(np.linalg.norm(median.tvec)), target_distance, 1e-12)
    disagree = 0
    for c in candidates:
        d_angle = rotation_angle_between(median, c)
        d_t = float(np.linalg.norm(c.tvec - median.tvec)) / t_ref
        if d_angle > float(config.outlier_angle_rad) or d_t > float(config.outlier_translation_rel):
            disagree += 1
    logger.debug("cross pose: %d/%d candidates disagree with the median", disagree, n)
    if n >= 2 and 2 * disagree > n:
        _degenerate(f"{disagree} of {n} cross pose candidates disagree with the median")

    return median


def _assemble_result(
    layout: ParameterLayout,
    observations: Sequence[PoseObservations],
    x: np.ndarray,
    mode: CalibrationMode,
    converged: bool,
    status: int,
    message: str,
    diagnostics: dict[str, float],
) -> StereoCalibrationResult:
    params = layout.unpack(x)
    if params.points is not None:
        model_points = [np.asarray(P, dtype=np.float64) for P in params.points]
    else:
        model_points = [np.array(obs.model_points, dtype=np.float64) for obs in observations]

    pose_results: list[PoseResult] = []
    for i, obs in enumerate(observations):
        cam_pose = params.poses[i]
        pose_results.append(
            PoseResult(
                model_points=model_points[i],
                world_points=cam_pose.apply(model_points[i]),
                camera_pose=cam_pose,
                projector_pose=params.cross_pose.compose(cam_pose),
                cam_points=np.array(obs.cam_points, dtype=np.float64),
                prj_points=np.array(obs.prj_points, dtype=np.float64),
            )
        )

    E = essential_matrix(params.cross_pose)
    F = fundamental_matrix(E, params.camera, params.projector)
    epi = np.concatenate(
        [epipolar_distances(F, params.camera, params.projector, p.cam_points, p.prj_points) for p in pose_results]
    )
    diagnostics = {**diagnostics, "epipolar_rms_px": float(np.sqrt(np.mean(epi * epi)))}
    return StereoCalibrationResult(
        camera=params.camera,
        projector=params.projector,
        cross_pose=params.cross_pose,
        E=E,
        F=F,
        poses=tuple(pose_results),
        mode=mode,
        converged=converged,
        status=status,
        message=message,
        x=np.asarray(x, dtype=np.float64).copy(),
        diagnostics=diagnostics,
    )


def optimize_stereo(
    observations: Sequence[PoseObservations],
    initial: StereoParams,
    mode: CalibrationMode | None = None,
    config: CalibrationConfig | None = None,
) -> StereoCalibrationResult:
    """
    Joint bundle adjustment from an explicit initial guess.

    With `PointsRefined`, the nominal model points seed the point block (unless
    `initial.points` is given) and the sparse Jacobian pattern is passed to the solver.
    With `PointsFixed`, derivatives are dense finite differences.
    """
    if mode is None:
        mode = PointsFixed()
    if config is None:
        config = CalibrationConfig()
    if not isinstance(mode, (PointsFixed, PointsRefined)):
        raise TypeError(f"unsupported calibration mode: {mode!r}")

    obs = validate_observations(observations)
    refine = isinstance(mode, PointsRefined)
    layout = ParameterLayout.for_points([o.model_points for o in obs], refine_points=refine)

    if refine and initial.points is None:
        initial = replace(initial, points=tuple(np.array(o.model_points) for o in obs))
    elif not refine:
        initial = replace(initial, points=None)
    x0 = layout.pack(initial)

    if isinstance(mode, PointsRefined):
        fun = RefinedPointResiduals(layout, obs, anchor_scale=mode.anchor_scale)
        pattern = build_jacobian_pattern(layout, mode.coupling, x0=x0)
        logger.info(
            "bundle adjustment with point refinement: %d poses, %d points, %d parameters, %d residuals, %d pattern nonzeros",
            layout.n_poses,
            layout.n_points,
            layout.size,
            layout.residual_size,
            int(pattern.nnz),
        )
    else:
        fun = ReprojectionResiduals(layout, obs)
        pattern = None
        logger.info(
            "bundle adjustment with fixed points: %d poses, %d points, %d parameters, %d residuals",
            layout.n_poses,
            layout.n_points,
            layout.size,
            layout.residual_size,
        )

    rms0 = reprojection_rms(fun(x0), layout)
    outcome = run_least_squares(fun, x0, config.solver, jac_sparsity=pattern)
    rms1 = reprojection_rms(fun(outcome.x), layout)
    logger.info(
        "reprojection rms camera %.4f -> %.4f px, projector %.4f -> %.4f px",
        rms0["camera_rms_px"],
        rms1["camera_rms_px"],
        rms0["projector_rms_px"],
        rms1["projector_rms_px"],
    )

    diag = {
        "opt_cost": float(outcome.cost),
        "opt_nfev": float(outcome.nfev),
        "opt_success": float(bool(outcome.converged)),
        "n_poses": float(layout.n_poses),
        "n_points_total": float(layout.n_points),
        "n_params": float(layout.size),
        "init_camera_rms_px": rms0["camera_rms_px"],
        "init_projector_rms_px": rms0["projector_rms_px"],
        "camera_rms_px": rms1["camera_rms_px"],
        "projector_rms_px": rms1["projector_rms_px"],
    }
    return _assemble_result(
        layout,
        obs,
        outcome.x,
        mode,
        converged=outcome.converged,
        status=outcome.status,
        message=outcome.message,
        diagnostics=diag,
    )


def calibrate_projector_camera(
    observations: Sequence[PoseObservations],
    camera_size: tuple[int, int],
    projector_size: tuple[int, int],
    mode: CalibrationMode | None = None,
    config: CalibrationConfig | None = None,
    monocular: MonocularCalibrator = calibrate_monocular,
) -> StereoCalibrationResult:
    """
    Calibrate camera and projector intrinsics plus their relative pose.

    1. monocular calibration of each device against the same target poses (k3 = 0)
    2. median cross pose over the per-pose relative transforms
    3. joint bundle adjustment (`optimize_stereo`)

    Sizes are (width, height) in pixels. Non-convergence is reported through
    `result.converged`, not raised.
    """
    if config is None:
        config = CalibrationConfig()
    obs = validate_observations(observations)
    model_points = [o.model_points for o in obs]

    cam = monocular(model_points, [o.cam_points for o in obs], camera_size, config.monocular)
    prj = monocular(model_points, [o.prj_points for o in obs], projector_size, config.monocular)
    for name, mono in (("camera", cam), ("projector", prj)):
        if len(mono.poses) != len(obs):
            raise MonocularCalibrationError(f"{name} calibration returned {len(mono.poses)} poses for {len(obs)} inputs")
    logger.info("monocular rms: camera %.4f px, projector %.4f px", cam.rms_px, prj.rms_px)

    cross0 = estimate_cross_pose(cam.poses, prj.poses, config.cross_pose)
    initial = StereoParams(
        camera=cam.intrinsics,
        projector=prj.intrinsics,
        cross_pose=cross0,
        poses=tuple(cam.poses),
    )
    result = optimize_stereo(obs, initial, mode=mode, config=config)
    diag = {**result.diagnostics, "camera_mono_rms_px": float(cam.rms_px), "projector_mono_rms_px": float(prj.rms_px)}
    return replace(result, diagnostics=diag)
