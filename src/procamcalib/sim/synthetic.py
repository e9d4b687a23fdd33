from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from procamcalib.ba.layout import StereoParams
from procamcalib.ba.residuals import PoseObservations
from procamcalib.core.geometry import RigidPose
from procamcalib.core.pinhole import Intrinsics, project_points


@dataclass(frozen=True)
class SyntheticRig:
    """Ground truth plus the observations it produces."""

    camera: Intrinsics
    projector: Intrinsics
    cross_pose: RigidPose
    poses: tuple[RigidPose, ...]
    observations: tuple[PoseObservations, ...]

    def params(self) -> StereoParams:
        return StereoParams(camera=self.camera, projector=self.projector, cross_pose=self.cross_pose, poses=self.poses)


def planar_grid(cols: int, rows: int, spacing: float) -> np.ndarray:
    """
    Inner-corner grid in the z=0 board plane, centered at the origin, row-major.
    """
    if cols < 1 or rows < 1:
        raise ValueError("cols and rows must be >= 1")
    xs = spacing * (np.arange(cols, dtype=np.float64) - 0.5 * (cols - 1))
    ys = spacing * (np.arange(rows, dtype=np.float64) - 0.5 * (rows - 1))
    xx, yy = np.meshgrid(xs, ys)
    return np.stack([xx.reshape(-1), yy.reshape(-1), np.zeros(xx.size)], axis=-1)


def _rot_x(a: float) -> np.ndarray:
    ca, sa = np.cos(a), np.sin(a)
    return np.array([[1, 0, 0], [0, ca, -sa], [0, sa, ca]], dtype=np.float64)


def _rot_y(a: float) -> np.ndarray:
    ca, sa = np.cos(a), np.sin(a)
    return np.array([[ca, 0, sa], [0, 1, 0], [-sa, 0, ca]], dtype=np.float64)


def default_camera() -> Intrinsics:
    return Intrinsics(fx=1400.0, fy=1380.0, cx=640.0, cy=480.0, k1=-0.08, k2=0.05, p1=0.001, p2=-0.0008)


def default_projector() -> Intrinsics:
    return Intrinsics(fx=2200.0, fy=2200.0, cx=512.0, cy=384.0, k1=0.02, k2=-0.01, p1=0.0005, p2=0.0003)


def default_cross_pose() -> RigidPose:
    # Projector about 180 units to the right of the camera, toed in toward the board.
    return RigidPose(rvec=np.array([0.02, 0.22, 0.01]), tvec=np.array([-176.0, 5.0, 40.0]))


def make_synthetic_rig(
    n_poses: int = 6,
    *,
    camera: Intrinsics | None = None,
    projector: Intrinsics | None = None,
    cross_pose: RigidPose | None = None,
    model_points: np.ndarray | None = None,
    distance: float = 800.0,
    max_tilt_rad: float = 0.45,
    noise_px: float = 0.0,
    seed: int = 0,
) -> SyntheticRig:
    """
    Sample board poses in front of the camera and project a planar target into both
    devices.

    Tilts alternate sign between poses so that the orientations are well spread.
    """
    if n_poses < 1:
        raise ValueError("n_poses must be >= 1")
    rng = np.random.default_rng(seed)
    camera = camera or default_camera()
    projector = projector or default_projector()
    cross_pose = cross_pose or default_cross_pose()
    if model_points is None:
        model_points = planar_grid(9, 7, 25.0)
    model_points = np.asarray(model_points, dtype=np.float64).reshape(-1, 3)

    poses: list[RigidPose] = []
    observations: list[PoseObservations] = []
    for k in range(n_poses):
        sign_x = 1.0 if k % 2 == 0 else -1.0
        sign_y = 1.0 if (k // 2) % 2 == 0 else -1.0
        tilt_x = sign_x * float(rng.uniform(0.4, 1.0) * max_tilt_rad)
        tilt_y = sign_y * float(rng.uniform(0.4, 1.0) * max_tilt_rad)
        Rm = _rot_y(tilt_y) @ _rot_x(tilt_x)
        t = np.array(
            [
                float(rng.uniform(-0.05, 0.05) * distance),
                float(rng.uniform(-0.05, 0.05) * distance),
                float(distance * rng.uniform(0.85, 1.15)),
            ],
            dtype=np.float64,
        )
        pose = RigidPose.from_matrix(Rm, t)

        uv_cam = project_points(camera, model_points, pose)
        uv_prj = project_points(projector, model_points, cross_pose.compose(pose))
        if noise_px > 0:
            uv_cam = uv_cam + rng.normal(0.0, float(noise_px), size=uv_cam.shape)
            uv_prj = uv_prj + rng.normal(0.0, float(noise_px), size=uv_prj.shape)

        poses.append(pose)
        observations.append(PoseObservations(model_points=model_points.copy(), cam_points=uv_cam, prj_points=uv_prj))

    return SyntheticRig(
        camera=camera,
        projector=projector,
        cross_pose=cross_pose,
        poses=tuple(poses),
        observations=tuple(observations),
    )
