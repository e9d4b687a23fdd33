from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Sequence

import numpy as np

from procamcalib.config import MonocularConfig
from procamcalib.core.geometry import RigidPose
from procamcalib.core.pinhole import Intrinsics
from procamcalib.errors import MonocularCalibrationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MonocularCalibration:
    intrinsics: Intrinsics
    poses: tuple[RigidPose, ...]  # model -> device view, one per target pose
    rms_px: float


MonocularCalibrator = Callable[
    [Sequence[np.ndarray], Sequence[np.ndarray], tuple[int, int], MonocularConfig], MonocularCalibration
]


def calibrate_monocular(
    model_points: Sequence[np.ndarray],
    image_points: Sequence[np.ndarray],
    image_size: tuple[int, int],
    config: MonocularConfig,
) -> MonocularCalibration:
    """
    Zhang-style single-device calibration with OpenCV, k3 held at zero.

    `image_size` is (width, height). A projector is calibrated the same way, treating
    the decoded projector pixels as its image.
    """
    import cv2  # type: ignore

    if len(model_points) != len(image_points):
        raise MonocularCalibrationError("model_points and image_points must have the same number of poses")
    if not model_points:
        raise MonocularCalibrationError("no calibration poses")

    obj_pts_list: list[np.ndarray] = []
    img_pts_list: list[np.ndarray] = []
    for obj, uv in zip(model_points, image_points):
        obj_pts_list.append(np.asarray(obj, dtype=np.float32).reshape(-1, 1, 3))
        img_pts_list.append(np.asarray(uv, dtype=np.float32).reshape(-1, 1, 2))

    criteria = (cv2.TERM_CRITERIA_COUNT + cv2.TERM_CRITERIA_EPS, int(config.max_count), float(config.epsilon))
    try:
        rms, K, dist, rvecs, tvecs = cv2.calibrateCamera(
            obj_pts_list,
            img_pts_list,
            (int(image_size[0]), int(image_size[1])),
            None,
            None,
            flags=cv2.CALIB_FIX_K3,
            criteria=criteria,
        )
    except cv2.error as e:
        raise MonocularCalibrationError(f"cv2.calibrateCamera failed: {e}") from e

    poses = tuple(
        RigidPose(rvec=np.asarray(rv, dtype=np.float64).reshape(3), tvec=np.asarray(tv, dtype=np.float64).reshape(3))
        for rv, tv in zip(rvecs, tvecs)
    )
    intrinsics = Intrinsics.from_opencv(K, dist)
    logger.debug("monocular calibration: %d poses, rms %.4f px, %s", len(poses), float(rms), intrinsics)
    return MonocularCalibration(intrinsics=intrinsics, poses=poses, rms_px=float(rms))
