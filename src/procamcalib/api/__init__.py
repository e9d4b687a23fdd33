from procamcalib.api.stereo_calibration import (
    PoseResult,
    StereoCalibrationResult,
    calibrate_projector_camera,
    epipolar_distances,
    essential_matrix,
    estimate_cross_pose,
    fundamental_matrix,
    optimize_stereo,
)

__all__ = [
    "PoseResult",
    "StereoCalibrationResult",
    "calibrate_projector_camera",
    "epipolar_distances",
    "essential_matrix",
    "estimate_cross_pose",
    "fundamental_matrix",
    "optimize_stereo",
]
