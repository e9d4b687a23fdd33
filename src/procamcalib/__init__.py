from procamcalib.api import StereoCalibrationResult, calibrate_projector_camera, optimize_stereo
from procamcalib.ba.residuals import PoseObservations
from procamcalib.config import CalibrationConfig, PointsFixed, PointsRefined
from procamcalib.errors import DegenerateGeometryWarning, ShapeMismatchError

__all__ = [
    "CalibrationConfig",
    "DegenerateGeometryWarning",
    "PointsFixed",
    "PointsRefined",
    "PoseObservations",
    "ShapeMismatchError",
    "StereoCalibrationResult",
    "calibrate_projector_camera",
    "optimize_stereo",
]
