from __future__ import annotations


def test_public_api_exports() -> None:
    import procamcalib as pc

    assert hasattr(pc, "calibrate_projector_camera")
    assert hasattr(pc, "optimize_stereo")
    assert hasattr(pc, "StereoCalibrationResult")
    assert hasattr(pc, "PoseObservations")
    assert hasattr(pc, "PointsFixed")
    assert hasattr(pc, "PointsRefined")
    assert hasattr(pc, "CalibrationConfig")


def test_api_subpackage_exports() -> None:
    from procamcalib import api

    for name in api.__all__:
        assert hasattr(api, name)
    assert "estimate_cross_pose" in api.__all__
