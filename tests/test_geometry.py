import numpy as np
import pytest

from procamcalib.core.geometry import RigidPose, rotation_angle_between, skew
from procamcalib.core.pinhole import Intrinsics, project_points


def _random_pose(rng: np.random.Generator) -> RigidPose:
    return RigidPose(rvec=rng.normal(scale=0.5, size=3), tvec=rng.normal(scale=100.0, size=3))


def test_skew_is_cross_product():
    rng = np.random.default_rng(0)
    t = rng.normal(size=3)
    v = rng.normal(size=3)
    assert np.allclose(skew(t) @ v, np.cross(t, v))


def test_compose_and_inverse():
    rng = np.random.default_rng(1)
    a = _random_pose(rng)
    b = _random_pose(rng)
    P = rng.normal(scale=50.0, size=(20, 3))

    assert np.allclose(a.compose(b).apply(P), a.apply(b.apply(P)), atol=1e-9)
    assert np.allclose(a.inverse().apply(a.apply(P)), P, atol=1e-9)
    assert rotation_angle_between(a, a.compose(a.inverse()).compose(a)) < 1e-9


def test_pose_array_roundtrip():
    p = np.array([0.1, -0.2, 0.3, 10.0, 20.0, 30.0])
    assert np.array_equal(RigidPose.from_array(p).as_array(), p)


def test_from_opencv_drops_higher_order_terms():
    K = np.array([[1000.0, 0.0, 320.0], [0.0, 990.0, 240.0], [0.0, 0.0, 1.0]])
    intr = Intrinsics.from_opencv(K, np.array([0.1, -0.05, 0.001, 0.002, 0.3]))
    assert intr.as_array().tolist() == [1000.0, 990.0, 320.0, 240.0, 0.1, -0.05, 0.001, 0.002]
    assert intr.dist()[4] == 0.0


def test_undistort_pixels_inverts_projection():
    intr = Intrinsics(fx=1200.0, fy=1180.0, cx=640.0, cy=480.0, k1=-0.1, k2=0.05, p1=0.001, p2=-0.001)
    ideal = Intrinsics(fx=intr.fx, fy=intr.fy, cx=intr.cx, cy=intr.cy)
    rng = np.random.default_rng(2)
    P = np.c_[rng.uniform(-200, 200, size=(50, 2)), rng.uniform(700, 900, size=50)]
    pose = RigidPose.identity()
    uv = project_points(intr, P, pose)
    assert np.max(np.abs(intr.undistort_pixels(uv) - project_points(ideal, P, pose))) < 1e-6


def test_projection_matches_opencv():
    cv2 = pytest.importorskip("cv2")
    intr = Intrinsics(fx=1400.0, fy=1380.0, cx=640.0, cy=480.0, k1=-0.08, k2=0.05, p1=0.001, p2=-0.0008)
    rng = np.random.default_rng(3)
    pose = RigidPose(rvec=np.array([0.2, -0.3, 0.1]), tvec=np.array([10.0, -20.0, 800.0]))
    P = np.c_[rng.uniform(-100, 100, size=(30, 2)), np.zeros(30)]

    uv_cv, _ = cv2.projectPoints(P.reshape(-1, 1, 3), pose.rvec, pose.tvec, intr.K(), intr.dist())
    assert np.max(np.abs(project_points(intr, P, pose) - uv_cv.reshape(-1, 2))) < 1e-6
