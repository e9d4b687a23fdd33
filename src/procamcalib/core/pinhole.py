from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from procamcalib.core.distortion import BrownDistortion
from procamcalib.core.geometry import RigidPose


@dataclass(frozen=True)
class Intrinsics:
    """
    Pinhole projection with Brown distortion (k1,k2,p1,p2).

    The sixth-order radial term k3 is fixed at zero and never optimized.
    """

    fx: float
    fy: float
    cx: float
    cy: float
    k1: float = 0.0
    k2: float = 0.0
    p1: float = 0.0
    p2: float = 0.0

    @classmethod
    def from_array(cls, p: np.ndarray) -> "Intrinsics":
        fx, fy, cx, cy, k1, k2, p1, p2 = (float(v) for v in np.asarray(p, dtype=np.float64).reshape(8).tolist())
        return cls(fx=fx, fy=fy, cx=cx, cy=cy, k1=k1, k2=k2, p1=p1, p2=p2)

    @classmethod
    def from_opencv(cls, K: np.ndarray, dist: np.ndarray) -> "Intrinsics":
        """Build from an OpenCV camera matrix and distortion vector; terms past p2 are dropped."""
        K = np.asarray(K, dtype=np.float64).reshape(3, 3)
        d = np.zeros((4,), dtype=np.float64)
        dist = np.asarray(dist, dtype=np.float64).reshape(-1)[:4]
        d[: dist.size] = dist
        return cls(
            fx=float(K[0, 0]),
            fy=float(K[1, 1]),
            cx=float(K[0, 2]),
            cy=float(K[1, 2]),
            k1=float(d[0]),
            k2=float(d[1]),
            p1=float(d[2]),
            p2=float(d[3]),
        )

    def as_array(self) -> np.ndarray:
        return np.array([self.fx, self.fy, self.cx, self.cy, self.k1, self.k2, self.p1, self.p2], dtype=np.float64)

    def K(self) -> np.ndarray:
        return np.array(
            [[float(self.fx), 0.0, float(self.cx)], [0.0, float(self.fy), float(self.cy)], [0.0, 0.0, 1.0]],
            dtype=np.float64,
        )

    def dist(self) -> np.ndarray:
        return np.array([self.k1, self.k2, self.p1, self.p2, 0.0], dtype=np.float64)

    def distortion(self) -> BrownDistortion:
        return BrownDistortion(k1=self.k1, k2=self.k2, p1=self.p1, p2=self.p2)

    def undistort_pixels(self, uv_px: np.ndarray) -> np.ndarray:
        """Remove lens distortion, returning ideal pinhole pixels (N,2)."""
        uv_px = np.asarray(uv_px, dtype=np.float64).reshape(-1, 2)
        xd = (uv_px[:, 0] - self.cx) / self.fx
        yd = (uv_px[:, 1] - self.cy) / self.fy
        x, y = self.distortion().undistort(xd, yd, iterations=20)
        return np.stack([self.fx * x + self.cx, self.fy * y + self.cy], axis=1)


def project_brown_pinhole(params: Intrinsics, XYZ_cam: np.ndarray) -> np.ndarray:
    XYZ_cam = np.asarray(XYZ_cam, dtype=np.float64).reshape(-1, 3)
    X = XYZ_cam[:, 0]
    Y = XYZ_cam[:, 1]
    Z = XYZ_cam[:, 2]
    uv = np.full((XYZ_cam.shape[0], 2), np.nan, dtype=np.float64)
    good = np.isfinite(Z) & (np.abs(Z) > 1e-12)
    if not np.any(good):
        return uv

    x = X[good] / Z[good]
    y = Y[good] / Z[good]
    xd, yd = params.distortion().distort(x, y)

    uv[good, 0] = params.fx * xd + params.cx
    uv[good, 1] = params.fy * yd + params.cy
    return uv


def project_points(params: Intrinsics, P_model: np.ndarray, pose: RigidPose) -> np.ndarray:
    """
    Project model points through a model->view pose (same convention as cv2.projectPoints
    with dist=[k1,k2,p1,p2,0]). Returns (N,2) pixels.
    """
    return project_brown_pinhole(params, pose.apply(P_model))
