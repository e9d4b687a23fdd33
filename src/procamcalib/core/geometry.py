from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from scipy.spatial.transform import Rotation as R  # type: ignore


def rotvec_to_matrix(rvec: np.ndarray) -> np.ndarray:
    return R.from_rotvec(np.asarray(rvec, dtype=np.float64).reshape(3)).as_matrix()


def matrix_to_rotvec(Rm: np.ndarray) -> np.ndarray:
    return R.from_matrix(np.asarray(Rm, dtype=np.float64).reshape(3, 3)).as_rotvec()


def skew(t: np.ndarray) -> np.ndarray:
    """Cross-product matrix [t]x such that [t]x @ v == cross(t, v)."""
    tx, ty, tz = (float(v) for v in np.asarray(t, dtype=np.float64).reshape(3))
    return np.array([[0.0, -tz, ty], [tz, 0.0, -tx], [-ty, tx, 0.0]], dtype=np.float64)


@dataclass(frozen=True)
class RigidPose:
    """
    Rigid transform X_dst = R(rvec) X_src + tvec.

    Used both for the model->camera board poses and for the camera->projector
    cross-device transform.
    """

    rvec: np.ndarray  # (3,)
    tvec: np.ndarray  # (3,)

    def __post_init__(self) -> None:
        object.__setattr__(self, "rvec", np.asarray(self.rvec, dtype=np.float64).reshape(3).copy())
        object.__setattr__(self, "tvec", np.asarray(self.tvec, dtype=np.float64).reshape(3).copy())

    @classmethod
    def identity(cls) -> "RigidPose":
        return cls(rvec=np.zeros(3), tvec=np.zeros(3))

    @classmethod
    def from_matrix(cls, Rm: np.ndarray, t: np.ndarray) -> "RigidPose":
        return cls(rvec=matrix_to_rotvec(Rm), tvec=np.asarray(t, dtype=np.float64).reshape(3))

    @classmethod
    def from_array(cls, p: np.ndarray) -> "RigidPose":
        p = np.asarray(p, dtype=np.float64).reshape(6)
        return cls(rvec=p[:3], tvec=p[3:])

    def as_array(self) -> np.ndarray:
        return np.concatenate([self.rvec, self.tvec], axis=0)

    def matrix(self) -> np.ndarray:
        return rotvec_to_matrix(self.rvec)

    def apply(self, points: np.ndarray) -> np.ndarray:
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        return (self.matrix() @ points.T).T + self.tvec.reshape(1, 3)

    def compose(self, inner: "RigidPose") -> "RigidPose":
        """Returns self ∘ inner, i.e. apply `inner` first."""
        Ra = self.matrix()
        return RigidPose.from_matrix(Ra @ inner.matrix(), Ra @ inner.tvec + self.tvec)

    def inverse(self) -> "RigidPose":
        Rm = self.matrix()
        return RigidPose.from_matrix(Rm.T, -Rm.T @ self.tvec)

    @property
    def angle_rad(self) -> float:
        return float(np.linalg.norm(self.rvec))


def rotation_angle_between(a: RigidPose, b: RigidPose) -> float:
    """Geodesic angle (rad) between the rotations of two poses."""
    rel = R.from_rotvec(a.rvec).inv() * R.from_rotvec(b.rvec)
    return float(np.linalg.norm(rel.as_rotvec()))
