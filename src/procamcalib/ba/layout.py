"""
Flat parameter vector layout for joint camera/projector bundle adjustment.

Slot order (0-based):

    [0:8]     camera    fx, fy, cx, cy, k1, k2, p1, p2
    [8:16]    projector fx, fy, cx, cy, k1, k2, p1, p2
    [16:22]   cross pose r0x, r0y, r0z, t0x, t0y, t0z (camera view -> projector view)
    [22+6i:28+6i]  pose i, model -> camera view: rx, ry, rz, tx, ty, tz
    [22+6N:]  refined points only: X, Y, Z per point, pose-major then point order

This module is the only place that knows these offsets.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np

from procamcalib.core.geometry import RigidPose
from procamcalib.core.pinhole import Intrinsics
from procamcalib.errors import ShapeMismatchError

N_INTRINSICS = 8
N_POSE = 6
HEAD_SIZE = 2 * N_INTRINSICS + N_POSE

INTRINSIC_NAMES = ("fx", "fy", "cx", "cy", "k1", "k2", "p1", "p2")
POSE_NAMES = ("rx", "ry", "rz", "tx", "ty", "tz")


@dataclass(frozen=True)
class StereoParams:
    """Typed view of one parameter vector."""

    camera: Intrinsics
    projector: Intrinsics
    cross_pose: RigidPose
    poses: tuple[RigidPose, ...]
    points: tuple[np.ndarray, ...] | None = None  # per pose (n_i,3), refined mode only


def _as_vector(x: np.ndarray) -> np.ndarray:
    x = np.asarray(x, dtype=np.float64)
    if x.ndim != 1:
        raise ShapeMismatchError(f"parameter vector must be 1-D, got shape {x.shape}")
    return x


def pack_head(camera: Intrinsics, projector: Intrinsics, cross_pose: RigidPose) -> np.ndarray:
    return np.concatenate([camera.as_array(), projector.as_array(), cross_pose.as_array()], axis=0)


def unpack_head(x: np.ndarray) -> tuple[Intrinsics, Intrinsics, RigidPose]:
    """Inverse of `pack_head`; trailing pose/point blocks are ignored."""
    x = _as_vector(x)
    if x.size < HEAD_SIZE:
        raise ShapeMismatchError(f"parameter vector has {x.size} entries, need at least {HEAD_SIZE}")
    camera = Intrinsics.from_array(x[0:N_INTRINSICS])
    projector = Intrinsics.from_array(x[N_INTRINSICS : 2 * N_INTRINSICS])
    cross_pose = RigidPose.from_array(x[2 * N_INTRINSICS : HEAD_SIZE])
    return camera, projector, cross_pose


@dataclass(frozen=True)
class ParameterLayout:
    point_counts: tuple[int, ...]
    refine_points: bool = False

    def __post_init__(self) -> None:
        counts = tuple(int(n) for n in self.point_counts)
        object.__setattr__(self, "point_counts", counts)
        if not counts:
            raise ShapeMismatchError("layout needs at least one pose")
        if any(n <= 0 for n in counts):
            raise ShapeMismatchError(f"every pose needs a positive point count, got {list(counts)}")

    @classmethod
    def for_points(cls, model_points: Sequence[np.ndarray], refine_points: bool = False) -> "ParameterLayout":
        return cls(
            point_counts=tuple(int(np.asarray(p).reshape(-1, 3).shape[0]) for p in model_points),
            refine_points=refine_points,
        )

    @property
    def n_poses(self) -> int:
        return len(self.point_counts)

    @property
    def n_points(self) -> int:
        return int(sum(self.point_counts))

    @property
    def size(self) -> int:
        n = HEAD_SIZE + N_POSE * self.n_poses
        if self.refine_points:
            n += 3 * self.n_points
        return n

    @property
    def residual_size(self) -> int:
        n = 4 * self.n_points
        if self.refine_points:
            n += 3 * self.n_points
        return n

    # Column ranges.

    @property
    def camera_slice(self) -> slice:
        return slice(0, N_INTRINSICS)

    @property
    def projector_slice(self) -> slice:
        return slice(N_INTRINSICS, 2 * N_INTRINSICS)

    @property
    def cross_pose_slice(self) -> slice:
        return slice(2 * N_INTRINSICS, HEAD_SIZE)

    def pose_slice(self, i: int) -> slice:
        if not 0 <= i < self.n_poses:
            raise IndexError(f"pose index {i} out of range")
        start = HEAD_SIZE + N_POSE * i
        return slice(start, start + N_POSE)

    @property
    def point_block_slice(self) -> slice:
        if not self.refine_points:
            raise ShapeMismatchError("layout has no point block (points are fixed)")
        start = HEAD_SIZE + N_POSE * self.n_poses
        return slice(start, start + 3 * self.n_points)

    def points_slice(self, i: int) -> slice:
        block = self.point_block_slice
        if not 0 <= i < self.n_poses:
            raise IndexError(f"pose index {i} out of range")
        start = block.start + 3 * int(sum(self.point_counts[:i]))
        return slice(start, start + 3 * self.point_counts[i])

    # Codec.

    def check(self, x: np.ndarray) -> np.ndarray:
        x = _as_vector(x)
        if x.size != self.size:
            raise ShapeMismatchError(
                f"parameter vector has {x.size} entries, layout expects {self.size} "
                f"({self.n_poses} poses, {self.n_points} points, refine_points={self.refine_points})"
            )
        return x

    def pack(self, params: StereoParams) -> np.ndarray:
        if len(params.poses) != self.n_poses:
            raise ShapeMismatchError(f"got {len(params.poses)} poses, layout expects {self.n_poses}")
        parts = [pack_head(params.camera, params.projector, params.cross_pose)]
        parts.extend(pose.as_array() for pose in params.poses)

        if self.refine_points:
            if params.points is None or len(params.points) != self.n_poses:
                raise ShapeMismatchError("refined layout needs one point array per pose")
            for i, P in enumerate(params.points):
                P = np.asarray(P, dtype=np.float64)
                if P.shape != (self.point_counts[i], 3):
                    raise ShapeMismatchError(
                        f"pose {i}: points shape {P.shape}, layout expects ({self.point_counts[i]}, 3)"
                    )
                parts.append(P.reshape(-1))
        elif params.points is not None:
            raise ShapeMismatchError("fixed-points layout cannot carry points")

        return self.check(np.concatenate(parts, axis=0))

    def unpack(self, x: np.ndarray) -> StereoParams:
        x = self.check(x)
        camera, projector, cross_pose = unpack_head(x)
        poses = tuple(RigidPose.from_array(x[self.pose_slice(i)]) for i in range(self.n_poses))
        points = None
        if self.refine_points:
            points = tuple(x[self.points_slice(i)].reshape(-1, 3).copy() for i in range(self.n_poses))
        return StereoParams(camera=camera, projector=projector, cross_pose=cross_pose, poses=poses, points=points)
