"""
Jacobian sparsity pattern for the joint camera/projector problem.

"What couples to what" is a small table per residual block kind; a single assembler
turns a table plus a `ParameterLayout` into a sparse 0/1 matrix that is handed to the
solver as `jac_sparsity`.

Two tables are provided:

- `REDUCED_COUPLING`: the classic pattern. An x residual ignores the y translation of
  the poses it depends on and vice versa, and an anchor row only sees its own
  coordinate. This is exact only without lens distortion (k1,k2,p1,p2 mix x and y
  through r^2 and the tangential terms), for projector rows only when the
  cross-device rotation is close to identity (R0 mixes the pose translation axes),
  and for anchor rows only at zero deviation (the weight depends on |d|).
- `FULL_COUPLING`: every derivative that is structurally nonzero under the Brown
  model and the soft anchor. Slightly denser, never drops a real dependency.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Mapping

import numpy as np
import scipy.sparse as sp  # type: ignore

from procamcalib.ba.layout import INTRINSIC_NAMES, POSE_NAMES, ParameterLayout
from procamcalib.errors import ShapeMismatchError

BLOCK_KINDS = ("cam_x", "cam_y", "prj_x", "prj_y")


@dataclass(frozen=True)
class BlockCoupling:
    camera: tuple[str, ...] = ()
    projector: tuple[str, ...] = ()
    cross_pose: tuple[str, ...] = ()
    pose: tuple[str, ...] = ()
    point: bool = True


@dataclass(frozen=True)
class CouplingTable:
    """
    Coupling of every reprojection block kind, plus the shape of the (3,3) block
    linking a point's anchor rows to its coordinates.
    """

    blocks: Mapping[str, BlockCoupling]
    anchor_block: Literal["identity", "dense"] = "identity"

    def __post_init__(self) -> None:
        missing = [k for k in BLOCK_KINDS if k not in self.blocks]
        if missing:
            raise ValueError(f"coupling table misses block kinds: {missing}")
        if self.anchor_block not in ("identity", "dense"):
            raise ValueError(f"anchor_block must be 'identity' or 'dense', got {self.anchor_block!r}")


_X_INTR = ("fx", "cx", "k1", "k2", "p1", "p2")
_Y_INTR = ("fy", "cy", "k1", "k2", "p1", "p2")
_NO_TY = ("rx", "ry", "rz", "tx", "tz")
_NO_TX = ("rx", "ry", "rz", "ty", "tz")

REDUCED_COUPLING = CouplingTable(
    blocks={
        "cam_x": BlockCoupling(camera=_X_INTR, pose=_NO_TY),
        "cam_y": BlockCoupling(camera=_Y_INTR, pose=_NO_TX),
        "prj_x": BlockCoupling(projector=_X_INTR, cross_pose=_NO_TY, pose=_NO_TY),
        "prj_y": BlockCoupling(projector=_Y_INTR, cross_pose=_NO_TX, pose=_NO_TX),
    },
    anchor_block="identity",
)

FULL_COUPLING = CouplingTable(
    blocks={
        "cam_x": BlockCoupling(camera=_X_INTR, pose=POSE_NAMES),
        "cam_y": BlockCoupling(camera=_Y_INTR, pose=POSE_NAMES),
        "prj_x": BlockCoupling(projector=_X_INTR, cross_pose=POSE_NAMES, pose=POSE_NAMES),
        "prj_y": BlockCoupling(projector=_Y_INTR, cross_pose=POSE_NAMES, pose=POSE_NAMES),
    },
    anchor_block="dense",
)

COUPLINGS: Mapping[str, CouplingTable] = {
    "reduced": REDUCED_COUPLING,
    "full": FULL_COUPLING,
}


def _named_columns(block: slice, names: tuple[str, ...], all_names: tuple[str, ...]) -> list[int]:
    return [block.start + all_names.index(name) for name in names]


def coupled_columns(layout: ParameterLayout, pose_index: int, coupling: BlockCoupling) -> np.ndarray:
    """Columns shared by every row of one block (everything except the per-point columns)."""
    cols = (
        _named_columns(layout.camera_slice, coupling.camera, INTRINSIC_NAMES)
        + _named_columns(layout.projector_slice, coupling.projector, INTRINSIC_NAMES)
        + _named_columns(layout.cross_pose_slice, coupling.cross_pose, POSE_NAMES)
        + _named_columns(layout.pose_slice(pose_index), coupling.pose, POSE_NAMES)
    )
    return np.asarray(sorted(cols), dtype=np.int64)


def _anchor_entries(first_row: int, first_col: int, n_points: int, anchor_block: str) -> tuple[np.ndarray, np.ndarray]:
    if anchor_block == "identity":
        m = 3 * n_points
        return first_row + np.arange(m, dtype=np.int64), first_col + np.arange(m, dtype=np.int64)
    # Each of a point's 3 rows sees all 3 of its coordinates.
    rows = first_row + np.repeat(np.arange(3 * n_points, dtype=np.int64), 3)
    point_of_row = np.repeat(np.arange(n_points, dtype=np.int64), 9)
    cols = first_col + 3 * point_of_row + np.tile(np.arange(3, dtype=np.int64), 3 * n_points)
    return rows, cols


def build_jacobian_pattern(
    layout: ParameterLayout,
    coupling: str | CouplingTable = "reduced",
    x0: np.ndarray | None = None,
) -> sp.csr_matrix:
    """
    Sparse (residual_size, layout.size) int8 matrix, 1 where a residual can depend on a
    parameter.

    Rows follow the residual order: per pose the cam_x, cam_y, prj_x, prj_y blocks
    (one row per point each), then, when points are refined, 3 anchor rows per point
    coupled to that point's own coordinates only (diagonal or full 3x3, per the
    table's `anchor_block`).
    """
    if isinstance(coupling, str):
        if coupling not in COUPLINGS:
            raise ValueError(f"unknown coupling table: {coupling}")
        coupling = COUPLINGS[coupling]
    if x0 is not None:
        layout.check(x0)
    if layout.n_points <= 0:
        raise ShapeMismatchError("cannot build a Jacobian pattern without points")

    row_parts: list[np.ndarray] = []
    col_parts: list[np.ndarray] = []
    row = 0
    for i, n in enumerate(layout.point_counts):
        for kind in BLOCK_KINDS:
            c = coupling.blocks[kind]
            block_rows = np.arange(row, row + n, dtype=np.int64)

            shared = coupled_columns(layout, i, c)
            row_parts.append(np.repeat(block_rows, shared.size))
            col_parts.append(np.tile(shared, n))

            if c.point and layout.refine_points:
                # Row j sees only X_j, Y_j, Z_j.
                start = layout.points_slice(i).start
                row_parts.append(np.repeat(block_rows, 3))
                col_parts.append(start + np.arange(3 * n, dtype=np.int64))
            row += n

    if layout.refine_points:
        rows, cols = _anchor_entries(row, layout.point_block_slice.start, layout.n_points, coupling.anchor_block)
        row_parts.append(rows)
        col_parts.append(cols)
        row += 3 * layout.n_points

    if row != layout.residual_size:
        raise ShapeMismatchError(f"pattern has {row} rows, layout expects {layout.residual_size}")

    rows = np.concatenate(row_parts, axis=0)
    cols = np.concatenate(col_parts, axis=0)
    data = np.ones(rows.shape, dtype=np.int8)
    return sp.coo_matrix((data, (rows, cols)), shape=(layout.residual_size, layout.size)).tocsr()
