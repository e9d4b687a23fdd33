from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, Union

from procamcalib.errors import ConfigValidationError

SCHEMA_VERSION = "procamcalib.config.v0"

Loss = Literal["linear", "huber", "soft_l1", "cauchy", "arctan"]
Coupling = Literal["reduced", "full"]

_LOSSES = ("linear", "huber", "soft_l1", "cauchy", "arctan")
_COUPLINGS = ("reduced", "full")
_X_SCALES = ("jac", "initial")


@dataclass(frozen=True)
class PointsFixed:
    """Model points are known exactly; only intrinsics and poses are optimized."""


@dataclass(frozen=True)
class PointsRefined:
    """
    Model points are optimized too, softly anchored to their nominal position.

    `anchor_scale` is the deviation (in model units) at which the anchor weight
    exp(-|d|^2 / anchor_scale^2) has dropped to 1/e. `coupling` picks the Jacobian
    sparsity table handed to the solver.
    """

    anchor_scale: float = 1.0
    coupling: Coupling = "full"


CalibrationMode = Union[PointsFixed, PointsRefined]


@dataclass(frozen=True)
class SolverConfig:
    max_nfev: int = 100
    xtol: float = 1e-7
    ftol: float = 1e-8
    gtol: float = 1e-8
    jac: Literal["2-point", "3-point"] = "3-point"
    # "jac", "initial" (|x0| per parameter, floored at x_scale_floor) or one positive number
    x_scale: str | float = "jac"
    x_scale_floor: float = 1e-3
    loss: Loss = "linear"
    f_scale_px: float = 1.0
    verbose: int = 0


@dataclass(frozen=True)
class MonocularConfig:
    max_count: int = 1000
    epsilon: float = 1e-6


@dataclass(frozen=True)
class CrossPoseConfig:
    # A candidate further than this from the median counts as disagreeing.
    outlier_angle_rad: float = 0.1
    outlier_translation_rel: float = 0.1
    min_rotation_spread_rad: float = 1e-3


@dataclass(frozen=True)
class CalibrationConfig:
    solver: SolverConfig = field(default_factory=SolverConfig)
    monocular: MonocularConfig = field(default_factory=MonocularConfig)
    cross_pose: CrossPoseConfig = field(default_factory=CrossPoseConfig)


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise ConfigValidationError(msg)


def load_calibration_config(path: Path) -> CalibrationConfig:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    return parse_calibration_config(data)


def parse_calibration_config(data: dict[str, Any]) -> CalibrationConfig:
    schema_version = data.get("schema_version", SCHEMA_VERSION)
    _require(schema_version == SCHEMA_VERSION, f"schema_version must be {SCHEMA_VERSION}")

    solver = data.get("solver", {})
    monocular = data.get("monocular", {})
    cross = data.get("cross_pose", {})
    _require(isinstance(solver, dict), "solver must be an object")
    _require(isinstance(monocular, dict), "monocular must be an object")
    _require(isinstance(cross, dict), "cross_pose must be an object")

    max_nfev = int(solver.get("max_nfev", 100))
    _require(max_nfev >= 0, "solver.max_nfev must be >= 0")
    xtol = float(solver.get("xtol", 1e-7))
    ftol = float(solver.get("ftol", 1e-8))
    gtol = float(solver.get("gtol", 1e-8))
    _require(xtol >= 0.0 and ftol >= 0.0 and gtol >= 0.0, "solver tolerances must be >= 0")
    jac = str(solver.get("jac", "3-point"))
    _require(jac in ("2-point", "3-point"), "solver.jac must be 2-point or 3-point")

    x_scale_raw = solver.get("x_scale", "jac")
    if isinstance(x_scale_raw, str):
        _require(x_scale_raw in _X_SCALES, "solver.x_scale must be 'jac', 'initial' or a positive number")
        x_scale: str | float = x_scale_raw
    else:
        x_scale = float(x_scale_raw)
        _require(x_scale > 0.0, "solver.x_scale must be 'jac', 'initial' or a positive number")
    x_scale_floor = float(solver.get("x_scale_floor", 1e-3))
    _require(x_scale_floor > 0.0, "solver.x_scale_floor must be > 0")

    loss = str(solver.get("loss", "linear"))
    _require(loss in _LOSSES, f"solver.loss must be one of {', '.join(_LOSSES)}")
    f_scale = float(solver.get("f_scale_px", 1.0))
    _require(f_scale > 0.0, "solver.f_scale_px must be > 0")
    verbose = int(solver.get("verbose", 0))
    _require(verbose in (0, 1, 2), "solver.verbose must be 0, 1 or 2")

    max_count = int(monocular.get("max_count", 1000))
    epsilon = float(monocular.get("epsilon", 1e-6))
    _require(max_count > 0, "monocular.max_count must be > 0")
    _require(epsilon > 0.0, "monocular.epsilon must be > 0")

    outlier_angle = float(cross.get("outlier_angle_rad", 0.1))
    outlier_trans = float(cross.get("outlier_translation_rel", 0.1))
    min_spread = float(cross.get("min_rotation_spread_rad", 1e-3))
    _require(outlier_angle > 0.0 and outlier_trans > 0.0, "cross_pose outlier thresholds must be > 0")
    _require(min_spread >= 0.0, "cross_pose.min_rotation_spread_rad must be >= 0")

    return CalibrationConfig(
        solver=SolverConfig(
            max_nfev=max_nfev,
            xtol=xtol,
            ftol=ftol,
            gtol=gtol,
            jac=jac,  # type: ignore[arg-type]
            x_scale=x_scale,
            x_scale_floor=x_scale_floor,
            loss=loss,  # type: ignore[arg-type]
            f_scale_px=f_scale,
            verbose=verbose,
        ),
        monocular=MonocularConfig(max_count=max_count, epsilon=epsilon),
        cross_pose=CrossPoseConfig(
            outlier_angle_rad=outlier_angle,
            outlier_translation_rel=outlier_trans,
            min_rotation_spread_rad=min_spread,
        ),
    )


def mode_from_dict(data: dict[str, Any]) -> CalibrationMode:
    objective = data.get("objective", "fixed")
    if objective == "fixed":
        return PointsFixed()
    _require(objective == "refined", "objective must be 'fixed' or 'refined'")

    anchor_scale = float(data.get("anchor_scale", 1.0))
    _require(anchor_scale > 0.0, "anchor_scale must be > 0")
    coupling = str(data.get("coupling", "full"))
    _require(coupling in _COUPLINGS, "coupling must be 'reduced' or 'full'")
    return PointsRefined(anchor_scale=anchor_scale, coupling=coupling)  # type: ignore[arg-type]
