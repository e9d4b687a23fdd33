from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

import numpy as np
import scipy.sparse as sp  # type: ignore

from procamcalib.config import SolverConfig

logger = logging.getLogger(__name__)

# scipy.optimize.least_squares status codes
_STATUS_MESSAGES = {
    -1: "improper input parameters",
    0: "the maximum number of function evaluations is exceeded",
    1: "gtol termination condition is satisfied",
    2: "ftol termination condition is satisfied",
    3: "xtol termination condition is satisfied",
    4: "both ftol and xtol termination conditions are satisfied",
}


def resolve_x_scale(config: SolverConfig, x0: np.ndarray) -> str | float | np.ndarray:
    """
    Value passed to `least_squares(x_scale=...)`. "initial" scales every parameter by
    its starting magnitude, floored so parameters starting at zero stay movable.
    """
    if config.x_scale == "initial":
        return np.maximum(np.abs(np.asarray(x0, dtype=np.float64)), float(config.x_scale_floor))
    return config.x_scale


@dataclass(frozen=True)
class SolverOutcome:
    x: np.ndarray
    converged: bool
    status: int
    message: str
    cost: float
    nfev: int


def run_least_squares(
    fun: Callable[[np.ndarray], np.ndarray],
    x0: np.ndarray,
    config: SolverConfig,
    jac_sparsity: sp.spmatrix | None = None,
) -> SolverOutcome:
    """
    Minimize 0.5*|fun(x)|^2 with the trust-region reflective method.

    Running out of budget is not an error: the best vector found so far is returned
    with `converged=False`. A zero budget returns `x0` untouched.
    """
    from scipy.optimize import least_squares  # type: ignore

    x0 = np.asarray(x0, dtype=np.float64).reshape(-1)

    if int(config.max_nfev) == 0:
        r0 = np.asarray(fun(x0), dtype=np.float64)
        logger.warning("solver budget is zero, returning the initial guess")
        return SolverOutcome(
            x=x0.copy(),
            converged=False,
            status=0,
            message=_STATUS_MESSAGES[0],
            cost=float(0.5 * np.dot(r0, r0)),
            nfev=0,
        )

    sol = least_squares(
        fun,
        x0,
        jac=config.jac,
        method="trf",
        jac_sparsity=jac_sparsity,
        x_scale=resolve_x_scale(config, x0),
        loss=config.loss,
        f_scale=float(config.f_scale_px),
        xtol=float(config.xtol),
        ftol=float(config.ftol),
        gtol=float(config.gtol),
        max_nfev=int(config.max_nfev),
        verbose=int(config.verbose),
    )

    status = int(sol.status)
    converged = bool(sol.success) and status > 0
    message = _STATUS_MESSAGES.get(status, str(sol.message))
    if converged:
        logger.info("solver converged after %d evaluations, cost %.6g (%s)", int(sol.nfev), float(sol.cost), message)
    else:
        logger.warning(
            "solver did not converge after %d evaluations, cost %.6g (%s)", int(sol.nfev), float(sol.cost), message
        )
    return SolverOutcome(
        x=np.asarray(sol.x, dtype=np.float64).copy(),
        converged=converged,
        status=status,
        message=message,
        cost=float(sol.cost),
        nfev=int(sol.nfev),
    )
