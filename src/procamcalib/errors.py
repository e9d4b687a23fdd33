from __future__ import annotations


class ShapeMismatchError(ValueError):
    """Parameter vector length or point counts disagree with the declared layout."""


class ConfigValidationError(ValueError):
    pass


class MonocularCalibrationError(RuntimeError):
    pass


class DegenerateGeometryWarning(UserWarning):
    """
    The pose set makes the initial cross-device estimate ill-conditioned.

    The best-effort estimate is still used.
    """
