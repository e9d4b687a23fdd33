from __future__ import annotations

from dataclasses import dataclass

import numpy as np


@dataclass(frozen=True)
class BrownDistortion:
    """
    Four-term Brown-Conrady model on normalized coordinates (x=X/Z, y=Y/Z), OpenCV
    order k1, k2, p1, p2. The sixth-order radial term is not modelled.
    """

    k1: float = 0.0
    k2: float = 0.0
    p1: float = 0.0
    p2: float = 0.0

    def _radial(self, r2: np.ndarray) -> np.ndarray:
        return 1.0 + r2 * (self.k1 + self.k2 * r2)

    def _tangential(self, x: np.ndarray, y: np.ndarray, r2: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        dx = 2.0 * self.p1 * x * y + self.p2 * (r2 + 2.0 * x * x)
        dy = self.p1 * (r2 + 2.0 * y * y) + 2.0 * self.p2 * x * y
        return dx, dy

    def distort(self, x: np.ndarray, y: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        x = np.asarray(x, dtype=np.float64)
        y = np.asarray(y, dtype=np.float64)
        r2 = x * x + y * y
        radial = self._radial(r2)
        dx, dy = self._tangential(x, y, r2)
        return x * radial + dx, y * radial + dy

    def undistort(self, xd: np.ndarray, yd: np.ndarray, iterations: int = 7) -> tuple[np.ndarray, np.ndarray]:
        """
        Fixed-point inverse of distort(), same scheme as cv2.undistortPoints:
        x <- (xd - dx(x)) / radial(x).
        """
        xd = np.asarray(xd, dtype=np.float64)
        yd = np.asarray(yd, dtype=np.float64)
        x = xd.copy()
        y = yd.copy()
        for _ in range(int(iterations)):
            r2 = x * x + y * y
            dx, dy = self._tangential(x, y, r2)
            inv = 1.0 / self._radial(r2)
            x = (xd - dx) * inv
            y = (yd - dy) * inv
        return x, y
