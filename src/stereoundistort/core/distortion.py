from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

import numpy as np

_MAX_ITERATIONS = 100
_MAX_STEP_NORM2 = 1e-10
_REL_STEP_SIZE = 1e-6


def iterative_undistort(
    distort: Callable[[np.ndarray, np.ndarray], tuple[np.ndarray, np.ndarray]],
    xd: np.ndarray,
    yd: np.ndarray,
    max_iterations: int = _MAX_ITERATIONS,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Invert `distort` point-wise with Newton steps on a central-difference Jacobian.

    Works for any distortion that is locally invertible. Far outside the
    designed field of view the iteration may not converge; the last iterate is
    returned as-is (possibly non-finite) and it is up to the caller to probe
    the valid domain.
    """
    xd = np.asarray(xd, dtype=np.float64)
    yd = np.asarray(yd, dtype=np.float64)
    x = xd.copy()
    y = yd.copy()
    eps = np.finfo(np.float64).eps

    with np.errstate(all="ignore"):
        for _ in range(int(max_iterations)):
            hx = np.maximum(eps, _REL_STEP_SIZE * np.abs(x))
            hy = np.maximum(eps, _REL_STEP_SIZE * np.abs(y))

            fx, fy = distort(x, y)
            rx = fx - xd
            ry = fy - yd

            x_px, y_px = distort(x + hx, y)
            x_mx, y_mx = distort(x - hx, y)
            x_py, y_py = distort(x, y + hy)
            x_my, y_my = distort(x, y - hy)
            j00 = (x_px - x_mx) / (2.0 * hx)
            j10 = (y_px - y_mx) / (2.0 * hx)
            j01 = (x_py - x_my) / (2.0 * hy)
            j11 = (y_py - y_my) / (2.0 * hy)

            det = j00 * j11 - j01 * j10
            step_x = (j11 * rx - j01 * ry) / det
            step_y = (j00 * ry - j10 * rx) / det
            x = x - step_x
            y = y - step_y

            # NaN steps compare False and count as settled.
            if not np.any(step_x * step_x + step_y * step_y >= _MAX_STEP_NORM2):
                break
    return x, y


@dataclass(frozen=True)
class BrownDistortion:
    """
    Brown-Conrady distortion on normalized camera coordinates (x=X/Z, y=Y/Z).

    Parameters follow common OpenCV naming:
      radial: k1, k2, k3 (numerator), k4, k5, k6 (rational denominator)
      tangential: p1, p2
    """

    k1: float = 0.0
    k2: float = 0.0
    p1: float = 0.0
    p2: float = 0.0
    k3: float = 0.0
    k4: float = 0.0
    k5: float = 0.0
    k6: float = 0.0

    def distort(self, x: np.ndarray, y: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        x = np.asarray(x, dtype=np.float64)
        y = np.asarray(y, dtype=np.float64)
        r2 = x * x + y * y
        r4 = r2 * r2
        r6 = r4 * r2
        radial = (1.0 + self.k1 * r2 + self.k2 * r4 + self.k3 * r6) / (
            1.0 + self.k4 * r2 + self.k5 * r4 + self.k6 * r6
        )
        x2 = x * x
        y2 = y * y
        xy = x * y
        x_tan = 2.0 * self.p1 * xy + self.p2 * (r2 + 2.0 * x2)
        y_tan = self.p1 * (r2 + 2.0 * y2) + 2.0 * self.p2 * xy
        xd = x * radial + x_tan
        yd = y * radial + y_tan
        return xd, yd

    def undistort(self, xd: np.ndarray, yd: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        return iterative_undistort(self.distort, xd, yd)


@dataclass(frozen=True)
class FisheyeDistortion:
    """
    Equidistant fisheye distortion (OpenCV fisheye convention).

      theta  = atan(r),  r = |(x, y)|
      theta_d = theta * (1 + k1 theta^2 + k2 theta^4 + k3 theta^6 + k4 theta^8)
      (xd, yd) = (x, y) * theta_d / r
    """

    k1: float = 0.0
    k2: float = 0.0
    k3: float = 0.0
    k4: float = 0.0

    def distort(self, x: np.ndarray, y: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        x = np.asarray(x, dtype=np.float64)
        y = np.asarray(y, dtype=np.float64)
        r = np.hypot(x, y)
        theta = np.arctan(r)
        t2 = theta * theta
        t4 = t2 * t2
        t6 = t4 * t2
        t8 = t4 * t4
        theta_d = theta * (1.0 + self.k1 * t2 + self.k2 * t4 + self.k3 * t6 + self.k4 * t8)
        small = r < np.finfo(np.float64).eps
        scale = np.where(small, 1.0, theta_d / np.where(small, 1.0, r))
        return x * scale, y * scale

    def undistort(self, xd: np.ndarray, yd: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        return iterative_undistort(self.distort, xd, yd)
