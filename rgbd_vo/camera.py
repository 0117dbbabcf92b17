"""
Pinhole camera model with skew, and its per-level pyramid.

Projection:  u = (fx * X + skew * Y) / Z + cx,   v = fy * Y / Z + cy

project/back_project use plain elementwise arithmetic so the same code
serves scalar floats (per-pixel kernel) and numpy arrays (block kernel)
with identical rounding.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from .errors import validate_and_raise


@dataclass(frozen=True)
class CameraIntrinsics:
    fx: float
    fy: float
    skew: float
    cx: float
    cy: float

    @property
    def K(self) -> np.ndarray:
        return np.array([[self.fx, self.skew, self.cx],
                         [0.0, self.fy, self.cy],
                         [0.0, 0.0, 1.0]])

    def project(self, X, Y, Z):
        u = (self.fx * X + self.skew * Y) / Z + self.cx
        v = self.fy * Y / Z + self.cy
        return u, v

    def back_project(self, u, v, d):
        yn = (v - self.cy) / self.fy
        xn = (u - self.cx - self.skew * yn) / self.fx
        return xn * d, yn * d, d

    def scaled(self, level: int) -> "CameraIntrinsics":
        """Intrinsics after `level` 2x downsamplings (pixel-centre convention)."""
        s = 0.5 ** level
        return CameraIntrinsics(
            fx=self.fx * s,
            fy=self.fy * s,
            skew=self.skew * s,
            cx=(self.cx + 0.5) * s - 0.5,
            cy=(self.cy + 0.5) * s - 0.5,
        )


class CameraPyramid:
    """
    Intrinsics for every pyramid level, level 0 = full resolution.

    Built once and shared read-only between optimizers; it must stay alive
    as long as any optimizer holding it.
    """

    def __init__(self, levels: int, fx: float, fy: float, skew: float, cx: float, cy: float):
        validate_and_raise(levels > 0, f"levels must be > 0, got {levels}")
        validate_and_raise(fx > 0 and fy > 0, f"focal lengths must be > 0, got fx={fx}, fy={fy}")
        base = CameraIntrinsics(float(fx), float(fy), float(skew), float(cx), float(cy))
        self._levels = tuple(base.scaled(lvl) for lvl in range(levels))

    def intrinsics(self, level: int) -> CameraIntrinsics:
        return self._levels[level]

    def level_count(self) -> int:
        return len(self._levels)

    def __len__(self) -> int:
        return len(self._levels)

    def __repr__(self) -> str:
        c = self._levels[0]
        return (f"CameraPyramid(levels={len(self._levels)}, fx={c.fx}, fy={c.fy}, "
                f"skew={c.skew}, cx={c.cx}, cy={c.cy})")
