"""
Synthetic RGB-D scenes for the tests.

The scene is a smooth textured surface Z = g(X, Y) expressed in frame-1
camera coordinates. A frame seen through a camera whose pose maps frame-1
coordinates to its own by T is rendered by ray casting every pixel onto
the surface, so intensity and depth are exact (noise-free, dense).
"""

import numpy as np
import pytest

from rgbd_vo import CameraPyramid, DepthPyramid, ImagePyramid
from rgbd_vo.se3 import se3_exp, se3_inv

WIDTH, HEIGHT = 80, 64
FX = FY = 60.0
CX, CY = 39.5, 31.5
LEVELS = 3

# rotation (rad) then translation (m)
TRUE_TWIST = np.array([0.01, -0.015, 0.005, 0.02, -0.01, 0.015])


def surface_depth(X, Y):
    return 1.0 + 0.15 * X * X + 0.1 * Y + 0.1 * X * Y


def texture(X, Y):
    return 0.5 + 0.2 * np.sin(8.0 * X) * np.cos(7.0 * Y) + 0.15 * np.sin(3.0 * X + 5.0 * Y)


def render(T, width=WIDTH, height=HEIGHT, fx=FX, fy=FY, cx=CX, cy=CY):
    """Return (intensity, depth) seen by a camera with frame-1 -> camera transform T."""
    u, v = np.meshgrid(np.arange(width, dtype=np.float64), np.arange(height, dtype=np.float64))
    yn = (v - cy) / fy
    xn = (u - cx) / fx
    rays = np.stack([xn, yn, np.ones_like(xn)], axis=-1)  # camera coords, z = 1
    Tinv = se3_inv(T)
    c = Tinv[:3, 3]
    d = rays @ Tinv[:3, :3].T                               # ray directions in frame-1 coords
    s = np.ones(xn.shape)
    for _ in range(60):
        p = c + s[..., None] * d
        s = (surface_depth(p[..., 0], p[..., 1]) - c[2]) / d[..., 2]
    p = c + s[..., None] * d
    return texture(p[..., 0], p[..., 1]), s


@pytest.fixture(scope="session")
def camera():
    return CameraPyramid(LEVELS, FX, FY, 0.0, CX, CY)


@pytest.fixture(scope="session")
def true_transform():
    return se3_exp(TRUE_TWIST)


@pytest.fixture(scope="session")
def frame_pair(true_transform):
    """(img_pyr1, dep_pyr1, img_pyr2) for the known motion true_transform."""
    img1, dep1 = render(np.eye(4))
    img2, _ = render(true_transform)
    return (ImagePyramid(LEVELS, img1), DepthPyramid(LEVELS, dep1), ImagePyramid(LEVELS, img2))


@pytest.fixture(scope="session")
def static_pair():
    img1, dep1 = render(np.eye(4))
    return (ImagePyramid(LEVELS, img1), DepthPyramid(LEVELS, dep1), ImagePyramid(LEVELS, img1.copy()))


def pose_error(T_est, T_true):
    """(translation error [m], rotation error [rad]) of T_est w.r.t. T_true."""
    E = se3_inv(T_true) @ T_est
    tr = np.clip((np.trace(E[:3, :3]) - 1.0) / 2.0, -1.0, 1.0)
    return float(np.linalg.norm(T_est[:3, 3] - T_true[:3, 3])), float(np.arccos(tr))
