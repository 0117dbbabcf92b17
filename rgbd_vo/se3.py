"""
Small SE(3) utilities.

Twists are ordered xi = [w(3), v(3)]: rotation first, translation second.
Transforms are 4x4 float64 arrays.
"""

from __future__ import annotations

import numpy as np
from scipy.spatial.transform import Rotation


def skew(v: np.ndarray) -> np.ndarray:
    x, y, z = v
    return np.array([[0, -z, y], [z, 0, -x], [-y, x, 0]], dtype=np.float64)


def vee(W: np.ndarray) -> np.ndarray:
    return np.array([W[2, 1], W[0, 2], W[1, 0]], dtype=np.float64)


def rot_angle_deg(R: np.ndarray) -> float:
    """Return rotation angle (degrees) of a 3x3 rotation matrix."""
    tr = np.clip((np.trace(R) - 1.0) / 2.0, -1.0, 1.0)
    return float(np.degrees(np.arccos(tr)))


def _exp_coefficients(theta: float) -> tuple[float, float, float]:
    # sin(t)/t, (1-cos(t))/t^2, (t-sin(t))/t^3 with Taylor series near zero
    if theta < 1e-4:
        t2 = theta * theta
        return 1.0 - t2 / 6.0, 0.5 - t2 / 24.0, 1.0 / 6.0 - t2 / 120.0
    st = np.sin(theta)
    ct = np.cos(theta)
    return st / theta, (1.0 - ct) / theta ** 2, (theta - st) / theta ** 3


def se3_exp(xi: np.ndarray) -> np.ndarray:
    """Exponential map from twist xi=[w(3), v(3)] to 4x4 SE3.
    Uses Rodrigues for rotation; stable for small |w|.
    """
    xi = np.asarray(xi, dtype=np.float64)
    w = xi[:3]
    v = xi[3:]
    theta = float(np.linalg.norm(w))
    A, B, C = _exp_coefficients(theta)
    W = skew(w)
    W2 = W @ W
    I = np.eye(3)
    R = I + A * W + B * W2
    V = I + B * W + C * W2
    T = np.eye(4)
    T[:3, :3] = R
    T[:3, 3] = V @ v
    return T


def se3_log(T: np.ndarray) -> np.ndarray:
    """Logarithm map, inverse of se3_exp for rotation angles below pi."""
    R = T[:3, :3]
    t = T[:3, 3]
    tr = np.clip((np.trace(R) - 1.0) / 2.0, -1.0, 1.0)
    theta = float(np.arccos(tr))
    if theta < 1e-4:
        w = 0.5 * vee(R - R.T) * (1.0 + theta * theta / 6.0)
    else:
        w = theta / (2.0 * np.sin(theta)) * vee(R - R.T)
    A, B, _ = _exp_coefficients(theta)
    W = skew(w)
    if theta < 1e-4:
        D = 1.0 / 12.0
    else:
        D = (1.0 - A / (2.0 * B)) / theta ** 2
    V_inv = np.eye(3) - 0.5 * W + D * (W @ W)
    return np.concatenate([w, V_inv @ t])


def se3_inv(T: np.ndarray) -> np.ndarray:
    R = T[:3, :3]
    t = T[:3, 3]
    Ti = np.eye(4)
    Ti[:3, :3] = R.T
    Ti[:3, 3] = -R.T @ t
    return Ti


def is_rigid_transform(T, atol: float = 1e-5) -> bool:
    """True if T is a finite 4x4 matrix with an orthonormal, right-handed
    rotation block and a [0, 0, 0, 1] bottom row."""
    T = np.asarray(T)
    if T.shape != (4, 4) or not np.all(np.isfinite(T)):
        return False
    if not np.allclose(T[3], [0.0, 0.0, 0.0, 1.0], atol=atol):
        return False
    R = T[:3, :3]
    if not np.allclose(R.T @ R, np.eye(3), atol=atol):
        return False
    return bool(np.linalg.det(R) > 0.0)


def quat_to_rotmat(qx: float, qy: float, qz: float, qw: float) -> np.ndarray:
    """Quaternion [x, y, z, w] (normalized on the way in) to a 3x3 rotation."""
    return Rotation.from_quat([qx, qy, qz, qw]).as_matrix()


def rotmat_to_quat(R: np.ndarray) -> np.ndarray:
    """Rotation matrix to quaternion [qx, qy, qz, qw] with qw >= 0."""
    q = Rotation.from_matrix(np.asarray(R, dtype=np.float64)).as_quat()
    if q[3] < 0:
        q = -q
    return q


def pose_from_quat(t, q) -> np.ndarray:
    """4x4 pose from translation (3,) and quaternion [qx, qy, qz, qw]."""
    T = np.eye(4)
    T[:3, :3] = quat_to_rotmat(*q)
    T[:3, 3] = t
    return T
