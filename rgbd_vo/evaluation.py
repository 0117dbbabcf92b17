"""
Trajectory metrics: ATE, RPE, and per-frame translational drift.

All poses are 4x4 camera-to-world matrices. Metric functions compare the
first min(len(gt), len(est)) poses of both trajectories.
"""

from __future__ import annotations

from typing import List, Sequence, Tuple

import numpy as np

from .se3 import rot_angle_deg, se3_inv


def camera_centres(poses: Sequence[np.ndarray]) -> np.ndarray:
    """(N, 3) array of the translation parts."""
    return np.array([np.asarray(T, dtype=np.float64)[:3, 3] for T in poses]).reshape(-1, 3)


def umeyama(X: np.ndarray, Y: np.ndarray, with_scale: bool) -> Tuple[np.ndarray, float, np.ndarray]:
    """Least-squares R, s, t with s*R*X + t ~ Y for (3, N) point sets X, Y.

    t is returned as a (3, 1) column.
    """
    if X.shape != Y.shape or X.shape[0] != 3:
        raise ValueError(f"expected two (3, N) point sets, got {X.shape} and {Y.shape}")
    n = X.shape[1]
    muX = X.mean(axis=1, keepdims=True)
    muY = Y.mean(axis=1, keepdims=True)
    Xc, Yc = X - muX, Y - muY

    U, D, Vt = np.linalg.svd(Yc @ Xc.T / n)
    # reflection guard
    sign = np.ones(3)
    sign[2] = np.sign(np.linalg.det(U) * np.linalg.det(Vt)) or 1.0
    R = (U * sign) @ Vt

    s = float(D @ sign / ((Xc * Xc).sum() / n + 1e-12)) if with_scale else 1.0
    return R, s, muY - s * R @ muX


def align_poses(gt_T: Sequence[np.ndarray], est_T: Sequence[np.ndarray], mode: str = 'se3') -> List[np.ndarray]:
    """Express the estimate in the GT frame, fitting camera centres only.

    mode: 'se3' (rigid) or 'sim3' (rigid plus scale).
    """
    if mode not in ('se3', 'sim3'):
        raise ValueError(f"unknown alignment mode '{mode}'")
    N = min(len(gt_T), len(est_T))
    R, s, t = umeyama(camera_centres(est_T[:N]).T, camera_centres(gt_T[:N]).T, with_scale=(mode == 'sim3'))

    aligned = []
    for T in est_T[:N]:
        Ta = np.eye(4)
        Ta[:3, :3] = R @ T[:3, :3]
        Ta[:3, 3] = s * R @ T[:3, 3] + t[:, 0]
        aligned.append(Ta)
    return aligned


def ate_rmse(gt_T: Sequence[np.ndarray], est_T: Sequence[np.ndarray]) -> float:
    """Absolute trajectory error: RMSE of camera-centre distances."""
    N = min(len(gt_T), len(est_T))
    d = camera_centres(est_T[:N]) - camera_centres(gt_T[:N])
    return float(np.sqrt(np.mean(np.sum(d * d, axis=1))))


def rpe(gt_T: Sequence[np.ndarray], est_T: Sequence[np.ndarray], delta: int = 1) -> Tuple[float, float]:
    """Relative pose error over a fixed frame gap.

    Returns (translation RMSE [m], rotation RMSE [deg]), or NaNs when the
    trajectories are shorter than delta + 1.
    """
    N = min(len(gt_T), len(est_T))
    t_sq, r_sq = [], []
    for i in range(N - delta):
        gt_rel = se3_inv(gt_T[i]) @ gt_T[i + delta]
        est_rel = se3_inv(est_T[i]) @ est_T[i + delta]
        E = se3_inv(gt_rel) @ est_rel
        t_sq.append(float(E[:3, 3] @ E[:3, 3]))
        r_sq.append(rot_angle_deg(E[:3, :3]) ** 2)
    if not t_sq:
        return float('nan'), float('nan')
    return float(np.sqrt(np.mean(t_sq))), float(np.sqrt(np.mean(r_sq)))


def translation_drift(gt_T: Sequence[np.ndarray], est_T: Sequence[np.ndarray]) -> Tuple[np.ndarray, float]:
    """Per-frame |t_est - t_gt| of absolute poses and its mean over frames 1..N-1.

    Frame 0 is the shared anchor, so its error is 0 by construction.
    """
    N = min(len(gt_T), len(est_T))
    errs = np.linalg.norm(camera_centres(est_T[:N]) - camera_centres(gt_T[:N]), axis=1)
    mean = float(errs[1:].mean()) if N > 1 else 0.0
    return errs, mean


def accumulate_poses(pose0: np.ndarray, relative: Sequence[np.ndarray]) -> List[np.ndarray]:
    """Chain relative motions (frame k -> frame k+1 camera coords) into absolute poses."""
    poses = [np.array(pose0, dtype=np.float64)]
    for T in relative:
        poses.append(poses[-1] @ se3_inv(T))
    return poses
