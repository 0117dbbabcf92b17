"""
TUM RGB-D dataset helpers.

Association file lines (as produced by associate.py merged with the
ground truth) look like

    ts tx ty tz qx qy qz qw  ts_rgb rgb/xxx.png  ts_depth depth/xxx.png

Trajectories are written in the TUM format `ts tx ty tz qx qy qz qw`.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np

from .se3 import pose_from_quat, rotmat_to_quat

# Freiburg 3 (already undistorted, rgb and depth pre-registered)
FREIBURG3_INTRINSICS = dict(fx=535.4, fy=539.2, skew=0.0, cx=320.1, cy=247.6)
TUM_DEPTH_SCALE = 5000.0


@dataclass
class Association:
    timestamp: float
    pose: np.ndarray    # 4x4 ground-truth camera-to-world
    rgb_path: str
    depth_path: str


def read_associations(path: str, n_frames: Optional[int] = None) -> List[Association]:
    out: List[Association] = []
    with open(path, "r") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            items = line.split()
            if len(items) < 12:
                raise ValueError(f"{path}: expected 12 columns, got {len(items)} in line '{line}'")
            vals = [float(x) for x in items[:8]]
            out.append(Association(timestamp=vals[0],
                                   pose=pose_from_quat(vals[1:4], vals[4:8]),
                                   rgb_path=items[9],
                                   depth_path=items[11]))
            if n_frames is not None and len(out) >= n_frames:
                break
    return out


def load_frame(data_dir: str, assoc: Association,
               depth_scale: float = TUM_DEPTH_SCALE) -> Tuple[np.ndarray, np.ndarray]:
    """Return (gray float32 in [0, 255], depth float32 in meters with 0 = invalid)."""
    rgb_file = os.path.join(data_dir, assoc.rgb_path)
    gray_8u = cv2.imread(rgb_file, cv2.IMREAD_GRAYSCALE)
    if gray_8u is None:
        raise FileNotFoundError(f"Could not read image: {rgb_file}")
    depth_file = os.path.join(data_dir, assoc.depth_path)
    depth_raw = cv2.imread(depth_file, cv2.IMREAD_UNCHANGED)
    if depth_raw is None:
        raise FileNotFoundError(f"Could not read depth image: {depth_file}")
    gray = gray_8u.astype(np.float32)
    depth = depth_raw.astype(np.float32) / np.float32(depth_scale)
    return gray, depth


def write_tum_trajectory(path: str, timestamps: Sequence[float], poses: Sequence[np.ndarray]) -> None:
    with open(path, "w") as f:
        for ts, T in zip(timestamps, poses):
            t = T[:3, 3]
            q = rotmat_to_quat(T[:3, :3])
            vals = " ".join(f"{v:.6f}" for v in (*t, *q))
            f.write(f"{ts:.6f} {vals}\n")


def read_tum_trajectory(path: str) -> Tuple[List[float], List[np.ndarray]]:
    timestamps, poses = [], []
    with open(path, "r") as f:
        for line in f:
            if line.startswith("#"):
                continue
            vals = [float(x) for x in line.replace(",", " ").split()]
            if len(vals) != 8:
                continue
            timestamps.append(vals[0])
            poses.append(pose_from_quat(vals[1:4], vals[4:8]))
    return timestamps, poses


def associate_timestamps(ts_a: Sequence[float], ts_b: Sequence[float],
                         max_difference: float = 0.02) -> List[Tuple[int, int]]:
    """Greedy one-to-one matching of two timestamp lists, closest pairs first."""
    a = np.asarray(ts_a, dtype=np.float64)
    b = np.asarray(ts_b, dtype=np.float64)
    if a.size == 0 or b.size == 0:
        return []
    diff = np.abs(a[:, None] - b[None, :])
    cand = np.argwhere(diff < max_difference)
    order = np.argsort(diff[cand[:, 0], cand[:, 1]], kind="stable")
    used_a, used_b, matches = set(), set(), []
    for i, j in cand[order]:
        if i in used_a or j in used_b:
            continue
        used_a.add(i)
        used_b.add(j)
        matches.append((int(i), int(j)))
    matches.sort()
    return matches
