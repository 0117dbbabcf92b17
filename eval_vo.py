#!/usr/bin/env python3
"""
Evaluate a VO trajectory (from dense_vo.py) against TUM RGB-D ground truth.

Inputs
- GT poses: TUM groundtruth.txt (`ts tx ty tz qx qy qz qw`, camera-to-world).
- EST poses: the TUM-format trajectory written by dense_vo.py.

What it does
- Associates both trajectories by timestamp.
- Aligns the estimate to GT with rigid SE(3) (no scale) or Sim(3) (with
  scale) using Umeyama, or not at all.
- Computes ATE RMSE and RPE (translation and rotation) and plots XY
  trajectories.

Usage
  python eval_vo.py \
    --gt_poses /path/to/rgbd_dataset_freiburg3_teddy/groundtruth.txt \
    --est_poses poses.txt \
    --align se3

Requires: numpy, matplotlib
"""
from __future__ import annotations

import argparse

import matplotlib
import matplotlib.pyplot as plt
import numpy as np

from rgbd_vo.evaluation import align_poses, ate_rmse, rpe
from rgbd_vo.tum import associate_timestamps, read_tum_trajectory


def plot_trajectories(gt_T, est_T, title: str, save_plot: str | None = None):
    est = np.stack([T[:3, 3] for T in est_T], axis=0)
    gt = np.stack([T[:3, 3] for T in gt_T], axis=0)
    plt.figure()
    plt.plot(gt[:, 0], gt[:, 1], label='GT')
    plt.plot(est[:, 0], est[:, 1], label='EST', linestyle='--')
    plt.axis('equal')
    plt.xlabel('x [m]')
    plt.ylabel('y [m]')
    plt.title(title)
    plt.legend()
    if save_plot:
        plt.savefig(save_plot)
        print(f"Trajectory plot saved to {save_plot}")
    else:
        plt.show()


def evaluate(gt_path: str, est_path: str, align: str = 'none', delta: int = 1,
             max_difference: float = 0.02):
    gt_ts, gt = read_tum_trajectory(gt_path)
    est_ts, est = read_tum_trajectory(est_path)
    matches = associate_timestamps(gt_ts, est_ts, max_difference)
    if len(matches) < 2:
        raise RuntimeError(f"only {len(matches)} matching timestamps between GT and estimate")
    gt = [gt[i] for i, _ in matches]
    est = [est[j] for _, j in matches]

    if align in ('se3', 'sim3'):
        est = align_poses(gt, est, mode=align)

    ate = ate_rmse(gt, est)
    rpe_t, rpe_r = rpe(gt, est, delta=delta)
    return gt, est, {"ate": ate, "rpe_trans": rpe_t, "rpe_rot": rpe_r, "matched": len(matches)}


def main(argv=None):
    ap = argparse.ArgumentParser()
    ap.add_argument('--gt_poses', required=True, help='TUM groundtruth.txt')
    ap.add_argument('--est_poses', required=True, help='Estimated trajectory from dense_vo.py')
    ap.add_argument('--align', choices=['se3', 'sim3', 'none'], default='none', help='Alignment mode')
    ap.add_argument('--delta', type=int, default=1, help='Delta for RPE')
    ap.add_argument('--max_difference', type=float, default=0.02, help='Max timestamp difference [s]')
    ap.add_argument('--save_plot', type=str, default=None, help='Path to save trajectory plot')
    args = ap.parse_args(argv)

    if args.save_plot:
        matplotlib.use('Agg')

    gt, est, metrics = evaluate(args.gt_poses, args.est_poses, args.align, args.delta, args.max_difference)
    print(f"Matched {metrics['matched']} poses")
    print(f"ATE RMSE: {metrics['ate']:.4f} m")
    print(f"RPE (delta={args.delta}): {metrics['rpe_trans']:.4f} m, {metrics['rpe_rot']:.3f} deg")

    plot_trajectories(gt, est, title=f"Trajectory (ATE={metrics['ate']:.3f} m)", save_plot=args.save_plot)


if __name__ == '__main__':
    main()
