import cv2
import numpy as np
import pytest

from rgbd_vo.evaluation import accumulate_poses, align_poses, ate_rmse, rpe, translation_drift, umeyama
from rgbd_vo.se3 import se3_exp, se3_inv
from rgbd_vo.tum import (associate_timestamps, load_frame, read_associations, read_tum_trajectory,
                         write_tum_trajectory)


def trajectory(n=6):
    poses = [np.eye(4)]
    for k in range(1, n):
        poses.append(poses[-1] @ se3_exp(np.array([0.01 * k, -0.02, 0.005, 0.1, 0.02 * k, -0.05])))
    return poses


class TestTUM:
    def test_read_associations(self, tmp_path):
        path = tmp_path / "associated.txt"
        path.write_text(
            "# comment\n"
            "1305031102.1 1.0 2.0 3.0 0.0 0.0 0.0 1.0 1305031102.11 rgb/a.png 1305031102.12 depth/a.png\n"
            "1305031102.2 1.5 2.0 3.0 0.0 0.0 0.7071068 0.7071068 1305031102.21 rgb/b.png 1305031102.22 depth/b.png\n"
        )
        assocs = read_associations(str(path))
        assert len(assocs) == 2
        assert assocs[0].rgb_path == "rgb/a.png"
        assert assocs[1].depth_path == "depth/b.png"
        np.testing.assert_allclose(assocs[0].pose[:3, 3], [1.0, 2.0, 3.0])
        np.testing.assert_allclose(assocs[1].pose[:3, :3] @ [1.0, 0.0, 0.0], [0.0, 1.0, 0.0], atol=1e-6)
        assert len(read_associations(str(path), n_frames=1)) == 1

    def test_load_frame(self, tmp_path):
        (tmp_path / "rgb").mkdir()
        (tmp_path / "depth").mkdir()
        bgr = np.zeros((4, 5, 3), dtype=np.uint8)
        bgr[..., :] = 100
        cv2.imwrite(str(tmp_path / "rgb" / "a.png"), bgr)
        depth = np.full((4, 5), 5000, dtype=np.uint16)
        depth[0, 0] = 0
        cv2.imwrite(str(tmp_path / "depth" / "a.png"), depth)
        path = tmp_path / "associated.txt"
        path.write_text("0.0 0 0 0 0 0 0 1 0.0 rgb/a.png 0.0 depth/a.png\n")

        gray, dep = load_frame(str(tmp_path), read_associations(str(path))[0])
        assert gray.shape == (4, 5) and gray.dtype == np.float32
        np.testing.assert_allclose(gray, 100.0)
        assert dep[0, 0] == 0.0
        np.testing.assert_allclose(dep[1:], 1.0)

    def test_missing_image(self, tmp_path):
        path = tmp_path / "associated.txt"
        path.write_text("0.0 0 0 0 0 0 0 1 0.0 rgb/none.png 0.0 depth/none.png\n")
        with pytest.raises(FileNotFoundError):
            load_frame(str(tmp_path), read_associations(str(path))[0])

    def test_trajectory_file_round_trip(self, tmp_path):
        poses = trajectory()
        stamps = [0.1 * k for k in range(len(poses))]
        path = str(tmp_path / "traj.txt")
        write_tum_trajectory(path, stamps, poses)
        ts, read = read_tum_trajectory(path)
        np.testing.assert_allclose(ts, stamps)
        for a, b in zip(read, poses):
            np.testing.assert_allclose(a, b, atol=1e-5)

    def test_associate_timestamps(self):
        matches = associate_timestamps([0.0, 0.1, 0.2, 0.3], [0.005, 0.21, 0.5])
        assert matches == [(0, 0), (2, 1)]


class TestEvaluation:
    def test_umeyama_recovers_similarity(self):
        rng = np.random.default_rng(2)
        X = rng.normal(size=(3, 20))
        R = se3_exp(np.array([0.2, -0.4, 0.1, 0, 0, 0]))[:3, :3]
        t = np.array([[1.0], [-2.0], [0.5]])
        R_est, s_est, t_est = umeyama(X, 2.0 * R @ X + t, with_scale=True)
        np.testing.assert_allclose(R_est, R, atol=1e-10)
        assert s_est == pytest.approx(2.0)
        np.testing.assert_allclose(t_est, t, atol=1e-10)

    def test_metrics_zero_for_aligned_copy(self):
        gt = trajectory()
        offset = se3_exp(np.array([0.0, 0.0, 0.3, 1.0, 2.0, 0.0]))
        est = [offset @ T for T in gt]
        aligned = align_poses(gt, est, mode='se3')
        assert ate_rmse(gt, aligned) == pytest.approx(0.0, abs=1e-9)
        t_err, r_err = rpe(gt, aligned)
        assert t_err == pytest.approx(0.0, abs=1e-9)
        assert r_err == pytest.approx(0.0, abs=1e-4)

    def test_accumulate_and_drift(self):
        gt = trajectory()
        relative = [se3_inv(gt[k + 1]) @ gt[k] for k in range(len(gt) - 1)]
        est = accumulate_poses(gt[0], relative)
        errs, mean = translation_drift(gt, est)
        assert errs.shape == (len(gt),)
        assert mean == pytest.approx(0.0, abs=1e-9)

        biased = accumulate_poses(gt[0], [se3_exp(np.array([0, 0, 0, 0.01, 0, 0])) @ T for T in relative])
        errs, mean = translation_drift(gt, biased)
        assert errs[0] == 0.0
        assert mean > 0.0
