import numpy as np
import pytest

from conftest import CX, CY, FX, FY, TRUE_TWIST, render
from rgbd_vo.camera import CameraIntrinsics
from rgbd_vo.errors import ConfigurationError, InsufficientDataError
from rgbd_vo.residuals import (LANES, compute_residual_jacobian_naive,
                               compute_residual_jacobian_vectorized, image_gradients)
from rgbd_vo.se3 import se3_exp


def assert_equivalent(naive, vec):
    assert naive.num_residual == vec.num_residual
    np.testing.assert_array_equal(naive.valid_mask, vec.valid_mask)
    np.testing.assert_allclose(vec.residual, naive.residual, rtol=1e-4, atol=1e-10)
    np.testing.assert_allclose(vec.jacobian, naive.jacobian, rtol=1e-4, atol=1e-10)


@pytest.fixture(scope="module")
def odd_frames(true_transform):
    # 75 x 63 = 4725 pixels, not a multiple of LANES, with a hole in the depth
    cam = CameraIntrinsics(FX, FY, 0.0, 37.0, 31.0)
    img1, dep1 = render(np.eye(4), width=75, height=63, cx=37.0, cy=31.0)
    img2, _ = render(true_transform, width=75, height=63, cx=37.0, cy=31.0)
    dep1 = dep1.copy()
    dep1[10:20, 30:45] = 0.0
    dep1[-1, -3:] = 0.0
    assert (75 * 63) % LANES != 0
    return img1, dep1, img2, cam


class TestEquivalence:
    @pytest.mark.parametrize("block_size,num_threads", [(8, 1), (64, 4), (4096, None)])
    def test_naive_matches_vectorized(self, odd_frames, true_transform, block_size, num_threads):
        img1, dep1, img2, cam = odd_frames
        naive = compute_residual_jacobian_naive(img1, img2, dep1, true_transform, cam)
        vec = compute_residual_jacobian_vectorized(img1, img2, dep1, true_transform, cam,
                                                   block_size=block_size, num_threads=num_threads)
        assert_equivalent(naive, vec)
        assert not naive.valid_mask.reshape(dep1.shape)[15, 35]

    def test_equivalent_on_float32_frames(self, odd_frames, true_transform):
        img1, dep1, img2, cam = odd_frames
        img1, dep1, img2 = (a.astype(np.float32) for a in (img1, dep1, img2))
        naive = compute_residual_jacobian_naive(img1, img2, dep1, true_transform, cam)
        vec = compute_residual_jacobian_vectorized(img1, img2, dep1, true_transform, cam, block_size=64)
        assert naive.residual.dtype == vec.residual.dtype == np.float64
        assert_equivalent(naive, vec)
        ref = compute_residual_jacobian_vectorized(img1.astype(np.float64), img2.astype(np.float64),
                                                   dep1.astype(np.float64), true_transform, cam)
        np.testing.assert_array_equal(vec.residual, ref.residual)

    def test_equivalent_on_coarse_level_with_skew(self, frame_pair):
        img_pyr1, dep_pyr1, img_pyr2 = frame_pair
        cam = CameraIntrinsics(FX / 2, FY / 2, 0.7, (CX + 0.5) / 2 - 0.5, (CY + 0.5) / 2 - 0.5)
        T = se3_exp(np.array([-0.02, 0.01, 0.03, -0.05, 0.02, 0.04]))
        naive = compute_residual_jacobian_naive(img_pyr1.at(1), img_pyr2.at(1), dep_pyr1.at(1), T, cam)
        vec = compute_residual_jacobian_vectorized(img_pyr1.at(1), img_pyr2.at(1), dep_pyr1.at(1), T, cam,
                                                   block_size=16, num_threads=2)
        assert_equivalent(naive, vec)
        # large motion pushes pixels out of view
        assert naive.num_residual < img_pyr1.at(1).size

    def test_exact_boundary_reprojection(self):
        # a 1 px shift to the right lands column W-2 exactly on the last column of frame 2
        H, W = 7, 13
        cam = CameraIntrinsics(4.0, 4.0, 0.0, 0.0, 0.0)
        rng = np.random.default_rng(3)
        img1 = rng.random((H, W))
        img2 = rng.random((H, W))
        dep1 = np.full((H, W), 2.0)
        T = np.eye(4)
        T[0, 3] = 0.5

        naive = compute_residual_jacobian_naive(img1, img2, dep1, T, cam)
        vec = compute_residual_jacobian_vectorized(img1, img2, dep1, T, cam, block_size=8)
        assert_equivalent(naive, vec)

        mask = naive.valid_mask.reshape(H, W)
        assert mask[:, :W - 1].all()
        assert not mask[:, W - 1].any()
        assert naive.num_residual == H * (W - 1)
        expected = (img2[:, 1:] - img1[:, :-1]).ravel()
        np.testing.assert_allclose(naive.residual, expected, rtol=0, atol=1e-12)


class TestResidualJacobian:
    def test_identity_on_identical_frames(self, static_pair, camera):
        img_pyr1, dep_pyr1, img_pyr2 = static_pair
        rj = compute_residual_jacobian_vectorized(img_pyr1.at(0), img_pyr2.at(0), dep_pyr1.at(0),
                                                  np.eye(4), camera.intrinsics(0))
        assert rj.num_residual > 0.9 * img_pyr1.at(0).size
        assert np.abs(rj.residual).max() < 1e-9
        assert rj.jacobian.shape == (rj.num_residual, 6)

    def test_jacobian_matches_finite_differences(self, frame_pair, camera):
        img_pyr1, dep_pyr1, img_pyr2 = frame_pair
        img1, dep1, img2 = img_pyr1.at(0), dep_pyr1.at(0), img_pyr2.at(0)
        cam = camera.intrinsics(0)
        # off the pixel grid, so finite differences stay inside one interpolation cell
        T = se3_exp(0.5 * TRUE_TWIST)
        base = compute_residual_jacobian_vectorized(img1, img2, dep1, T, cam)
        eps = 1e-6
        for k in range(6):
            xi = np.zeros(6)
            xi[k] = eps
            pert = compute_residual_jacobian_vectorized(img1, img2, dep1, se3_exp(xi) @ T, cam)
            common = base.valid_mask & pert.valid_mask
            keep_base = common[base.valid_mask]
            keep_pert = common[pert.valid_mask]
            fd = (pert.residual[keep_pert] - base.residual[keep_base]) / eps
            analytic = base.jacobian[keep_base, k]
            rel = np.linalg.norm(fd - analytic) / np.linalg.norm(analytic)
            assert rel < 0.15, f"twist component {k}: relative error {rel:.3f}"

    def test_invalid_depth_is_excluded(self, frame_pair, camera):
        img_pyr1, dep_pyr1, img_pyr2 = frame_pair
        dep = dep_pyr1.at(2).copy()
        dep[:, ::2] = 0.0
        rj = compute_residual_jacobian_naive(img_pyr1.at(2), img_pyr2.at(2), dep, np.eye(4), camera.intrinsics(2))
        mask = rj.valid_mask.reshape(dep.shape)
        assert not mask[:, ::2].any()

    def test_no_valid_pixel_raises(self, frame_pair, camera):
        img_pyr1, dep_pyr1, img_pyr2 = frame_pair
        dep = np.zeros_like(dep_pyr1.at(2))
        for fn in (compute_residual_jacobian_naive, compute_residual_jacobian_vectorized):
            with pytest.raises(InsufficientDataError):
                fn(img_pyr1.at(2), img_pyr2.at(2), dep, np.eye(4), camera.intrinsics(2))

    def test_points_behind_camera_are_excluded(self, frame_pair, camera):
        img_pyr1, dep_pyr1, img_pyr2 = frame_pair
        T = np.eye(4)
        T[2, 3] = -5.0
        with pytest.raises(InsufficientDataError):
            compute_residual_jacobian_vectorized(img_pyr1.at(2), img_pyr2.at(2), dep_pyr1.at(2), T,
                                                 camera.intrinsics(2))

    def test_bad_block_size(self, frame_pair, camera):
        img_pyr1, dep_pyr1, img_pyr2 = frame_pair
        with pytest.raises(ConfigurationError):
            compute_residual_jacobian_vectorized(img_pyr1.at(2), img_pyr2.at(2), dep_pyr1.at(2), np.eye(4),
                                                 camera.intrinsics(2), block_size=12)

    def test_shape_mismatch(self, camera):
        with pytest.raises(ConfigurationError):
            compute_residual_jacobian_naive(np.zeros((4, 4)), np.zeros((4, 4)), np.ones((4, 5)),
                                            np.eye(4), camera.intrinsics(0))


def test_image_gradients_are_central_differences():
    img = np.arange(20, dtype=np.float64).reshape(4, 5) ** 2
    gx, gy = image_gradients(img)
    assert gx[1, 2] == pytest.approx(0.5 * (img[1, 3] - img[1, 1]))
    assert gy[2, 1] == pytest.approx(0.5 * (img[3, 1] - img[1, 1]))
    assert gx[0, 0] == pytest.approx(img[0, 1] - img[0, 0])
