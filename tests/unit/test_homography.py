"""
Unit tests for robust homography estimation
"""

import pytest
import os
import sys

import numpy as np

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from common.errors import InsufficientCorrespondences
from matching.homography import (
    OpenCVRansacEstimator,
    SeededRansacEstimator,
    apply_homography,
    dlt_homography,
    is_valid_homography,
    make_estimator,
    reprojection_errors,
)


H_TRUE = np.array([
    [0.95, -0.08, 42.0],
    [0.06, 1.02, -17.0],
    [2e-5, -1e-5, 1.0],
])


def _scene(n=200, outlier_frac=0.3, noise_px=0.3, seed=0):
    """Points in a 640x480 frame mapped by H_TRUE, with noise and gross outliers."""
    rng = np.random.default_rng(seed)
    src = rng.uniform([0, 0], [640, 480], size=(n, 2))
    dst = apply_homography(H_TRUE, src) + rng.normal(0, noise_px, size=(n, 2))
    n_out = int(n * outlier_frac)
    out_idx = rng.choice(n, size=n_out, replace=False)
    dst[out_idx] = rng.uniform([0, 0], [640, 480], size=(n_out, 2))
    is_in = np.ones(n, dtype=bool)
    is_in[out_idx] = False
    return src, dst, is_in


def _grid_points():
    xs, ys = np.meshgrid(np.linspace(20, 620, 7), np.linspace(20, 460, 5))
    return np.c_[xs.ravel(), ys.ravel()]


ESTIMATORS = [
    pytest.param(lambda: OpenCVRansacEstimator(), id="opencv"),
    pytest.param(lambda: SeededRansacEstimator(), id="seeded"),
]


class TestGeometryHelpers:
    """Test cases for DLT and reprojection helpers"""

    def test_dlt_exact_four_points(self):
        src = np.array([[0, 0], [100, 0], [100, 100], [0, 100]], dtype=np.float64)
        dst = apply_homography(H_TRUE, src)
        H = dlt_homography(src, dst)

        assert H is not None
        assert np.allclose(H, H_TRUE, atol=1e-6)

    def test_dlt_needs_four(self):
        src = np.zeros((3, 2))
        assert dlt_homography(src, src) is None

    def test_reprojection_errors(self):
        src = np.array([[0.0, 0.0], [10.0, 10.0]])
        dst = np.array([[3.0, 4.0], [10.0, 10.0]])
        err = reprojection_errors(np.eye(3), src, dst)
        assert err.tolist() == pytest.approx([5.0, 0.0])

    def test_point_at_infinity(self):
        H = np.array([[1.0, 0, 0], [0, 1.0, 0], [1.0, 0, 0]])
        out = apply_homography(H, np.array([[0.0, 5.0]]))
        assert np.all(np.isinf(out))

    def test_is_valid_homography(self):
        assert is_valid_homography(np.eye(3))
        assert not is_valid_homography(None)
        assert not is_valid_homography(np.zeros((3, 3)))
        assert not is_valid_homography(np.full((3, 3), np.nan))
        assert not is_valid_homography(np.eye(2))


class TestEstimators:
    """Behaviour shared by both estimators"""

    @pytest.mark.parametrize("make", ESTIMATORS)
    def test_recovers_known_homography(self, make):
        """30% gross outliers; clean points reproject within a pixel"""
        src, dst, is_in = _scene()
        est = make().estimate(src, dst)

        assert est.ok
        assert est.total == len(src)
        assert est.inliers >= 0.9 * is_in.sum()
        assert est.inlier_mask.dtype == bool
        assert est.inlier_mask.shape == (len(src),)
        grid = _grid_points()
        err = np.linalg.norm(apply_homography(est.H, grid) - apply_homography(H_TRUE, grid), axis=1)
        assert err.max() < 1.0
        assert est.H[2, 2] == pytest.approx(1.0)

    @pytest.mark.parametrize("make", ESTIMATORS)
    def test_inlier_mask_respects_threshold(self, make):
        src, dst, _ = _scene(seed=3)
        e = make()
        est = e.estimate(src, dst)
        err = reprojection_errors(est.H, src, dst)

        assert np.array_equal(est.inlier_mask, err <= e.ransac_px)
        assert est.inliers == int(est.inlier_mask.sum())
        assert est.rmse_px <= e.ransac_px

    @pytest.mark.parametrize("make", ESTIMATORS)
    @pytest.mark.parametrize("n", [0, 1, 3])
    def test_fewer_than_four_raises(self, make, n):
        pts = np.arange(2 * n, dtype=np.float64).reshape(n, 2)
        with pytest.raises(InsufficientCorrespondences):
            make().estimate(pts, pts)

    @pytest.mark.parametrize("make", ESTIMATORS)
    def test_length_mismatch(self, make):
        with pytest.raises(ValueError):
            make().estimate(np.zeros((5, 2)), np.zeros((6, 2)))

    @pytest.mark.parametrize("make", ESTIMATORS)
    def test_identity_on_identical_points(self, make):
        src, _, _ = _scene(outlier_frac=0.0, noise_px=0.0)
        est = make().estimate(src, src.copy())

        assert est.ok
        assert est.inliers == len(src)
        assert np.allclose(est.H, np.eye(3), atol=1e-6)

    def test_opencv_is_repeatable(self):
        src, dst, _ = _scene(seed=5)
        a = OpenCVRansacEstimator(seed=7).estimate(src, dst)
        b = OpenCVRansacEstimator(seed=7).estimate(src, dst)
        assert np.array_equal(a.H, b.H)
        assert np.array_equal(a.inlier_mask, b.inlier_mask)

    def test_min_inliers_not_reached(self):
        """A model supported by fewer than min_inliers points is no consensus"""
        src, dst, _ = _scene(n=40, outlier_frac=0.0)
        est = OpenCVRansacEstimator(min_inliers=41).estimate(src, dst)
        assert not est.ok
        assert est.H is None
        assert est.inliers == 40


class TestSeededRansac:
    """Test cases for SeededRansacEstimator"""

    def test_same_result_for_any_worker_count(self):
        """Batch seeds and in-order merging make threads irrelevant"""
        src, dst, _ = _scene(n=300, outlier_frac=0.5, seed=11)
        ref = SeededRansacEstimator(seed=3, workers=1).estimate(src, dst)
        for workers in (2, 4, 7):
            est = SeededRansacEstimator(seed=3, workers=workers).estimate(src, dst)
            assert np.array_equal(est.inlier_mask, ref.inlier_mask)
            assert np.allclose(est.H, ref.H, rtol=0, atol=1e-12)

    def test_same_seed_same_result(self):
        src, dst, _ = _scene(seed=12)
        a = SeededRansacEstimator(seed=9).estimate(src, dst)
        b = SeededRansacEstimator(seed=9).estimate(src, dst)
        assert np.array_equal(a.H, b.H)

    def test_collinear_points_have_no_consensus(self):
        """Every minimal sample is degenerate"""
        t = np.linspace(0, 500, 30)
        src = np.c_[t, 0.5 * t + 10]
        dst = src + 3.0
        est = SeededRansacEstimator(max_iters=200).estimate(src, dst)

        assert not est.ok
        assert est.inliers == 0
        assert est.total == 30
        assert not est.inlier_mask.any()

    def test_random_points_have_no_consensus(self):
        """Unrelated point sets: no model reaches min_inliers"""
        rng = np.random.default_rng(21)
        src = rng.uniform(0, 640, size=(60, 2))
        dst = rng.uniform(0, 640, size=(60, 2))
        est = SeededRansacEstimator(min_inliers=30, max_iters=500).estimate(src, dst)
        assert not est.ok

    def test_refit_does_not_reduce_support(self):
        src, dst, _ = _scene(seed=13)
        raw = SeededRansacEstimator(seed=1, refine=False).estimate(src, dst)
        refined = SeededRansacEstimator(seed=1, refine=True).estimate(src, dst)
        assert refined.inliers >= raw.inliers


class TestMakeEstimator:
    def test_kinds(self):
        e = make_estimator("opencv", ransac_px=3.0, workers=4, refine=False)
        assert isinstance(e, OpenCVRansacEstimator)
        assert e.ransac_px == 3.0
        s = make_estimator("seeded", workers=4)
        assert isinstance(s, SeededRansacEstimator)
        assert s.workers == 4

    def test_unknown(self):
        with pytest.raises(ValueError):
            make_estimator("lmeds")
