from __future__ import annotations
"""
Robust homography estimation from point correspondences.

Two interchangeable estimators, both with .estimate(src, dst) -> HomographyEstimate:

- OpenCVRansacEstimator: cv2.findHomography(RANSAC) with the global OpenCV RNG
  seeded before every call.
- SeededRansacEstimator: numpy RANSAC (normalized DLT, truncated-error scoring,
  inlier refit). Trials run in fixed-size batches with per-batch seeds, so the
  selected model is identical for any number of worker threads.

H maps src (query) pixels to dst (reference) pixels.
"""

import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional, Protocol, Tuple

import cv2
import numpy as np

from common.errors import InsufficientCorrespondences
from common.types import HomographyEstimate


MIN_POINTS = 4
MIN_DET = 1e-10


class HomographyEstimator(Protocol):
    ransac_px: float

    def estimate(self, src: np.ndarray, dst: np.ndarray) -> HomographyEstimate:
        ...


# -----------------------------
# Geometry helpers
# -----------------------------

def _as_point_pairs(src, dst) -> Tuple[np.ndarray, np.ndarray]:
    src = np.asarray(src, dtype=np.float64).reshape(-1, 2)
    dst = np.asarray(dst, dtype=np.float64).reshape(-1, 2)
    if len(src) != len(dst):
        raise ValueError(f"src/dst length mismatch: {len(src)} vs {len(dst)}")
    if len(src) < MIN_POINTS:
        raise InsufficientCorrespondences(f"{len(src)} correspondences, need at least {MIN_POINTS}")
    return src, dst


def apply_homography(H: np.ndarray, pts: np.ndarray) -> np.ndarray:
    """Map (N,2) points through H; points sent to infinity come back as inf."""
    pts = np.asarray(pts, dtype=np.float64).reshape(-1, 2)
    ph = np.c_[pts, np.ones(len(pts))] @ np.asarray(H, dtype=np.float64).T
    w = ph[:, 2:3]
    with np.errstate(divide="ignore", invalid="ignore"):
        out = ph[:, :2] / w
    out[np.abs(w[:, 0]) < 1e-12] = np.inf
    return out


def reprojection_errors(H: np.ndarray, src: np.ndarray, dst: np.ndarray) -> np.ndarray:
    """Forward transfer error |H(src) - dst| per point (pixels)."""
    proj = apply_homography(H, src)
    err = np.linalg.norm(proj - np.asarray(dst, dtype=np.float64).reshape(-1, 2), axis=1)
    err[~np.isfinite(err)] = np.inf
    return err


def is_valid_homography(H: Optional[np.ndarray]) -> bool:
    """Finite, 3x3 and far from singular."""
    if H is None:
        return False
    H = np.asarray(H, dtype=np.float64)
    if H.shape != (3, 3) or not np.all(np.isfinite(H)):
        return False
    return abs(float(np.linalg.det(H))) > MIN_DET


def _normalize_points(pts: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Hartley normalization: centroid to origin, mean distance sqrt(2).
    Returns (T, normalized_pts).
    """
    mean = pts.mean(axis=0)
    d = np.sqrt(((pts - mean) ** 2).sum(axis=1))
    s = math.sqrt(2.0) / (d.mean() + 1e-12)
    T = np.array([[s, 0.0, -s * mean[0]],
                  [0.0, s, -s * mean[1]],
                  [0.0, 0.0, 1.0]], dtype=np.float64)
    return T, (pts - mean) * s


def dlt_homography(src: np.ndarray, dst: np.ndarray) -> Optional[np.ndarray]:
    """
    Normalized Direct Linear Transform over >= 4 correspondences (least
    squares when more). Returns H with H[2,2] == 1, or None if degenerate.
    """
    if len(src) < MIN_POINTS:
        return None
    TA, a = _normalize_points(src)
    TB, b = _normalize_points(dst)
    x, y = a[:, 0], a[:, 1]
    u, v = b[:, 0], b[:, 1]
    zeros = np.zeros_like(x)
    ones = np.ones_like(x)
    rows_u = np.stack([-x, -y, -ones, zeros, zeros, zeros, x * u, y * u, u], axis=1)
    rows_v = np.stack([zeros, zeros, zeros, -x, -y, -ones, x * v, y * v, v], axis=1)
    M = np.concatenate([rows_u, rows_v], axis=0)
    try:
        _, _, Vt = np.linalg.svd(M)
    except np.linalg.LinAlgError:
        return None
    Hn = Vt[-1].reshape(3, 3)
    H = np.linalg.inv(TB) @ Hn @ TA
    if abs(H[2, 2]) < 1e-12:
        return None
    H = H / H[2, 2]
    return H if is_valid_homography(H) else None


def _collinear(p: np.ndarray, tol: float = 1e-6) -> bool:
    """True if any three of the four sample points are (nearly) collinear."""
    scale = max(1.0, float(np.abs(p).max()))
    for i, j, k in ((0, 1, 2), (0, 1, 3), (0, 2, 3), (1, 2, 3)):
        d1 = p[j] - p[i]
        d2 = p[k] - p[i]
        if abs(d1[0] * d2[1] - d1[1] * d2[0]) < tol * scale * scale:
            return True
    return False


def _needed_iters(inlier_ratio: float, confidence: float, sample_size: int = MIN_POINTS) -> float:
    """Standard RANSAC trial count for the current inlier ratio."""
    p = min(max(inlier_ratio, 1e-9), 1.0) ** sample_size
    if p >= 1.0 - 1e-12:
        return 0.0
    return math.log(1.0 - confidence) / math.log(1.0 - p)


def _summarize(H: Optional[np.ndarray], src: np.ndarray, dst: np.ndarray, ransac_px: float) -> HomographyEstimate:
    n = len(src)
    if H is None:
        return HomographyEstimate(None, np.zeros(n, dtype=bool), 0, n, float("inf"))
    err = reprojection_errors(H, src, dst)
    mask = err <= ransac_px
    k = int(mask.sum())
    rmse = float(np.sqrt(np.mean(err[mask] ** 2))) if k else float("inf")
    return HomographyEstimate(H, mask, k, n, rmse)


# -----------------------------
# OpenCV RANSAC
# -----------------------------

@dataclass
class OpenCVRansacEstimator:
    """
    cv2.findHomography(RANSAC). OpenCV refines the winning model over its
    inliers (Levenberg-Marquardt), so there is no separate refine step.
    """
    ransac_px: float = 5.0
    max_iters: int = 2000
    confidence: float = 0.995
    min_inliers: int = MIN_POINTS
    seed: Optional[int] = 0

    def estimate(self, src: np.ndarray, dst: np.ndarray) -> HomographyEstimate:
        src, dst = _as_point_pairs(src, dst)
        if self.seed is not None:
            cv2.setRNGSeed(int(self.seed))
        H, _ = cv2.findHomography(
            src.astype(np.float32).reshape(-1, 1, 2),
            dst.astype(np.float32).reshape(-1, 1, 2),
            cv2.RANSAC,
            ransacReprojThreshold=float(self.ransac_px),
            maxIters=int(self.max_iters),
            confidence=float(self.confidence),
        )
        if H is None or not is_valid_homography(H):
            return _summarize(None, src, dst, self.ransac_px)
        H = H / H[2, 2]
        est = _summarize(H, src, dst, self.ransac_px)
        if est.inliers < max(MIN_POINTS, int(self.min_inliers)):
            return HomographyEstimate(None, est.inlier_mask, est.inliers, est.total, est.rmse_px)
        return est


# -----------------------------
# Seeded numpy RANSAC
# -----------------------------

@dataclass
class _Candidate:
    H: np.ndarray
    inliers: int
    score: float  # truncated squared error sum, lower is better
    batch: int

    def beats(self, other: Optional["_Candidate"]) -> bool:
        if other is None:
            return True
        if self.inliers != other.inliers:
            return self.inliers > other.inliers
        if self.score != other.score:
            return self.score < other.score
        return self.batch < other.batch


@dataclass
class SeededRansacEstimator:
    ransac_px: float = 5.0
    max_iters: int = 2000
    confidence: float = 0.995
    min_inliers: int = MIN_POINTS
    seed: int = 0
    workers: int = 1
    refine: bool = True
    batch_size: int = 50
    refine_rounds: int = 3

    def _run_batch(self, idx: int, seed_seq: np.random.SeedSequence, n_iters: int,
                   src: np.ndarray, dst: np.ndarray) -> Optional[_Candidate]:
        rng = np.random.default_rng(seed_seq)
        tau2 = float(self.ransac_px) ** 2
        n = len(src)
        best: Optional[_Candidate] = None
        for _ in range(n_iters):
            s = rng.choice(n, size=MIN_POINTS, replace=False)
            if _collinear(src[s]) or _collinear(dst[s]):
                continue
            H = dlt_homography(src[s], dst[s])
            if H is None:
                continue
            e2 = reprojection_errors(H, src, dst) ** 2
            k = int(np.count_nonzero(e2 <= tau2))
            cand = _Candidate(H, k, float(np.minimum(e2, tau2).sum()), idx)
            if cand.beats(best):
                best = cand
        return best

    def _search(self, src: np.ndarray, dst: np.ndarray) -> Optional[_Candidate]:
        n = len(src)
        bs = max(1, int(self.batch_size))
        n_batches = int(math.ceil(int(self.max_iters) / bs))
        seeds = np.random.SeedSequence(int(self.seed)).spawn(n_batches)
        sizes = [min(bs, int(self.max_iters) - i * bs) for i in range(n_batches)]

        best: Optional[_Candidate] = None
        needed = float(self.max_iters)
        done = 0
        workers = max(1, int(self.workers))
        pool = ThreadPoolExecutor(max_workers=workers) if workers > 1 else None
        try:
            k = 0
            while k < n_batches and done < needed:
                window = list(range(k, min(n_batches, k + workers)))
                args = [(i, seeds[i], sizes[i], src, dst) for i in window]
                if pool is None:
                    results = [self._run_batch(*a) for a in args]
                else:
                    results = list(pool.map(lambda a: self._run_batch(*a), args))
                # merge strictly in batch order; the stop decision at batch i
                # only depends on batches <= i
                for i, res in zip(window, results):
                    if done >= needed:
                        break
                    done += sizes[i]
                    if res is not None and res.beats(best):
                        best = res
                        needed = min(needed, _needed_iters(best.inliers / n, float(self.confidence)))
                k = window[-1] + 1
        finally:
            if pool is not None:
                pool.shutdown(wait=True)
        return best

    def _refit(self, H: np.ndarray, src: np.ndarray, dst: np.ndarray) -> np.ndarray:
        """Re-estimate over the inlier set while the support does not shrink."""
        best_H = H
        best_k = int(np.count_nonzero(reprojection_errors(H, src, dst) <= self.ransac_px))
        for _ in range(max(0, int(self.refine_rounds))):
            mask = reprojection_errors(best_H, src, dst) <= self.ransac_px
            if mask.sum() < MIN_POINTS:
                break
            H2 = dlt_homography(src[mask], dst[mask])
            if H2 is None:
                break
            k2 = int(np.count_nonzero(reprojection_errors(H2, src, dst) <= self.ransac_px))
            if k2 < best_k:
                break
            converged = np.allclose(H2, best_H, atol=1e-9)
            best_H, best_k = H2, k2
            if converged:
                break
        return best_H

    def estimate(self, src: np.ndarray, dst: np.ndarray) -> HomographyEstimate:
        src, dst = _as_point_pairs(src, dst)
        best = self._search(src, dst)
        if best is None or best.inliers < max(MIN_POINTS, int(self.min_inliers)):
            return _summarize(None, src, dst, self.ransac_px)
        H = self._refit(best.H, src, dst) if self.refine else best.H
        return _summarize(H, src, dst, self.ransac_px)


def make_estimator(kind: str, **kwargs):
    kind = kind.lower()
    if kind == "opencv":
        kwargs.pop("workers", None)
        kwargs.pop("refine", None)
        return OpenCVRansacEstimator(**kwargs)
    if kind == "seeded":
        return SeededRansacEstimator(**kwargs)
    raise ValueError(f"Unsupported estimator: {kind}")
