from __future__ import annotations
"""
Keypoint detection & descriptor matching.

- FeatureExtractor(method='orb'|'akaze'|'sift') with .detect(image)
- Grid thinning (keeps spatially well-distributed strong keypoints)
- KNN matchers (brute force or FLANN) + ratio test, optional one-to-one filtering

Detectors and matchers are interchangeable strategies: anything with a
matching .detect() / .match() signature can be handed to MatchPipeline.
"""

from dataclasses import dataclass, field
from typing import Any, List, Optional, Protocol, Sequence, Tuple

import cv2
import numpy as np

from common.types import Correspondence, Keypoint
from matching.preprocess import prepare_for_detection


# -----------------------------
# Strategy interfaces
# -----------------------------

class KeypointDetector(Protocol):
    norm: int  # cv2.NORM_* the descriptors are compared under

    def detect(self, image: np.ndarray) -> Tuple[List[Keypoint], np.ndarray]:
        """Index-aligned keypoints and descriptors (N rows). N may be 0."""
        ...


class CorrespondenceMatcher(Protocol):
    ratio: float

    def match(self, des_query: np.ndarray, des_ref: np.ndarray) -> List[Correspondence]:
        ...


# -----------------------------
# Extractors
# -----------------------------

# (norm, descriptor width, dtype) for an empty result
_DESCRIPTOR_LAYOUT = {
    "orb": (cv2.NORM_HAMMING, 32, np.uint8),
    "akaze": (cv2.NORM_HAMMING, 61, np.uint8),
    "sift": (cv2.NORM_L2, 128, np.float32),
}


def to_keypoint(kp: cv2.KeyPoint) -> Keypoint:
    return Keypoint(
        x=float(kp.pt[0]),
        y=float(kp.pt[1]),
        size=float(kp.size),
        angle=float(kp.angle),
        response=float(kp.response),
        octave=int(kp.octave),
    )


def to_cv_keypoint(kp: Keypoint) -> cv2.KeyPoint:
    return cv2.KeyPoint(kp.x, kp.y, kp.size, kp.angle, kp.response, kp.octave)


@dataclass
class FeatureExtractor:
    method: str = "orb"
    nfeatures: int = 500
    fast_threshold: int = 20
    nlevels: int = 8
    scale_factor: float = 1.2
    grid: Optional[Tuple[int, int]] = None
    cap_per_cell: int = 60
    clahe_clip: Optional[float] = None
    _det: Any = field(init=False, repr=False)

    def __post_init__(self):
        m = self.method.lower()
        if m not in _DESCRIPTOR_LAYOUT:
            raise ValueError(f"Unsupported method: {self.method}")
        self.method = m
        if m == "orb":
            self._det = cv2.ORB_create(
                nfeatures=int(self.nfeatures),
                scaleFactor=float(self.scale_factor),
                nlevels=int(self.nlevels),
                fastThreshold=int(self.fast_threshold),
            )
        elif m == "akaze":
            self._det = cv2.AKAZE_create()
        else:
            self._det = cv2.SIFT_create(nfeatures=int(self.nfeatures))
        self.norm, self._width, self._dtype = _DESCRIPTOR_LAYOUT[m]

    @property
    def descriptor_kind(self) -> str:
        return "binary" if self.norm == cv2.NORM_HAMMING else "float"

    def empty_descriptors(self) -> np.ndarray:
        return np.zeros((0, self._width), dtype=self._dtype)

    def detect(self, image: np.ndarray) -> Tuple[List[Keypoint], np.ndarray]:
        """
        Detect + describe on the intensity version of `image`.

        Raises InvalidImage for empty input. A textureless image yields
        ([], empty descriptors), which is not an error.
        """
        gray = prepare_for_detection(image, clahe_clip=self.clahe_clip)
        kps, des = self._det.detectAndCompute(gray, None)
        if des is None or len(kps) == 0:
            return [], self.empty_descriptors()
        if self.grid is not None:
            keep = grid_select(kps, (gray.shape[1], gray.shape[0]), self.grid, self.cap_per_cell)
            kps = [kps[i] for i in keep]
            des = des[keep]
        return [to_keypoint(k) for k in kps], des


# -----------------------------
# Keypoint post-processing
# -----------------------------

def grid_select(
    kps: Sequence[cv2.KeyPoint],
    img_size: Tuple[int, int],
    grid: Tuple[int, int] = (8, 8),
    cap_per_cell: int = 60,
) -> List[int]:
    """
    Indices of at most cap_per_cell strongest keypoints per grid cell,
    returned in ascending order so descriptors stay index-aligned.
    """
    if not kps:
        return []
    W, H = int(img_size[0]), int(img_size[1])
    gx, gy = int(grid[0]), int(grid[1])
    cw = max(1, W // gx)
    ch = max(1, H // gy)
    cells: dict = {}
    for i, kp in enumerate(kps):
        cx = min(gx - 1, max(0, int(kp.pt[0]) // cw))
        cy = min(gy - 1, max(0, int(kp.pt[1]) // ch))
        cells.setdefault((cy, cx), []).append(i)
    kept: List[int] = []
    for idx in cells.values():
        idx.sort(key=lambda i: kps[i].response, reverse=True)
        kept.extend(idx[:cap_per_cell])
    return sorted(kept)


# -----------------------------
# Matching
# -----------------------------

def _as_descriptors(des: Optional[np.ndarray], norm: int) -> Optional[np.ndarray]:
    if des is None or len(des) == 0:
        return None
    dtype = np.uint8 if norm == cv2.NORM_HAMMING else np.float32
    return np.ascontiguousarray(des, dtype=dtype)


def ratio_filter(
    knn: Sequence[Sequence[cv2.DMatch]],
    ratio: float,
    enforce_uniqueness: bool = False,
) -> List[Correspondence]:
    """
    Keep knn[i][0] when best < ratio * second-best. Entries with fewer than
    two neighbours cannot be tested and are dropped. With enforce_uniqueness,
    each reference keypoint is claimed by at most one query keypoint
    (first come, in query order).
    """
    good: List[Correspondence] = []
    used_train = set()
    for pair in knn:
        if len(pair) < 2:
            continue
        m, n = pair[0], pair[1]
        if m.distance < ratio * n.distance:
            if enforce_uniqueness and m.trainIdx in used_train:
                continue
            used_train.add(m.trainIdx)
            good.append(Correspondence(int(m.queryIdx), int(m.trainIdx), float(m.distance)))
    return good


@dataclass
class BruteForceRatioMatcher:
    """Exact 2-NN search (cv2.BFMatcher) + ratio test."""
    ratio: float = 0.75
    norm: int = cv2.NORM_HAMMING
    enforce_uniqueness: bool = False

    def match(self, des_query: np.ndarray, des_ref: np.ndarray) -> List[Correspondence]:
        q = _as_descriptors(des_query, self.norm)
        r = _as_descriptors(des_ref, self.norm)
        # ratio test needs two neighbours on the reference side
        if q is None or r is None or len(r) < 2:
            return []
        bf = cv2.BFMatcher(self.norm, crossCheck=False)
        knn = bf.knnMatch(q, r, k=2)
        return ratio_filter(knn, self.ratio, self.enforce_uniqueness)


@dataclass
class FlannRatioMatcher:
    """
    Approximate 2-NN search (FLANN: LSH for binary descriptors, KD-tree for
    float ones) + ratio test.
    """
    ratio: float = 0.75
    norm: int = cv2.NORM_HAMMING
    enforce_uniqueness: bool = False
    checks: int = 50

    def _matcher(self) -> cv2.FlannBasedMatcher:
        if self.norm == cv2.NORM_HAMMING:
            index = dict(algorithm=6, table_number=6, key_size=12, multi_probe_level=1)  # FLANN_INDEX_LSH
        else:
            index = dict(algorithm=1, trees=5)  # FLANN_INDEX_KDTREE
        return cv2.FlannBasedMatcher(index, dict(checks=int(self.checks)))

    def match(self, des_query: np.ndarray, des_ref: np.ndarray) -> List[Correspondence]:
        q = _as_descriptors(des_query, self.norm)
        r = _as_descriptors(des_ref, self.norm)
        if q is None or r is None or len(r) < 2:
            return []
        knn = self._matcher().knnMatch(q, r, k=2)
        return ratio_filter(knn, self.ratio, self.enforce_uniqueness)


def make_matcher(kind: str, *, ratio: float = 0.75, norm: int = cv2.NORM_HAMMING, enforce_uniqueness: bool = False):
    kind = kind.lower()
    if kind == "bf":
        return BruteForceRatioMatcher(ratio=ratio, norm=norm, enforce_uniqueness=enforce_uniqueness)
    if kind == "flann":
        return FlannRatioMatcher(ratio=ratio, norm=norm, enforce_uniqueness=enforce_uniqueness)
    raise ValueError(f"Unsupported matcher: {kind}")


def correspondence_points(
    kps_query: Sequence[Keypoint],
    kps_ref: Sequence[Keypoint],
    matches: Sequence[Correspondence],
) -> Tuple[np.ndarray, np.ndarray]:
    """(N,2) float64 query points and their reference counterparts."""
    if not matches:
        return np.zeros((0, 2), dtype=np.float64), np.zeros((0, 2), dtype=np.float64)
    src = np.array([kps_query[m.query_idx].pt for m in matches], dtype=np.float64)
    dst = np.array([kps_ref[m.train_idx].pt for m in matches], dtype=np.float64)
    return src, dst
