from __future__ import annotations
"""
Optional diagnostics hooked into MatchPipeline checkpoints.

The pipeline calls, in order and only for stages it reaches:
    on_detection(ctx)   after keypoints/descriptors exist for both images
    on_matching(ctx)    after the ratio test
    on_estimation(ctx)  after the robust fit (successful or not)
    on_result(result)   once per run, with the terminal MatchResult

Observers must not mutate the context. An observer that raises is logged and
skipped; it never changes the match outcome.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import cv2
import numpy as np

from common.types import Correspondence, HomographyEstimate, Keypoint, MatchResult, ReferenceMetadata
from matching.features import to_cv_keypoint
from matching.preprocess import to_u8


log = logging.getLogger(__name__)


@dataclass
class StageContext:
    """Snapshot handed to observers; lives for one pipeline run."""
    query: np.ndarray
    reference: np.ndarray
    metadata: Optional[ReferenceMetadata]
    timings_ms: Dict[str, float]
    kps_query: List[Keypoint] = field(default_factory=list)
    kps_ref: List[Keypoint] = field(default_factory=list)
    matches: List[Correspondence] = field(default_factory=list)
    estimate: Optional[HomographyEstimate] = None


class PipelineObserver:
    """No-op base; override the checkpoints you care about."""

    def on_detection(self, ctx: StageContext) -> None:
        pass

    def on_matching(self, ctx: StageContext) -> None:
        pass

    def on_estimation(self, ctx: StageContext) -> None:
        pass

    def on_result(self, result: MatchResult) -> None:
        pass


class TimingLogObserver(PipelineObserver):
    """Logs stage timings and counts (the old console timing printout)."""

    def __init__(self, logger: Optional[logging.Logger] = None, level: int = logging.INFO):
        self.log = logger or log
        self.level = level

    def on_detection(self, ctx: StageContext) -> None:
        self.log.log(self.level, "Keypoints detected", extra={"extra": {
            "query": len(ctx.kps_query), "reference": len(ctx.kps_ref),
            "detect_ms": round(ctx.timings_ms.get("detect", 0.0), 2),
        }})

    def on_matching(self, ctx: StageContext) -> None:
        self.log.log(self.level, "Keypoints matched", extra={"extra": {
            "accepted": len(ctx.matches), "match_ms": round(ctx.timings_ms.get("match", 0.0), 2),
        }})

    def on_estimation(self, ctx: StageContext) -> None:
        est = ctx.estimate
        self.log.log(self.level, "Homography estimated", extra={"extra": {
            "ok": bool(est is not None and est.ok),
            "inliers": 0 if est is None else est.inliers,
            "estimate_ms": round(ctx.timings_ms.get("estimate", 0.0), 2),
        }})

    def on_result(self, result: MatchResult) -> None:
        self.log.log(self.level, "Total time", extra={"extra": {"total_ms": round(result.timings_ms.get("total", 0.0), 2)}})


def draw_matches_side_by_side(
    img1: np.ndarray,
    img2: np.ndarray,
    kps1: List[Keypoint],
    kps2: List[Keypoint],
    matches: List[Correspondence],
    inlier_mask: Optional[np.ndarray] = None,
    max_draw: int = 100,
) -> np.ndarray:
    """cv2.drawMatches over our types, optionally drawing inliers only."""
    dm = [cv2.DMatch(m.query_idx, m.train_idx, m.distance) for m in matches[:max_draw]]
    mask_list = None
    if inlier_mask is not None and len(inlier_mask) == len(matches):
        mask_list = [int(b) for b in np.asarray(inlier_mask).ravel()[:max_draw]]
    return cv2.drawMatches(
        img1, [to_cv_keypoint(k) for k in kps1],
        img2, [to_cv_keypoint(k) for k in kps2],
        dm, None,
        matchColor=(0, 255, 0),
        singlePointColor=(255, 0, 0),
        matchesMask=mask_list,
        flags=cv2.DrawMatchesFlags_NOT_DRAW_SINGLE_POINTS,
    )


class MatchImageWriter(PipelineObserver):
    """
    Writes keypoint overlays and match visualizations as PNGs into `out_dir`
    (replaces the on-screen windows). One file set per run, numbered in call
    order: NNNN_matches.png for every run that reaches matching, plus
    NNNN_inliers.png when a homography was found.
    """

    def __init__(self, out_dir: str, max_draw: int = 100, keypoints: bool = False):
        self.out_dir = Path(out_dir)
        self.max_draw = int(max_draw)
        self.keypoints = keypoints
        self.count = 0
        self.written: List[Path] = []

    def _write(self, name: str, img: np.ndarray) -> None:
        self.out_dir.mkdir(parents=True, exist_ok=True)
        path = self.out_dir / f"{self.count:04d}_{name}.png"
        cv2.imwrite(str(path), img)
        self.written.append(path)

    def on_detection(self, ctx: StageContext) -> None:
        self.count += 1
        if not self.keypoints:
            return
        flags = cv2.DRAW_MATCHES_FLAGS_DRAW_RICH_KEYPOINTS
        for name, img, kps in (("query_kps", ctx.query, ctx.kps_query), ("reference_kps", ctx.reference, ctx.kps_ref)):
            vis = cv2.drawKeypoints(to_u8(img), [to_cv_keypoint(k) for k in kps], None, (-1, -1, -1, -1), flags)
            self._write(name, vis)

    def on_matching(self, ctx: StageContext) -> None:
        vis = draw_matches_side_by_side(
            to_u8(ctx.query), to_u8(ctx.reference), ctx.kps_query, ctx.kps_ref, ctx.matches, None, self.max_draw
        )
        self._write("matches", vis)

    def on_estimation(self, ctx: StageContext) -> None:
        if ctx.estimate is None or not ctx.estimate.ok:
            return
        vis = draw_matches_side_by_side(
            to_u8(ctx.query), to_u8(ctx.reference), ctx.kps_query, ctx.kps_ref, ctx.matches,
            ctx.estimate.inlier_mask, self.max_draw,
        )
        self._write("inliers", vis)
