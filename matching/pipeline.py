from __future__ import annotations

import argparse
import json
import threading
from dataclasses import dataclass, replace
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

import cv2
import numpy as np

from common.errors import (
    ImageFetchError,
    InsufficientCorrespondences,
    MatchError,
    NoHomographyConsensus,
    NoReferenceImage,
    PipelineCancelled,
)
from common.geo import fallback_heading_deg, haversine_m, initial_bearing_deg
from common.logging_setup import get_logger, setup_logging
from common.types import LocationHint, MatchResult, ReferenceMetadata
from common.utils import Deadline, Stopwatch, iso_now_ms
from matching.config import MatchConfig
from matching.features import FeatureExtractor, correspondence_points, make_matcher
from matching.homography import make_estimator
from matching.observers import MatchImageWriter, PipelineObserver, StageContext, TimingLogObserver
from matching.preprocess import resize_to, validate_image
from reference.provider import ReferenceImageProvider, StaticReferenceProvider
from reference.streetview import StreetViewService


log = get_logger("matching")


@dataclass
class _CachedReference:
    key: Tuple
    image: np.ndarray
    metadata: ReferenceMetadata


class MatchPipeline:
    """
    Live camera frame vs. reference image: detect -> match -> robust homography.

    Stages run sequentially; each call to match() owns its images, keypoints,
    timings and result. The only state kept between calls is the most recent
    reference image + metadata (see last_reference), dropped as soon as a
    different query coordinate comes in.

    The homography maps canonical-size query pixels to reference pixels.
    """

    def __init__(
        self,
        provider: ReferenceImageProvider,
        *,
        config: Optional[MatchConfig] = None,
        detector=None,
        matcher=None,
        estimator=None,
        observers: Sequence[PipelineObserver] = (),
    ):
        self.config = config or MatchConfig()
        cfg = self.config
        self.provider = provider
        self.detector = detector or FeatureExtractor(
            method=cfg.method,
            nfeatures=cfg.nfeatures,
            fast_threshold=cfg.fast_threshold,
            grid=cfg.grid,
            cap_per_cell=cfg.cap_per_cell,
            clahe_clip=cfg.clahe_clip,
        )
        self.matcher = matcher or make_matcher(
            cfg.matcher,
            ratio=cfg.ratio,
            norm=getattr(self.detector, "norm", cv2.NORM_HAMMING),
            enforce_uniqueness=cfg.cross_unique,
        )
        self.estimator = estimator or make_estimator(
            cfg.estimator,
            ransac_px=cfg.ransac_px,
            max_iters=cfg.max_iters,
            confidence=cfg.confidence,
            min_inliers=cfg.min_inliers,
            seed=cfg.seed,
            workers=cfg.workers,
            refine=cfg.refine,
        )
        self.observers: List[PipelineObserver] = list(observers)
        self._lock = threading.Lock()
        self._cache: Optional[_CachedReference] = None
        self._location: Optional[Tuple[float, float]] = None

    @classmethod
    def from_config(
        cls,
        config: MatchConfig,
        provider: Optional[ReferenceImageProvider] = None,
        observers: Sequence[PipelineObserver] = (),
    ) -> "MatchPipeline":
        """Pipeline with a StreetViewService unless a provider is given."""
        if provider is None:
            provider = StreetViewService(
                api_key=config.api_key,
                size=config.image_size,
                fov=config.fov,
                pitch=config.pitch,
                radius_m=config.radius_m,
                source=config.source,
                timeout=config.request_timeout_s,
            )
        return cls(provider, config=config, observers=observers)

    # ----------------------------
    # Reference cache
    # ----------------------------
    def set_location(self, lat: float, lon: float) -> None:
        """New query coordinate; a different one invalidates the cached reference."""
        with self._lock:
            if self._location != (float(lat), float(lon)):
                self._cache = None
            self._location = (float(lat), float(lon))

    @property
    def last_reference(self) -> Optional[Tuple[np.ndarray, ReferenceMetadata]]:
        """Most recently fetched reference image and its metadata, if still valid."""
        c = self._cache
        return None if c is None else (c.image, c.metadata)

    def _cached(self, hint: LocationHint) -> Tuple[Tuple, Optional[_CachedReference]]:
        radius = self.config.radius_m if hint.radius_m is None else hint.radius_m
        key = (float(hint.lat), float(hint.lon), hint.heading, radius)
        self.set_location(hint.lat, hint.lon)
        cached = self._cache
        if cached is not None and cached.key == key:
            log.debug("Reusing cached reference image", extra={"extra": {"reference_id": cached.metadata.reference_id}})
            return key, cached
        return key, None

    def _locate(self, hint: LocationHint, radius: Optional[float], deadline: Deadline) -> ReferenceMetadata:
        if deadline.cancelled or deadline.expired():
            raise ImageFetchError("deadline exceeded before reference request")
        meta = self.provider.query_metadata(
            hint.lat, hint.lon, radius_m=radius, timeout=deadline.timeout_for(self.config.request_timeout_s)
        )
        if deadline.cancelled or deadline.expired():
            raise ImageFetchError("deadline exceeded during metadata query")
        if not meta.available:
            if meta.transport_error:
                raise ImageFetchError(f"metadata request failed ({meta.status})")
            raise NoReferenceImage(f"no reference imagery near ({hint.lat:.6f}, {hint.lon:.6f}) [{meta.status}]")

        if hint.heading is not None:
            meta = replace(meta, heading=float(hint.heading), heading_estimated=False)
        elif meta.heading is None:
            heading = fallback_heading_deg(hint.lat, hint.lon, meta.lat, meta.lon)
            meta = replace(meta, heading=heading, heading_estimated=True)
        log.info("Reference located", extra={"extra": {
            "reference_id": meta.reference_id,
            "offset_m": round(haversine_m(hint.lat, hint.lon, meta.lat, meta.lon), 2),
            "heading": meta.heading,
            "heading_estimated": meta.heading_estimated,
            "bearing_deg": round(initial_bearing_deg(hint.lat, hint.lon, meta.lat, meta.lon), 2),
        }})
        return meta

    def _fetch(self, key: Tuple, hint: LocationHint, meta: ReferenceMetadata, deadline: Deadline) -> np.ndarray:
        image = self.provider.fetch_image(meta, timeout=deadline.timeout_for(self.config.request_timeout_s))
        if deadline.cancelled or deadline.expired():
            raise ImageFetchError("deadline exceeded during image fetch")
        if image is None or not isinstance(image, np.ndarray) or image.size == 0:
            raise ImageFetchError(f"reference image unavailable for {meta.reference_id or 'location'}")

        with self._lock:
            if self._location == (float(hint.lat), float(hint.lon)):
                self._cache = _CachedReference(key, image, replace(meta))
        return image

    # ----------------------------
    # Observers
    # ----------------------------
    def _notify(self, hook: str, arg) -> None:
        for obs in self.observers:
            try:
                getattr(obs, hook)(arg)
            except Exception:
                log.exception("Observer %s.%s failed", type(obs).__name__, hook)

    @staticmethod
    def _checkpoint(deadline: Deadline, stage: str) -> None:
        if deadline.cancelled:
            raise PipelineCancelled(f"cancelled before {stage}")

    # ----------------------------
    # Public API
    # ----------------------------
    def match(
        self,
        query_image: np.ndarray,
        hint: Union[LocationHint, Tuple[float, float]],
        *,
        timeout_s: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> MatchResult:
        """
        Run one localization match.

        Args:
            query_image: live camera frame (gray or BGR uint8).
            hint: LocationHint, or a (lat, lon) tuple.
            timeout_s: deadline for the whole call; defaults to config.timeout_s.
                Expiry while acquiring the reference -> ImageFetchError.
            cancel: optional threading.Event; when set, the run stops at the
                next stage boundary.

        Returns:
            MatchResult; never raises for runtime failures. TypeError for a
            None / non-array image is a programming error and propagates.
        """
        if not isinstance(hint, LocationHint):
            lat, lon = hint
            hint = LocationHint(float(lat), float(lon))
        if query_image is None or not isinstance(query_image, np.ndarray):
            raise TypeError("query_image must be a numpy ndarray")

        cfg = self.config
        sw = Stopwatch()
        deadline = Deadline(cfg.timeout_s if timeout_s is None else timeout_s, cancel)
        meta: Optional[ReferenceMetadata] = None
        result: MatchResult
        try:
            query = resize_to(validate_image(query_image, "query image"), cfg.canonical_size)

            key, cached = self._cached(hint)
            if cached is not None:
                reference, meta = cached.image, replace(cached.metadata)
            else:
                meta = self._locate(hint, key[3], deadline)
                reference = self._fetch(key, hint, meta, deadline)
            sw.lap("fetch")
            validate_image(reference, "reference image")

            self._checkpoint(deadline, "detection")
            kps_q, des_q = self.detector.detect(query)
            kps_r, des_r = self.detector.detect(reference)
            sw.lap("detect")
            ctx = StageContext(query, reference, meta, sw.laps, kps_q, kps_r)
            self._notify("on_detection", ctx)

            self._checkpoint(deadline, "matching")
            matches = self.matcher.match(des_q, des_r)
            sw.lap("match")
            ctx.matches = matches
            self._notify("on_matching", ctx)

            if len(matches) < cfg.min_correspondences:
                raise InsufficientCorrespondences(
                    f"{len(matches)} accepted correspondences, need {cfg.min_correspondences}"
                )

            self._checkpoint(deadline, "estimation")
            src, dst = correspondence_points(kps_q, kps_r, matches)
            est = self.estimator.estimate(src, dst)
            sw.lap("estimate")
            ctx.estimate = est
            self._notify("on_estimation", ctx)
            if not est.ok:
                raise NoHomographyConsensus(f"no model reached the inlier minimum over {est.total} correspondences")

            result = MatchResult(
                ok=True,
                homography=est.H,
                correspondences=list(matches),
                inliers=est.inliers,
                rmse_px=est.rmse_px,
                inlier_mask=est.inlier_mask,
                metadata=meta,
            )
        except MatchError as e:
            result = MatchResult(ok=False, reason=e.reason, detail=e.detail, metadata=meta)

        result.ts = iso_now_ms()
        result.timings_ms = dict(sw.laps)
        result.timings_ms["total"] = sw.total()
        if result.ok:
            log.info("Match succeeded", extra={"extra": {
                "correspondences": len(result.correspondences),
                "inliers": result.inliers,
                "rmse_px": round(result.rmse_px, 3),
                "total_ms": round(result.timings_ms["total"], 2),
            }})
        else:
            log.warning("Match failed: %s", result.reason_text)
        self._notify("on_result", result)
        return result


# ----------------------------
# Command line
# ----------------------------

def main(argv: Optional[Sequence[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Match a camera image against street-level reference imagery")
    ap.add_argument("--config", default="config/params.yaml")
    ap.add_argument("--image", required=True, help="Camera image to localize")
    ap.add_argument("--lat", type=float, required=True)
    ap.add_argument("--lon", type=float, required=True)
    ap.add_argument("--heading", type=float, default=None, help="Camera heading (deg) for the reference view")
    ap.add_argument("--radius", type=float, default=None, help="Reference search radius (m)")
    ap.add_argument("--reference", default=None, help="Local reference image instead of Street View")
    ap.add_argument("--save-matches", default=None, help="Directory for match visualizations")
    ap.add_argument("--timeout", type=float, default=None, help="Deadline for the whole match (s)")
    args = ap.parse_args(argv)

    cfg = MatchConfig.from_yaml(args.config) if Path(args.config).exists() else MatchConfig()
    setup_logging(cfg.log_level, force=True)

    img = cv2.imread(args.image, cv2.IMREAD_COLOR)
    if img is None:
        raise SystemExit(f"Cannot read image: {args.image}")

    provider = StaticReferenceProvider.from_file(args.reference) if args.reference else None
    observers: List[PipelineObserver] = [TimingLogObserver()]
    if args.save_matches:
        observers.append(MatchImageWriter(args.save_matches, keypoints=True))

    pipe = MatchPipeline.from_config(cfg, provider=provider, observers=observers)
    res = pipe.match(img, LocationHint(args.lat, args.lon, args.heading, args.radius), timeout_s=args.timeout)
    print(json.dumps(res.to_dict(), indent=2))
    return 0 if res.ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
