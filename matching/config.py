from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml


def _size_pair(v: Any, name: str) -> Tuple[int, int]:
    """Accept [W, H], (W, H) or "WxH"."""
    if isinstance(v, str):
        parts = v.lower().replace(",", "x").split("x")
    else:
        parts = list(v)
    if len(parts) != 2:
        raise ValueError(f"{name} must be WxH")
    w, h = int(parts[0]), int(parts[1])
    if w <= 0 or h <= 0:
        raise ValueError(f"{name} must be positive")
    return (w, h)


@dataclass
class MatchConfig:
    """
    Every tunable of the matching pipeline.

    Loaded from YAML (see config/params.yaml); sections map onto the field
    prefixes: matching.*, features.*, homography.*, pipeline.*, streetview.*.
    """
    # matching
    ratio: float = 0.75
    matcher: str = "bf"
    cross_unique: bool = False
    # features
    method: str = "orb"
    nfeatures: int = 500
    fast_threshold: int = 20
    grid: Optional[Tuple[int, int]] = None
    cap_per_cell: int = 60
    clahe_clip: Optional[float] = None
    # homography
    estimator: str = "opencv"
    ransac_px: float = 5.0
    max_iters: int = 2000
    confidence: float = 0.995
    min_inliers: int = 4
    seed: int = 0
    workers: int = 1
    refine: bool = True
    # pipeline
    canonical_size: Tuple[int, int] = (640, 480)
    min_correspondences: int = 4
    timeout_s: Optional[float] = None
    # streetview
    api_key: Optional[str] = None
    radius_m: Optional[float] = 50.0
    image_size: str = "640x480"
    fov: float = 90.0
    pitch: float = 0.0
    source: Optional[str] = None
    request_timeout_s: float = 10.0
    # logging
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if not (0.0 < float(self.ratio) <= 1.0):
            raise ValueError("ratio must be in (0, 1]")
        if float(self.ransac_px) <= 0.0:
            raise ValueError("ransac_px must be > 0")
        if int(self.min_correspondences) < 4:
            raise ValueError("min_correspondences must be >= 4 (a homography needs 4 points)")
        if int(self.min_inliers) < 4:
            raise ValueError("min_inliers must be >= 4")
        if not (0.0 < float(self.confidence) < 1.0):
            raise ValueError("confidence must be in (0, 1)")
        if int(self.max_iters) <= 0 or int(self.workers) <= 0:
            raise ValueError("max_iters and workers must be > 0")
        if self.matcher not in ("bf", "flann"):
            raise ValueError(f"Unsupported matcher: {self.matcher}")
        if self.estimator not in ("opencv", "seeded"):
            raise ValueError(f"Unsupported estimator: {self.estimator}")
        self.canonical_size = _size_pair(self.canonical_size, "canonical_size")
        _size_pair(self.image_size, "image_size")
        if self.grid is not None:
            self.grid = _size_pair(self.grid, "grid")

    @classmethod
    def from_dict(cls, P: Dict[str, Any]) -> "MatchConfig":
        P = P or {}
        m = P.get("matching", {}) or {}
        f = P.get("features", {}) or {}
        h = P.get("homography", {}) or {}
        p = P.get("pipeline", {}) or {}
        s = P.get("streetview", {}) or {}
        lg = P.get("logging", {}) or {}
        d = cls()
        return cls(
            ratio=float(m.get("ratio", d.ratio)),
            matcher=str(m.get("matcher", d.matcher)).lower(),
            cross_unique=bool(m.get("cross_unique", d.cross_unique)),
            method=str(f.get("method", d.method)).lower(),
            nfeatures=int(f.get("nfeatures", d.nfeatures)),
            fast_threshold=int(f.get("fast_threshold", d.fast_threshold)),
            grid=f.get("grid", d.grid),
            cap_per_cell=int(f.get("cap_per_cell", d.cap_per_cell)),
            clahe_clip=f.get("clahe_clip", d.clahe_clip),
            estimator=str(h.get("estimator", d.estimator)).lower(),
            ransac_px=float(h.get("ransac_px", d.ransac_px)),
            max_iters=int(h.get("max_iters", d.max_iters)),
            confidence=float(h.get("confidence", d.confidence)),
            min_inliers=int(h.get("min_inliers", d.min_inliers)),
            seed=int(h.get("seed", d.seed)),
            workers=int(h.get("workers", d.workers)),
            refine=bool(h.get("refine", d.refine)),
            canonical_size=p.get("canonical_size", d.canonical_size),
            min_correspondences=int(p.get("min_correspondences", d.min_correspondences)),
            timeout_s=p.get("timeout_s", d.timeout_s),
            api_key=s.get("api_key", d.api_key),
            radius_m=s.get("radius_m", d.radius_m),
            image_size=str(s.get("size", d.image_size)),
            fov=float(s.get("fov", d.fov)),
            pitch=float(s.get("pitch", d.pitch)),
            source=s.get("source", d.source),
            request_timeout_s=float(s.get("timeout_s", d.request_timeout_s)),
            log_level=str(lg.get("level", d.log_level)),
        )

    @classmethod
    def from_yaml(cls, path: str) -> "MatchConfig":
        if not Path(path).exists():
            raise FileNotFoundError(f"Config not found: {path}")
        with open(path, "r") as fh:
            return cls.from_dict(yaml.safe_load(fh) or {})
