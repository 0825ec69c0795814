from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple, Any, Dict, List
import numpy as np


@dataclass(frozen=True, slots=True)
class Keypoint:
    """
    A detected interest point, in pixel coordinates of the image it came from.

    Attributes:
        x, y: sub-pixel location (origin top-left, x to the right).
        size: diameter of the described neighbourhood (pixels).
        angle: dominant orientation in degrees, -1 if not applicable.
        response: detector score; larger is stronger.
        octave: pyramid level the point was found on.
    """
    x: float
    y: float
    size: float = 0.0
    angle: float = -1.0
    response: float = 0.0
    octave: int = 0

    @property
    def pt(self) -> Tuple[float, float]:
        return (self.x, self.y)


@dataclass(frozen=True, slots=True)
class Correspondence:
    """
    Accepted match between query keypoint `query_idx` and reference keypoint
    `train_idx`. `distance` is the best-match descriptor distance.
    """
    query_idx: int
    train_idx: int
    distance: float


@dataclass(slots=True)
class LocationHint:
    """Where the caller believes the camera is (WGS84 degrees)."""
    lat: float
    lon: float
    heading: Optional[float] = None
    radius_m: Optional[float] = None

    def __post_init__(self) -> None:
        if not (-90.0 <= self.lat <= 90.0) or not (-180.0 <= self.lon <= 180.0):
            raise ValueError("lat/lon out of range")

    @property
    def coords(self) -> Tuple[float, float]:
        return (float(self.lat), float(self.lon))


@dataclass(slots=True)
class ReferenceMetadata:
    """
    What the imagery service knows about the reference image nearest to a query.

    Attributes:
        available: True when the service has coverage near the query point.
        lat, lon: actual location of the reference image (may differ from the query).
        reference_id: service identifier (Street View pano id); not validated.
        heading: bearing in degrees; None when the service did not supply one.
        heading_estimated: True once a fallback heading has been filled in.
        status: raw service status string, kept for diagnostics.
        transport_error: True when "not available" came from a failed or
            unusable request rather than a definitive "no coverage" answer.
    """
    available: bool
    lat: float = 0.0
    lon: float = 0.0
    reference_id: str = ""
    heading: Optional[float] = None
    heading_estimated: bool = False
    status: str = ""
    transport_error: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "available": self.available,
            "lat": self.lat,
            "lon": self.lon,
            "reference_id": self.reference_id,
            "heading": self.heading,
            "heading_estimated": self.heading_estimated,
            "status": self.status,
            "transport_error": self.transport_error,
        }


@dataclass(slots=True)
class HomographyEstimate:
    """
    Output of a robust estimator.

    H is None when no candidate reached the minimum inlier support
    ("no consensus"); the remaining fields are still filled for diagnostics.
    """
    H: Optional[np.ndarray]
    inlier_mask: np.ndarray
    inliers: int
    total: int
    rmse_px: float

    @property
    def ok(self) -> bool:
        return self.H is not None


class FailureReason(str, Enum):
    NO_REFERENCE_IMAGE = "NoReferenceImage"
    IMAGE_FETCH_ERROR = "ImageFetchError"
    INSUFFICIENT_CORRESPONDENCES = "InsufficientCorrespondences"
    NO_HOMOGRAPHY_CONSENSUS = "NoHomographyConsensus"
    INVALID_IMAGE = "InvalidImage"
    CANCELLED = "Cancelled"


@dataclass(slots=True)
class MatchResult:
    """
    Terminal state of one MatchPipeline run.

    On success `homography` is the 3x3 matrix mapping query pixels to
    reference pixels. On failure it is always None and `reason` says why.
    """
    ok: bool
    homography: Optional[np.ndarray] = field(default=None, repr=False)
    correspondences: List[Correspondence] = field(default_factory=list, repr=False)
    reason: Optional[FailureReason] = None
    detail: str = ""
    inliers: int = 0
    rmse_px: float = float("inf")
    inlier_mask: Optional[np.ndarray] = field(default=None, repr=False)
    metadata: Optional[ReferenceMetadata] = None
    timings_ms: Dict[str, float] = field(default_factory=dict)
    ts: str = ""

    @property
    def reason_text(self) -> str:
        if self.ok:
            return "ok"
        label = self.reason.value if self.reason is not None else "failed"
        return f"{label}: {self.detail}" if self.detail else label

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe summary (no image data)."""
        return {
            "ts": self.ts,
            "ok": self.ok,
            "reason": None if self.reason is None else self.reason.value,
            "detail": self.detail,
            "homography": None if self.homography is None else self.homography.tolist(),
            "correspondences": len(self.correspondences),
            "inliers": self.inliers,
            "rmse_px": None if not np.isfinite(self.rmse_px) else float(self.rmse_px),
            "metadata": None if self.metadata is None else self.metadata.to_dict(),
            "timings_ms": dict(self.timings_ms),
        }
