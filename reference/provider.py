from __future__ import annotations

from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

import cv2
import numpy as np

from common.types import ReferenceMetadata


@runtime_checkable
class ReferenceImageProvider(Protocol):
    """
    Source of geolocated reference imagery.

    query_metadata() must not raise on service/transport trouble; it reports
    available=False instead. fetch_image() returns None for any failure.
    """

    def query_metadata(
        self,
        lat: float,
        lon: float,
        radius_m: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> ReferenceMetadata:
        ...

    def fetch_image(self, metadata: ReferenceMetadata, timeout: Optional[float] = None) -> Optional[np.ndarray]:
        ...


class StaticReferenceProvider:
    """
    Serves one fixed reference image for every query (offline runs, tests).

    Args:
        image: BGR/gray array, or None when the location has no coverage.
        lat, lon: location reported in the metadata; defaults to the query point.
        heading: reported heading; None exercises the pipeline's fallback.
        reference_id: identifier placed in the metadata.
    """

    def __init__(
        self,
        image: Optional[np.ndarray],
        *,
        lat: Optional[float] = None,
        lon: Optional[float] = None,
        heading: Optional[float] = None,
        reference_id: str = "static",
    ):
        self.image = image
        self.lat = lat
        self.lon = lon
        self.heading = heading
        self.reference_id = reference_id
        self.metadata_calls = 0
        self.fetch_calls = 0

    @classmethod
    def from_file(cls, path: str, **kwargs) -> "StaticReferenceProvider":
        if not Path(path).exists():
            raise FileNotFoundError(f"Reference image not found: {path}")
        img = cv2.imread(str(path), cv2.IMREAD_COLOR)
        if img is None:
            raise RuntimeError(f"Cannot decode reference image: {path}")
        return cls(img, **kwargs)

    def query_metadata(
        self,
        lat: float,
        lon: float,
        radius_m: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> ReferenceMetadata:
        self.metadata_calls += 1
        if self.image is None:
            return ReferenceMetadata(available=False, status="ZERO_RESULTS")
        return ReferenceMetadata(
            available=True,
            lat=float(lat if self.lat is None else self.lat),
            lon=float(lon if self.lon is None else self.lon),
            reference_id=self.reference_id,
            heading=self.heading,
            status="OK",
        )

    def fetch_image(self, metadata: ReferenceMetadata, timeout: Optional[float] = None) -> Optional[np.ndarray]:
        self.fetch_calls += 1
        if not metadata.available or self.image is None:
            return None
        return self.image.copy()
