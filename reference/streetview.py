from __future__ import annotations

"""
Google Street View adapter: the reference-imagery provider used by MatchPipeline.

Two calls per query, both against the Street View Static API:
  1) metadata  (free)  -> is there a panorama near (lat, lon)? where exactly? pano id?
  2) image             -> a rectilinear view of that panorama (default 640x480, fov 90)

Usage:
    svc = StreetViewService()  # requires GOOGLE_MAPS_API_KEY in env or api_key=...
    meta = svc.query_metadata(41.3935, 2.1920, radius_m=50)
    if meta.available:
        bgr = svc.fetch_image(meta)   # np.ndarray (H, W, 3) or None

Network failures never raise out of this module: query_metadata() reports
"not available" with the failure in `status`, fetch_image() returns None.
"""

import os
import logging
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import cv2
import numpy as np
import requests

from common.types import ReferenceMetadata


log = logging.getLogger(__name__)

# Service answers that say "try again later" rather than "no coverage here"
TRANSIENT_STATUSES = frozenset({"OVER_QUERY_LIMIT", "UNKNOWN_ERROR"})


class StreetViewService:
    def __init__(
        self,
        api_key: Optional[str] = None,
        session: Optional[requests.Session] = None,
        *,
        size: str = "640x480",
        fov: float = 90.0,
        pitch: float = 0.0,
        radius_m: Optional[float] = 50.0,
        source: Optional[str] = None,
        timeout: float = 10.0,
    ):
        """
        Initialize Street View service.

        Params:
            api_key: Google Maps API key (falls back to env GOOGLE_MAPS_API_KEY)
            session: optional requests.Session for connection reuse
            size: requested image size "WxH" (API maximum is 640x640)
            fov, pitch: camera field of view / pitch for the rendered view (degrees)
            radius_m: default metadata search radius
            source: "default" | "outdoor" to restrict panoramas, None to omit
            timeout: default per-request timeout (seconds)
        """
        self.api_key = api_key or os.getenv("GOOGLE_MAPS_API_KEY")
        if not self.api_key:
            raise ValueError(
                "Google Maps API key is required. "
                "Set GOOGLE_MAPS_API_KEY environment variable or pass api_key=..."
            )
        self.metadata_url = "https://maps.googleapis.com/maps/api/streetview/metadata"
        self.image_url = "https://maps.googleapis.com/maps/api/streetview"
        self.session = session or requests.Session()
        self.size = size
        self.fov = float(fov)
        self.pitch = float(pitch)
        self.radius_m = radius_m
        self.source = source
        self.timeout = float(timeout)

    # ----------------------------
    # URL construction
    # ----------------------------
    def build_metadata_url(self, lat: float, lon: float, radius_m: Optional[float] = None) -> str:
        params: Dict[str, Any] = {"location": f"{lat},{lon}"}
        radius = self.radius_m if radius_m is None else radius_m
        if radius is not None:
            params["radius"] = int(round(float(radius)))
        if self.source:
            params["source"] = self.source
        params["key"] = self.api_key
        return f"{self.metadata_url}?{urlencode(params)}"

    def build_image_url(self, metadata: ReferenceMetadata) -> str:
        """
        Image request for the panorama described by `metadata`. The pano id,
        when present, pins the exact panorama; location is sent regardless.
        """
        params: Dict[str, Any] = {
            "size": self.size,
            "location": f"{metadata.lat},{metadata.lon}",
        }
        if metadata.heading is not None:
            params["heading"] = float(metadata.heading)
        params["fov"] = self.fov
        params["pitch"] = self.pitch
        params["key"] = self.api_key
        if metadata.reference_id:
            params["pano"] = metadata.reference_id
        return f"{self.image_url}?{urlencode(params)}"

    # ----------------------------
    # Public API (ReferenceImageProvider)
    # ----------------------------
    def query_metadata(
        self,
        lat: float,
        lon: float,
        radius_m: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> ReferenceMetadata:
        url = self.build_metadata_url(lat, lon, radius_m)
        try:
            r = self.session.get(url, timeout=self.timeout if timeout is None else timeout)
        except requests.RequestException as e:
            log.exception("Error querying Street View metadata: %s", e)
            return ReferenceMetadata(available=False, status="TRANSPORT_ERROR", transport_error=True)
        if r.status_code != 200:
            log.warning("Street View metadata request failed: %s %s", r.status_code, r.text[:200])
            return ReferenceMetadata(available=False, status=f"HTTP_{r.status_code}", transport_error=True)
        try:
            payload = r.json()
        except ValueError as e:
            log.warning("Street View metadata was not JSON: %s", e)
            return ReferenceMetadata(available=False, status="BAD_RESPONSE", transport_error=True)
        if not isinstance(payload, dict):
            return ReferenceMetadata(available=False, status="BAD_RESPONSE", transport_error=True)
        return self.parse_metadata(payload)

    @staticmethod
    def parse_metadata(payload: Dict[str, Any]) -> ReferenceMetadata:
        """
        Map a metadata JSON document to ReferenceMetadata.

        Only status "OK" counts as available. A missing "heading" stays None;
        MatchPipeline fills in the fallback heading.
        """
        status = str(payload.get("status", ""))
        if status != "OK":
            return ReferenceMetadata(available=False, status=status, transport_error=status in TRANSIENT_STATUSES)
        try:
            loc = payload["location"]
            heading = payload.get("heading")
            meta = ReferenceMetadata(
                available=True,
                lat=float(loc["lat"]),
                lon=float(loc["lng"]),
                reference_id=str(payload.get("pano_id", "")),
                heading=None if heading is None else float(heading),
                status=status,
            )
        except (KeyError, TypeError, ValueError) as e:
            log.warning("Malformed Street View metadata: %s", e)
            return ReferenceMetadata(available=False, status="BAD_RESPONSE", transport_error=True)
        log.info(
            "Found Street View image",
            extra={"extra": {"lat": meta.lat, "lon": meta.lon, "pano_id": meta.reference_id, "heading": meta.heading}},
        )
        return meta

    def fetch_image(self, metadata: ReferenceMetadata, timeout: Optional[float] = None) -> Optional[np.ndarray]:
        """
        Download and decode the reference view. Returns a BGR uint8 array, or
        None on any transport/decode failure (and for unavailable metadata).
        """
        if not metadata.available:
            return None
        url = self.build_image_url(metadata)
        try:
            r = self.session.get(url, timeout=self.timeout if timeout is None else timeout)
        except requests.RequestException as e:
            log.exception("Error fetching Street View image: %s", e)
            return None
        if r.status_code != 200 or not r.content:
            log.warning("Street View image request failed: %s", r.status_code)
            return None
        arr = np.frombuffer(r.content, dtype=np.uint8)
        bgr = cv2.imdecode(arr, cv2.IMREAD_COLOR)
        if bgr is None:
            log.warning("Failed to decode Street View image (%d bytes)", len(r.content))
            return None
        return bgr
