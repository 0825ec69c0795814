"""
Feature matching & robust homography between a live camera frame and a
geolocated street-level reference image.

This package provides:
- Keypoint detection strategies (ORB by default, AKAZE / SIFT selectable)
- 2-NN descriptor matching with a ratio test (brute force or FLANN)
- Consensus homography estimation (OpenCV RANSAC or a seeded numpy RANSAC)
- MatchPipeline: reference acquisition -> detect -> match -> estimate,
  reporting success or a specific failure reason

Entry point:
    python -m matching.pipeline --image cam.jpg --lat 41.3935 --lon 2.1920
"""
from .config import MatchConfig
from .pipeline import MatchPipeline

__all__ = ["MatchConfig", "MatchPipeline"]
