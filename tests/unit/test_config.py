"""
Unit tests for MatchConfig
"""

import pytest
import os
import sys

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from matching.config import MatchConfig


class TestMatchConfig:
    """Test cases for MatchConfig"""

    def test_defaults(self):
        cfg = MatchConfig()
        assert cfg.ratio == 0.75
        assert cfg.ransac_px == 5.0
        assert cfg.min_correspondences == 4
        assert cfg.canonical_size == (640, 480)
        assert cfg.matcher == "bf"
        assert cfg.estimator == "opencv"
        assert cfg.timeout_s is None

    def test_from_yaml(self, tmp_path):
        path = tmp_path / "params.yaml"
        path.write_text(
            "matching:\n"
            "  ratio: 0.6\n"
            "  matcher: FLANN\n"
            "features:\n"
            "  method: akaze\n"
            "  grid: [4, 3]\n"
            "homography:\n"
            "  estimator: seeded\n"
            "  ransac_px: 3.0\n"
            "  workers: 4\n"
            "pipeline:\n"
            "  canonical_size: 800x600\n"
            "  timeout_s: 2.5\n"
            "streetview:\n"
            "  radius_m: 25\n"
            "  size: 640x640\n"
            "logging:\n"
            "  level: DEBUG\n"
        )
        cfg = MatchConfig.from_yaml(str(path))

        assert cfg.ratio == 0.6
        assert cfg.matcher == "flann"
        assert cfg.method == "akaze"
        assert cfg.grid == (4, 3)
        assert cfg.estimator == "seeded"
        assert cfg.ransac_px == 3.0
        assert cfg.workers == 4
        assert cfg.canonical_size == (800, 600)
        assert cfg.timeout_s == 2.5
        assert cfg.radius_m == 25
        assert cfg.image_size == "640x640"
        assert cfg.log_level == "DEBUG"
        # untouched sections keep their defaults
        assert cfg.nfeatures == 500
        assert cfg.min_correspondences == 4

    def test_empty_yaml(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert MatchConfig.from_yaml(str(path)) == MatchConfig()

    def test_missing_yaml(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            MatchConfig.from_yaml(str(tmp_path / "nope.yaml"))

    def test_shipped_params_load(self):
        cfg = MatchConfig.from_yaml(os.path.join(project_root, "config", "params.yaml"))
        assert cfg.ratio == 0.75
        assert cfg.ransac_px == 5.0

    @pytest.mark.parametrize("kwargs", [
        {"ratio": 0.0},
        {"ratio": 1.5},
        {"ransac_px": 0.0},
        {"min_correspondences": 3},
        {"min_inliers": 2},
        {"confidence": 1.0},
        {"max_iters": 0},
        {"workers": 0},
        {"matcher": "knn"},
        {"estimator": "lmeds"},
        {"canonical_size": (640, 0)},
        {"canonical_size": "640"},
        {"image_size": "big"},
    ])
    def test_invalid_values(self, kwargs):
        with pytest.raises(ValueError):
            MatchConfig(**kwargs)
