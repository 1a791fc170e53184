"""
Unit tests for YAML configuration loading
"""

import os
import sys

import pytest

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from map_align.config import AlignConfig, config_from_dict, load_config

PARAMS = os.path.join(project_root, "config", "params.yaml")


class TestLoadConfig:
    """Test cases for loading params files"""

    def test_defaults_without_path(self):
        """Test load_config without a path returns the built-in defaults"""
        cfg = load_config()
        assert cfg == AlignConfig()
        assert cfg.matching.range_width == 5
        assert cfg.estimation.reference == "first"

    def test_shipped_params_match_defaults(self):
        """Test config/params.yaml mirrors the dataclass defaults"""
        assert load_config(PARAMS) == AlignConfig()

    def test_partial_yaml(self, tmp_path):
        """Test a partial file overrides only the keys it names"""
        p = tmp_path / "params.yaml"
        p.write_text(
            "matching:\n  range_width: 0\n  ratio: 0.8\n"
            "features:\n  grid: null\n"
            "refine:\n  pair: [1, 2]\n  method: ransac\n"
            "logging:\n  level: debug\n"
        )
        cfg = load_config(p)
        assert cfg.matching.range_width == 0
        assert cfg.matching.ratio == pytest.approx(0.8)
        assert cfg.matching.ransac_px == pytest.approx(3.0)
        assert cfg.features.grid is None
        assert cfg.refine.pair == (1, 2)
        assert cfg.refine.method == "ransac"
        assert cfg.log_level == "DEBUG"

    def test_empty_file(self, tmp_path):
        """Test an empty file falls back to defaults"""
        p = tmp_path / "empty.yaml"
        p.write_text("")
        assert load_config(p) == AlignConfig()


class TestValidation:
    """Test cases for rejecting invalid settings"""

    def test_workers(self):
        """Test worker counts below one are rejected"""
        with pytest.raises(ValueError):
            config_from_dict({"features": {"workers": 0}})

    def test_refine_method(self):
        """Test unknown refine methods are rejected"""
        with pytest.raises(ValueError):
            config_from_dict({"refine": {"method": "icp"}})

    def test_pair_shape(self):
        """Test refine.pair must have two entries"""
        with pytest.raises(ValueError):
            config_from_dict({"refine": {"pair": [0, 1, 2]}})

    def test_root_must_be_mapping(self):
        """Test a non-mapping document is rejected"""
        with pytest.raises(ValueError):
            config_from_dict(["features"])
