"""
Unit tests for feature extraction
"""

import os
import sys

import cv2
import numpy as np
import pytest

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from common.types import GridImage
from map_align.features import FeatureExtractor, extract_all, grid_nms


class TestFeatureExtractor:
    """Test cases for keypoint extraction on map rasters"""

    def test_floor_plan_has_features(self, grid_image):
        """Test a cluttered floor plan yields many ORB features"""
        fs = FeatureExtractor().extract(grid_image)
        assert len(fs) > 100
        assert fs.descriptors.shape == (len(fs), 32)
        assert fs.descriptors.dtype == np.uint8
        assert (fs.width, fs.height) == (400, 400)
        pts = fs.points()
        assert pts.shape == (len(fs), 2)
        assert np.all((pts >= 0) & (pts < 400))

    def test_blank_map_yields_empty_set(self, blank_map):
        """Test a blank map yields an empty feature set"""
        fs = FeatureExtractor().extract(GridImage.from_array(blank_map))
        assert fs.is_empty
        assert fs.descriptors.shape[0] == 0
        assert fs.points().shape == (0, 2)

    @pytest.mark.parametrize("shape", [(1, 1), (1, 50), (50, 1)])
    def test_single_pixel_side_yields_empty_set(self, shape):
        """Test maps one pixel wide or tall yield an empty feature set"""
        fs = FeatureExtractor().extract(GridImage.from_array(np.zeros(shape, np.uint8)))
        assert fs.is_empty
        assert fs.descriptors.shape == (0, 32)

    def test_deterministic(self, grid_image):
        """Test repeated extraction gives identical keypoints"""
        ex = FeatureExtractor()
        a = ex.extract(grid_image)
        b = ex.extract(grid_image)
        assert len(a) == len(b)
        np.testing.assert_allclose(a.points(), b.points())

    def test_nfeatures_bounds_count(self, grid_image):
        """Test nfeatures caps the keypoint count"""
        fs = FeatureExtractor(nfeatures=100, grid=None).extract(grid_image)
        assert 0 < len(fs) <= 100

    def test_akaze(self, grid_image):
        """Test the AKAZE extractor"""
        fs = FeatureExtractor(method="akaze").extract(grid_image)
        assert fs.descriptors.shape[0] == len(fs)

    def test_unsupported_method(self):
        """Test an unknown detector name raises ValueError"""
        with pytest.raises(ValueError, match="Unsupported method"):
            FeatureExtractor(method="sift-ish")


def test_grid_nms_caps_cells():
    """Test grid NMS keeps the strongest keypoints per cell"""
    kps = [cv2.KeyPoint(float(5 + i % 3), float(5 + i // 3), 7, -1, float(i)) for i in range(9)]
    kept = grid_nms(kps, (100, 100), grid=(2, 2), cap_per_cell=4)
    assert len(kept) == 4
    assert [k.response for k in kept] == [8.0, 7.0, 6.0, 5.0]
    assert grid_nms([], (100, 100)) == []


def test_extract_all_preserves_order(floor_plan, blank_map):
    """Test threaded extraction keeps input order"""
    images = [GridImage.from_array(floor_plan), GridImage.from_array(blank_map), GridImage.from_array(floor_plan)]
    serial = extract_all(FeatureExtractor(), images, workers=1)
    threaded = extract_all(FeatureExtractor(), images, workers=3)
    assert [f.image_index for f in threaded] == [0, 1, 2]
    assert [len(f) for f in serial] == [len(f) for f in threaded]
    assert threaded[1].is_empty
    assert len(threaded[0]) == len(threaded[2]) > 0
