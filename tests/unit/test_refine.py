"""
Unit tests for the pairwise rigid refinement
"""

import math
import os
import sys

import numpy as np
import pytest

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from common.types import PairwiseMatch
from map_align.errors import DegenerateFit
from map_align.refine import fit_similarity, refine_designated_pair, refine_rigid

from conftest import make_feature_set


def _match(n, src=0, dst=1, inliers=None):
    corr = np.column_stack([np.arange(n), np.arange(n)])
    mask = np.ones(n, bool) if inliers is None else np.asarray(inliers, bool)
    return PairwiseMatch(src, dst, corr, mask, int(mask.sum()), 2.0, np.eye(3))


def _rigid_pair(rng, theta, tx, ty, n=30, size_a=(400, 300), size_b=(500, 350)):
    """Points in A, and the same points rotated/shifted about the image centers in B."""
    ca = np.array(size_a) / 2.0
    cb = np.array(size_b) / 2.0
    pa = rng.uniform(20, 280, (n, 2))
    c, s = math.cos(theta), math.sin(theta)
    R = np.array([[c, -s], [s, c]])
    pb = (pa - ca) @ R.T + (tx, ty) + cb
    fa = make_feature_set(pa, *size_a, index=0)
    fb = make_feature_set(pb, *size_b, index=1)
    return fa, fb


class TestFitSimilarity:
    """Test cases for the closed-form similarity fit"""

    def test_rigid_exact(self, rng):
        """Test an exact rigid motion is recovered"""
        src = rng.uniform(-50, 50, (10, 2))
        c, s = math.cos(0.7), math.sin(0.7)
        dst = src @ np.array([[c, -s], [s, c]]).T + (3.0, -4.0)
        M = fit_similarity(src, dst, allow_scale=False)
        np.testing.assert_allclose(M, [[c, -s, 3.0], [s, c, -4.0]], atol=1e-9)

    def test_scale(self, rng):
        """Test uniform scale is recovered when allowed"""
        src = rng.uniform(-50, 50, (10, 2))
        M = fit_similarity(src, 2.5 * src, allow_scale=True)
        np.testing.assert_allclose(M[:, :2], 2.5 * np.eye(2), atol=1e-9)

    def test_collinear_is_degenerate(self):
        """Test collinear points raise DegenerateFit"""
        src = np.array([[0.0, 0.0], [1.0, 1.0], [2.0, 2.0], [3.0, 3.0]])
        with pytest.raises(DegenerateFit, match="collinear"):
            fit_similarity(src, src + 1.0)

    def test_coincident_is_degenerate(self):
        """Test coincident points raise DegenerateFit"""
        with pytest.raises(DegenerateFit):
            fit_similarity(np.ones((5, 2)), np.ones((5, 2)))


class TestRefineRigid:
    """Test cases for rigid refinement of a matched pair"""

    def test_recovers_rotation_about_centers(self, rng):
        """Test rotation about the image centers is recovered"""
        fa, fb = _rigid_pair(rng, math.radians(30), 12.0, -7.0)
        rt = refine_rigid(fa, fb, _match(len(fa)))
        assert rt is not None
        assert math.degrees(rt.angle_rad()) == pytest.approx(30.0, abs=1e-4)
        assert rt.translation() == pytest.approx((12.0, -7.0), abs=1e-4)
        assert rt.scale() == pytest.approx(1.0)
        assert rt.num_points == len(fa)
        assert rt.rmse_px < 1e-3

    def test_only_inliers_are_used(self, rng):
        """Test outliers in the mask are ignored"""
        fa, fb = _rigid_pair(rng, 0.2, 5.0, 5.0)
        fb.keypoints[0].x += 80.0
        mask = np.ones(len(fa), bool)
        mask[0] = False
        rt = refine_rigid(fa, fb, _match(len(fa), inliers=mask))
        assert rt.num_points == len(fa) - 1
        assert rt.angle_rad() == pytest.approx(0.2, abs=1e-5)

    def test_ransac_drops_outliers(self, rng):
        """Test the RANSAC variant drops unmasked outliers"""
        fa, fb = _rigid_pair(rng, -0.4, -10.0, 20.0, n=40)
        for k in range(4):
            fb.keypoints[k].y += 60.0
        rt = refine_rigid(fa, fb, _match(len(fa)), method="ransac")
        assert rt is not None
        assert rt.num_points == 36
        assert rt.angle_rad() == pytest.approx(-0.4, abs=1e-4)

    def test_two_inliers_returns_none(self, rng):
        """Test two inliers give no transform"""
        fa, fb = _rigid_pair(rng, 0.1, 0.0, 0.0, n=5)
        mask = [True, True, False, False, False]
        assert refine_rigid(fa, fb, _match(5, inliers=mask)) is None

    def test_collinear_inliers_return_none(self):
        """Test collinear inliers give no transform"""
        pts = np.array([[10.0, 10.0], [20.0, 20.0], [30.0, 30.0], [40.0, 40.0]])
        fa = make_feature_set(pts)
        fb = make_feature_set(pts + 5.0)
        assert refine_rigid(fa, fb, _match(4)) is None

    def test_unknown_method(self, rng):
        """Test an unknown method raises ValueError"""
        fa, fb = _rigid_pair(rng, 0.1, 0.0, 0.0)
        with pytest.raises(ValueError):
            refine_rigid(fa, fb, _match(len(fa)), method="icp")


def test_designated_pair(rng):
    """Test only the requested pair is refined"""
    fa, fb = _rigid_pair(rng, 0.3, 1.0, 2.0)
    fc = make_feature_set(rng.uniform(0, 100, (5, 2)), index=2)
    matches = [_match(len(fa), 0, 1), PairwiseMatch.empty(1, 2)]
    rt = refine_designated_pair([fa, fb, fc], matches, (0, 1))
    assert rt is not None and (rt.src_idx, rt.dst_idx) == (0, 1)
    assert refine_designated_pair([fa, fb, fc], matches, (0, 2)) is None
