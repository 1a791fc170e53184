from __future__ import annotations
"""
Pairwise matching between map feature sets.

- KNN (k=2) + Lowe ratio in both directions, union without duplicates
- Homography RANSAC with inlier RMSE, least-squares refit on inliers
- Range-restricted candidate pairs: each map is only matched against the
  next `range_width - 1` maps, which keeps the cost near-linear in N
"""

from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence, Tuple

import cv2
import numpy as np

from common.geometry import apply_transform, homography_is_degenerate, match_confidence, rmse
from common.logging_setup import get_logger
from common.types import FeatureSet, PairwiseMatch
from common.utils import parallel_map
from map_align.errors import InsufficientCorrespondences, NoFeatures


log = get_logger("map_align.matching")

# Fewest correspondences that determine a homography.
MIN_HOMOGRAPHY_POINTS = 4


class Matcher(Protocol):
    def match_all(self, features: Sequence[FeatureSet]) -> List[PairwiseMatch]: ...


# -----------------------------
# Descriptor matching
# -----------------------------

def _norm_for(des: np.ndarray) -> int:
    return cv2.NORM_HAMMING if des.dtype == np.uint8 else cv2.NORM_L2


def knn_ratio_pairs(des1: np.ndarray, des2: np.ndarray, ratio: float = 0.7) -> List[Tuple[int, int]]:
    """
    KNN (k=2) + Lowe ratio. Returns (idx1, idx2) pairs; queries without two
    neighbours are skipped.
    """
    if des1 is None or des2 is None or len(des1) == 0 or len(des2) < 2:
        return []
    bf = cv2.BFMatcher(_norm_for(des1), crossCheck=False)
    knn = bf.knnMatch(des1, des2, k=2)
    good: List[Tuple[int, int]] = []
    for pair in knn:
        if len(pair) < 2:
            continue
        m, n = pair
        if m.distance < ratio * n.distance:
            good.append((m.queryIdx, m.trainIdx))
    return good


def best_of_2_nearest(des1: np.ndarray, des2: np.ndarray, ratio: float = 0.7) -> np.ndarray:
    """
    Ratio-test matches 1->2 united with 2->1, as (M,2) [idx1, idx2] without duplicates.
    """
    seen = set()
    out: List[Tuple[int, int]] = []
    for q, t in knn_ratio_pairs(des1, des2, ratio):
        if (q, t) not in seen:
            seen.add((q, t))
            out.append((q, t))
    for q, t in knn_ratio_pairs(des2, des1, ratio):
        if (t, q) not in seen:
            seen.add((t, q))
            out.append((t, q))
    if not out:
        return np.zeros((0, 2), dtype=np.int32)
    return np.asarray(out, dtype=np.int32)


def candidate_pairs(n: int, range_width: int = 5) -> List[Tuple[int, int]]:
    """(i, j) with i < j < i + range_width; range_width <= 0 means every pair."""
    pairs: List[Tuple[int, int]] = []
    for i in range(n):
        stop = n if range_width <= 0 else min(n, i + range_width)
        for j in range(i + 1, stop):
            pairs.append((i, j))
    return pairs


# -----------------------------
# Geometry
# -----------------------------

@dataclass
class HomographyResult:
    H: Optional[np.ndarray]
    inlier_mask: np.ndarray
    rmse_px: float
    inliers: int
    total: int


def homography_ransac(
    pts1: np.ndarray,
    pts2: np.ndarray,
    ransac_px: float = 3.0,
    max_iters: int = 2000,
    confidence: float = 0.995,
    refit_min_inliers: int = 6,
) -> HomographyResult:
    """
    Estimate H: image1 -> image2 using RANSAC; refit on inliers; compute inlier RMSE.
    """
    total = len(pts1)
    if total < MIN_HOMOGRAPHY_POINTS:
        return HomographyResult(None, np.zeros(total, bool), float("inf"), 0, total)

    p1 = np.float32(pts1).reshape(-1, 1, 2)
    p2 = np.float32(pts2).reshape(-1, 1, 2)
    H, mask = cv2.findHomography(
        p1, p2, cv2.RANSAC,
        ransacReprojThreshold=float(ransac_px),
        maxIters=int(max_iters),
        confidence=float(confidence),
    )
    if H is None or mask is None or homography_is_degenerate(H):
        return HomographyResult(None, np.zeros(total, bool), float("inf"), 0, total)

    inlier_mask = mask.ravel().astype(bool)
    ninl = int(inlier_mask.sum())
    if ninl == 0:
        return HomographyResult(None, inlier_mask, float("inf"), 0, total)

    if ninl >= max(MIN_HOMOGRAPHY_POINTS, refit_min_inliers):
        H_ls, _ = cv2.findHomography(p1[inlier_mask], p2[inlier_mask], 0)
        if H_ls is not None and not homography_is_degenerate(H_ls):
            H = H_ls

    H = H / H[2, 2]
    err = apply_transform(H, pts1[inlier_mask]) - np.asarray(pts2, dtype=float)[inlier_mask]
    return HomographyResult(H, inlier_mask, rmse(err), ninl, total)


# -----------------------------
# Matcher
# -----------------------------

@dataclass
class BestOf2NearestRangeMatcher:
    ratio: float = 0.7
    range_width: int = 5
    ransac_px: float = 3.0
    max_iters: int = 2000
    ransac_confidence: float = 0.995
    min_matches: int = 6
    min_inliers_refit: int = 6
    workers: int = 1

    def __post_init__(self):
        if not 0.0 < self.ratio < 1.0:
            raise ValueError("ratio must be in (0, 1)")
        if self.ransac_px <= 0:
            raise ValueError("ransac_px must be > 0")
        self.min_matches = max(MIN_HOMOGRAPHY_POINTS, int(self.min_matches))

    def match_pair(self, src: FeatureSet, dst: FeatureSet, src_idx: int, dst_idx: int) -> PairwiseMatch:
        """
        Match one ordered pair. Never raises on data: pairs that can't support
        a homography come back with confidence 0.
        """
        corr = None
        try:
            if src.is_empty or dst.is_empty:
                raise NoFeatures(f"image {src_idx if src.is_empty else dst_idx} has no keypoints")
            corr = best_of_2_nearest(src.descriptors, dst.descriptors, self.ratio)
            return self._verify(src, dst, src_idx, dst_idx, corr)
        except (NoFeatures, InsufficientCorrespondences) as e:
            log.debug(
                "pair rejected",
                extra={"extra": {"src": src_idx, "dst": dst_idx, "reason": str(e)}},
            )
            return PairwiseMatch.empty(src_idx, dst_idx, corr)

    def _verify(
        self, src: FeatureSet, dst: FeatureSet, src_idx: int, dst_idx: int, corr: np.ndarray
    ) -> PairwiseMatch:
        if len(corr) < self.min_matches:
            raise InsufficientCorrespondences(f"{len(corr)} matches < {self.min_matches}")

        pts1 = src.points()[corr[:, 0]]
        pts2 = dst.points()[corr[:, 1]]
        res = homography_ransac(
            pts1, pts2,
            ransac_px=self.ransac_px,
            max_iters=self.max_iters,
            confidence=self.ransac_confidence,
            refit_min_inliers=self.min_inliers_refit,
        )
        if res.H is None:
            raise InsufficientCorrespondences(f"no homography from {len(corr)} matches")

        return PairwiseMatch(
            src_idx=src_idx,
            dst_idx=dst_idx,
            correspondences=corr,
            inlier_mask=res.inlier_mask,
            num_inliers=res.inliers,
            confidence=match_confidence(res.inliers, len(corr)),
            H=res.H,
            rmse_px=res.rmse_px,
        )

    def match_all(self, features: Sequence[FeatureSet]) -> List[PairwiseMatch]:
        pairs = candidate_pairs(len(features), self.range_width)

        def _one(p: Tuple[int, int]) -> PairwiseMatch:
            i, j = p
            return self.match_pair(features[i], features[j], i, j)

        matches = parallel_map(_one, pairs, workers=self.workers)
        for m in matches:
            log.debug("pair matched", extra={"extra": m.to_meta()})
        return matches
