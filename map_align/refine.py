from __future__ import annotations
"""
Direct rigid/similarity fit for one matched pair.

Used as an independent check of the global estimate for a designated pair
(by default the first two maps). Points are centered on each image before
fitting, so the rotation is about the image centers rather than the corners.
"""

from typing import Optional, Sequence, Tuple

import cv2
import numpy as np

from common.geometry import rmse
from common.logging_setup import get_logger
from common.types import FeatureSet, PairwiseMatch, RigidTransform
from map_align.errors import DegenerateFit


log = get_logger("map_align.refine")

# A rigid fit below this many points is under-determined for our purposes.
MIN_RIGID_POINTS = 3


def fit_similarity(src: np.ndarray, dst: np.ndarray, allow_scale: bool = True) -> np.ndarray:
    """
    Least-squares 2-D rigid (or similarity) transform src -> dst (Umeyama).

    Returns a 2x3 matrix. Raises DegenerateFit for coincident or collinear
    point sets.
    """
    src = np.asarray(src, dtype=float).reshape(-1, 2)
    dst = np.asarray(dst, dtype=float).reshape(-1, 2)
    if len(src) != len(dst):
        raise ValueError("src and dst must have the same length")
    n = len(src)
    if n < 2:
        raise DegenerateFit(f"need at least 2 points, got {n}")

    mu_s = src.mean(axis=0)
    mu_d = dst.mean(axis=0)
    xs = src - mu_s
    xd = dst - mu_d

    sv = np.linalg.svd(xs, compute_uv=False)
    if sv[0] < 1e-9:
        raise DegenerateFit("coincident points")
    if sv[-1] / sv[0] < 1e-6:
        raise DegenerateFit("collinear points")

    var_s = float((xs ** 2).sum()) / n
    C = xd.T @ xs / n
    U, S, Vt = np.linalg.svd(C)
    D = np.eye(2)
    if np.linalg.det(U) * np.linalg.det(Vt) < 0:
        D[1, 1] = -1.0
    R = U @ D @ Vt
    scale = float(np.trace(np.diag(S) @ D) / var_s) if allow_scale else 1.0
    if not scale > 0:
        raise DegenerateFit("non-positive scale")
    t = mu_d - scale * (R @ mu_s)
    return np.hstack([scale * R, t.reshape(2, 1)])


def _residuals(M: np.ndarray, src: np.ndarray, dst: np.ndarray) -> np.ndarray:
    return src @ M[:, :2].T + M[:, 2] - dst


def refine_rigid(
    features_a: FeatureSet,
    features_b: FeatureSet,
    match: PairwiseMatch,
    *,
    allow_scale: bool = False,
    method: str = "lstsq",
    ransac_px: float = 3.0,
) -> Optional[RigidTransform]:
    """
    Rigid transform mapping centered points of image A onto centered points
    of image B, fitted on the inliers of `match` only.

    method:
      'lstsq'  closed-form least squares over all inliers
      'ransac' cv2.estimateAffinePartial2D to drop residual outliers, then
               least squares on its consensus set

    Returns None with fewer than 3 inliers or a degenerate point layout.
    """
    src, dst = match.inlier_points(features_a, features_b, centered=True)
    if len(src) < MIN_RIGID_POINTS:
        log.debug(
            "rigid refinement skipped",
            extra={"extra": {"src": match.src_idx, "dst": match.dst_idx, "inliers": int(len(src))}},
        )
        return None

    if method == "ransac":
        M_r, inl = cv2.estimateAffinePartial2D(
            np.float32(src), np.float32(dst),
            method=cv2.RANSAC,
            ransacReprojThreshold=float(ransac_px),
        )
        if M_r is None or inl is None:
            return None
        keep = inl.ravel().astype(bool)
        if int(keep.sum()) < MIN_RIGID_POINTS:
            return None
        src, dst = src[keep], dst[keep]
    elif method != "lstsq":
        raise ValueError(f"Unsupported refinement method: {method}")

    try:
        M = fit_similarity(src, dst, allow_scale=allow_scale)
    except DegenerateFit as e:
        log.debug("rigid refinement degenerate", extra={"extra": {"reason": str(e)}})
        return None

    rt = RigidTransform(
        M=M,
        src_idx=match.src_idx,
        dst_idx=match.dst_idx,
        num_points=int(len(src)),
        rmse_px=rmse(_residuals(M, src, dst)),
    )
    log.debug("rigid refinement", extra={"extra": rt.to_dict()})
    return rt


def refine_designated_pair(
    features: Sequence[FeatureSet],
    matches: Sequence[PairwiseMatch],
    pair: Tuple[int, int] = (0, 1),
    **kwargs,
) -> Optional[RigidTransform]:
    """refine_rigid() for the match record of `pair`, if that pair was matched."""
    for m in matches:
        if (m.src_idx, m.dst_idx) == tuple(pair):
            return refine_rigid(features[m.src_idx], features[m.dst_idx], m, **kwargs)
    return None
