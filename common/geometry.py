from __future__ import annotations

from typing import Tuple
import math
import numpy as np


# -------------------------
# Rotations
# -------------------------
def rotation_z(theta_rad: float) -> np.ndarray:
    """3x3 rotation about the z axis (in-plane rotation of a map)."""
    c, s = math.cos(theta_rad), math.sin(theta_rad)
    return np.array([[c, -s, 0.0], [s, c, 0.0], [0.0, 0.0, 1.0]], dtype=float)


def orthonormalize(R: np.ndarray) -> np.ndarray:
    """
    Nearest proper rotation to R (SVD projection, det=+1).

    Works for 2x2 and 3x3 inputs.
    """
    U, _, Vt = np.linalg.svd(np.asarray(R, dtype=float))
    D = np.eye(U.shape[0])
    D[-1, -1] = np.sign(np.linalg.det(U @ Vt)) or 1.0
    return U @ D @ Vt


def angle_of(R: np.ndarray) -> float:
    """In-plane angle (rad) of a 2x2 or 3x3 rotation."""
    return math.atan2(R[1, 0], R[0, 0])


def wrap_angle(a: float) -> float:
    """Wrap to (-pi, pi]."""
    return math.atan2(math.sin(a), math.cos(a))


# -------------------------
# Similarity transforms (3x3 homogeneous)
# -------------------------
def similarity_matrix(theta_rad: float, scale: float, tx: float, ty: float) -> np.ndarray:
    c, s = math.cos(theta_rad), math.sin(theta_rad)
    return np.array(
        [[scale * c, -scale * s, tx], [scale * s, scale * c, ty], [0.0, 0.0, 1.0]],
        dtype=float,
    )


def decompose_similarity(T: np.ndarray) -> Tuple[float, float, float, float]:
    """(theta_rad, scale, tx, ty) of a similarity; the linear part is re-orthogonalized."""
    A = np.asarray(T, dtype=float)[:2, :2]
    R = orthonormalize(A)
    scale = float(np.trace(R.T @ A) / 2.0)
    return angle_of(R), scale, float(T[0, 2]), float(T[1, 2])


def to_homogeneous(M: np.ndarray) -> np.ndarray:
    """2x3 -> 3x3."""
    T = np.eye(3)
    T[:2, :] = np.asarray(M, dtype=float).reshape(2, 3)
    return T


def apply_transform(T: np.ndarray, pts: np.ndarray) -> np.ndarray:
    """Apply a 3x3 (projective or affine) transform to (N,2) points."""
    p = np.asarray(pts, dtype=float).reshape(-1, 2)
    if p.size == 0:
        return np.zeros((0, 2))
    ph = np.hstack([p, np.ones((len(p), 1))]) @ np.asarray(T, dtype=float).T
    return ph[:, :2] / ph[:, 2:3]


def homography_is_degenerate(H: np.ndarray, eps: float = 1e-8) -> bool:
    """Singular or orientation-flipping homographies can't describe a map overlap."""
    if H is None or not np.all(np.isfinite(H)):
        return True
    Hn = H / H[2, 2] if abs(H[2, 2]) > eps else H
    return bool(abs(np.linalg.det(Hn)) < eps or np.linalg.det(Hn[:2, :2]) <= 0)


# -------------------------
# Scores & metrics
# -------------------------
def rmse(residuals: np.ndarray) -> float:
    """RMS of per-point Euclidean residuals (N,2); inf for empty input."""
    r = np.asarray(residuals, dtype=float).reshape(-1, 2)
    if r.size == 0:
        return float("inf")
    return float(np.sqrt(np.mean(np.sum(r ** 2, axis=1))))


def match_confidence(num_inliers: int, num_matches: int) -> float:
    """
    Pair confidence in the form used by OpenCV's stitching matcher:
      conf = inliers / (8 + 0.3 * matches)
    The constant term penalises pairs backed by only a handful of matches.
    """
    if num_matches <= 0 or num_inliers <= 0:
        return 0.0
    return float(num_inliers) / (8.0 + 0.3 * float(num_matches))
