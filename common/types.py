from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Tuple, Any, Dict, List
import math
import numpy as np


def _as_f64(x, shape: Tuple[int, ...], name: str) -> np.ndarray:
    a = np.asarray(x, dtype=float)
    if a.shape != shape:
        raise ValueError(f"{name} must have shape {shape}, got {a.shape}")
    return a.copy()


@dataclass(slots=True)
class GridImage:
    """
    Single-channel raster derived from an occupancy grid.

    Attributes:
        data: np.ndarray of shape (H,W), dtype uint8.
        width, height: raster dimensions in pixels (cells).
        name: free-form label used in logs (robot/session id).
    """
    data: np.ndarray = field(repr=False)
    width: int
    height: int
    name: str = "map"

    def __post_init__(self) -> None:
        if not isinstance(self.data, np.ndarray):
            raise TypeError("data must be a numpy ndarray")
        if self.data.ndim != 2:
            raise ValueError("data must be a 2D single-channel raster")
        if self.data.shape[0] != self.height or self.data.shape[1] != self.width:
            raise ValueError("width/height do not match data shape")
        if self.data.dtype != np.uint8:
            self.data = self.data.astype(np.uint8, copy=False)

    @classmethod
    def from_array(cls, data: np.ndarray, name: str = "map") -> "GridImage":
        a = np.asarray(data)
        if a.ndim != 2:
            raise ValueError("grid raster must be 2D (H,W)")
        return cls(data=a, width=int(a.shape[1]), height=int(a.shape[0]), name=name)

    def to_meta(self) -> Dict[str, Any]:
        """Metadata without pixels (safe to log/serialize)."""
        return {"name": self.name, "width": self.width, "height": self.height}


@dataclass(slots=True)
class Keypoint:
    """Keypoint location in corner-anchored pixel coordinates (x right, y down)."""
    x: float
    y: float
    size: float = 0.0
    angle: float = -1.0
    response: float = 0.0
    octave: int = 0

    @property
    def pt(self) -> Tuple[float, float]:
        return (self.x, self.y)


@dataclass(slots=True)
class FeatureSet:
    """
    Keypoints of one image; descriptors[i] belongs to keypoints[i].

    width/height are kept so later stages can center coordinates.
    """
    keypoints: List[Keypoint]
    descriptors: np.ndarray = field(repr=False)
    width: int
    height: int
    image_index: int = 0

    def __post_init__(self) -> None:
        if not isinstance(self.descriptors, np.ndarray) or self.descriptors.ndim != 2:
            raise ValueError("descriptors must be a 2D ndarray (N, D)")
        if self.descriptors.shape[0] != len(self.keypoints):
            raise ValueError("descriptor rows must match keypoint count")
        if self.width <= 0 or self.height <= 0:
            raise ValueError("image size must be positive")

    def __len__(self) -> int:
        return len(self.keypoints)

    @property
    def is_empty(self) -> bool:
        return len(self.keypoints) == 0

    @property
    def center(self) -> Tuple[float, float]:
        return (self.width * 0.5, self.height * 0.5)

    def points(self) -> np.ndarray:
        if not self.keypoints:
            return np.zeros((0, 2), dtype=np.float32)
        return np.float32([kp.pt for kp in self.keypoints])


@dataclass(slots=True)
class PairwiseMatch:
    """
    Correspondences between image src_idx and image dst_idx.

    Attributes:
        correspondences: (M,2) int array of [src keypoint idx, dst keypoint idx].
        inlier_mask: (M,) bool array, True where the pair agrees with H.
        num_inliers: number of True entries in inlier_mask.
        confidence: >= 0; zero for pairs that could not be fitted.
        H: 3x3 homography mapping src pixels to dst pixels, or None.
    """
    src_idx: int
    dst_idx: int
    correspondences: np.ndarray = field(repr=False)
    inlier_mask: np.ndarray = field(repr=False)
    num_inliers: int = 0
    confidence: float = 0.0
    H: Optional[np.ndarray] = None
    rmse_px: float = float("inf")

    def __post_init__(self) -> None:
        c = np.asarray(self.correspondences, dtype=np.int32)
        if c.size == 0:
            c = c.reshape(0, 2)
        if c.ndim != 2 or c.shape[1] != 2:
            raise ValueError("correspondences must be (M,2)")
        self.correspondences = c
        self.inlier_mask = np.asarray(self.inlier_mask, dtype=bool).ravel()
        if len(self.inlier_mask) != len(self.correspondences):
            raise ValueError("inlier_mask length must equal correspondence count")
        if self.num_inliers != int(self.inlier_mask.sum()):
            raise ValueError("num_inliers must equal the number of True inlier_mask entries")
        if not self.confidence >= 0.0:
            raise ValueError("confidence must be >= 0")
        if self.H is not None:
            self.H = _as_f64(self.H, (3, 3), "H")

    @classmethod
    def empty(cls, src_idx: int, dst_idx: int, correspondences: Optional[np.ndarray] = None) -> "PairwiseMatch":
        """Zero-confidence record; keeps raw correspondences (all outliers) if given."""
        c = np.zeros((0, 2), np.int32) if correspondences is None else np.asarray(correspondences, np.int32)
        return cls(src_idx, dst_idx, c, np.zeros(len(c), dtype=bool), 0, 0.0, None)

    @property
    def num_matches(self) -> int:
        return int(len(self.correspondences))

    def inlier_points(
        self, src: FeatureSet, dst: FeatureSet, centered: bool = False
    ) -> Tuple[np.ndarray, np.ndarray]:
        """(K,2) float64 arrays of inlier source/destination points."""
        pairs = self.correspondences[self.inlier_mask]
        if len(pairs) == 0:
            return np.zeros((0, 2)), np.zeros((0, 2))
        ps = src.points()[pairs[:, 0]].astype(float)
        pd = dst.points()[pairs[:, 1]].astype(float)
        if centered:
            ps -= np.array(src.center)
            pd -= np.array(dst.center)
        return ps, pd

    def to_meta(self) -> Dict[str, Any]:
        return {
            "src": self.src_idx,
            "dst": self.dst_idx,
            "matches": self.num_matches,
            "inliers": self.num_inliers,
            "confidence": round(float(self.confidence), 4),
            "rmse_px": None if not math.isfinite(self.rmse_px) else round(float(self.rmse_px), 3),
        }


@dataclass(slots=True)
class CameraParams:
    """
    Transform of one map into the reference map frame.

    p_ref = focal * R[:2,:2] @ p_map + (ppx, ppy), corner-anchored pixels.
    R is a rotation about z; focal is a positive uniform scale.
    """
    R: np.ndarray = field(repr=False)
    focal: float = 1.0
    ppx: float = 0.0
    ppy: float = 0.0
    aspect: float = 1.0
    t: np.ndarray = field(default_factory=lambda: np.zeros(3), repr=False)

    def __post_init__(self) -> None:
        self.R = _as_f64(self.R, (3, 3), "R")
        self.t = _as_f64(self.t, (3,), "t")
        if not self.focal > 0:
            raise ValueError("focal must be > 0")

    def K(self) -> np.ndarray:
        return np.array(
            [[self.focal, 0.0, self.ppx], [0.0, self.focal * self.aspect, self.ppy], [0.0, 0.0, 1.0]]
        )

    def matrix(self) -> np.ndarray:
        """3x3 homogeneous map->reference transform."""
        T = np.eye(3)
        T[:2, :2] = self.focal * self.R[:2, :2]
        T[0, 2] = self.ppx
        T[1, 2] = self.ppy
        return T

    def angle_rad(self) -> float:
        return math.atan2(self.R[1, 0], self.R[0, 0])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "R": self.R.tolist(),
            "K": self.K().tolist(),
            "focal": float(self.focal),
            "aspect": float(self.aspect),
            "ppx": float(self.ppx),
            "ppy": float(self.ppy),
            "angle_deg": math.degrees(self.angle_rad()),
        }


@dataclass(slots=True)
class RigidTransform:
    """
    2x3 transform for one image pair in centered coordinates
    (origin at each image's center).
    """
    M: np.ndarray
    src_idx: int
    dst_idx: int
    num_points: int
    rmse_px: float

    def __post_init__(self) -> None:
        self.M = _as_f64(self.M, (2, 3), "M")

    def angle_rad(self) -> float:
        return math.atan2(self.M[1, 0], self.M[0, 0])

    def scale(self) -> float:
        return float(math.hypot(self.M[0, 0], self.M[1, 0]))

    def translation(self) -> Tuple[float, float]:
        return (float(self.M[0, 2]), float(self.M[1, 2]))

    def to_dict(self) -> Dict[str, Any]:
        tx, ty = self.translation()
        return {
            "src": self.src_idx,
            "dst": self.dst_idx,
            "M": self.M.tolist(),
            "tx": tx,
            "ty": ty,
            "angle_deg": math.degrees(self.angle_rad()),
            "points": self.num_points,
            "rmse_px": float(self.rmse_px),
        }


@dataclass(slots=True)
class AlignResult:
    """Outcome of one alignment call; cameras is empty unless ok."""
    ok: bool
    cameras: List[CameraParams] = field(default_factory=list)
    error: Optional[str] = None
    matches: List[PairwiseMatch] = field(default_factory=list, repr=False)
    rigid: Optional[RigidTransform] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "error": self.error,
            "transforms": [c.to_dict() for c in self.cameras],
            "pairs": [m.to_meta() for m in self.matches],
            "rigid": None if self.rigid is None else self.rigid.to_dict(),
        }
