from __future__ import annotations
"""
Feature extraction for grid-map rasters.

- FeatureExtractor(method='orb'|'akaze') with .extract(GridImage) -> FeatureSet
- Grid non-max suppression (keeps spatially well-distributed strong keypoints;
  occupancy grids concentrate corners along walls)
- extract_all(): per-image extraction, optionally on a thread pool
"""

from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence, Tuple

import cv2
import numpy as np

from common.logging_setup import get_logger
from common.types import FeatureSet, GridImage, Keypoint
from common.utils import parallel_map


log = get_logger("map_align.features")

# Smallest image side the detectors accept.
MIN_IMAGE_SIDE = 2


class Detector(Protocol):
    def extract(self, image: GridImage) -> FeatureSet: ...


# -----------------------------
# Extractors
# -----------------------------

@dataclass
class FeatureExtractor:
    method: str = "orb"
    nfeatures: int = 1500
    fast_threshold: int = 12
    nlevels: int = 8
    scale_factor: float = 1.2
    edge_threshold: int = 19
    grid: Optional[Tuple[int, int]] = (8, 8)
    cap_per_cell: int = 60

    def __post_init__(self):
        m = self.method.lower()
        if m == "orb":
            self._det = cv2.ORB_create(
                nfeatures=int(self.nfeatures),
                scaleFactor=float(self.scale_factor),
                nlevels=int(self.nlevels),
                edgeThreshold=int(self.edge_threshold),
                firstLevel=0,
                WTA_K=2,
                scoreType=cv2.ORB_HARRIS_SCORE,
                patchSize=31,
                fastThreshold=int(self.fast_threshold),
            )
        elif m == "akaze":
            self._det = cv2.AKAZE_create(
                descriptor_type=cv2.AKAZE_DESCRIPTOR_MLDB,
                threshold=0.001,
                nOctaves=4,
                nOctaveLayers=4,
                diffusivity=cv2.KAZE_DIFF_PM_G2,
            )
        else:
            raise ValueError(f"Unsupported method: {self.method}")
        self.method = m

    @property
    def descriptor_size(self) -> int:
        return int(self._det.descriptorSize())

    def _empty(self) -> Tuple[List[cv2.KeyPoint], np.ndarray]:
        return [], np.zeros((0, self.descriptor_size), dtype=np.uint8)

    def detect_and_compute(self, gray_u8: np.ndarray) -> Tuple[List[cv2.KeyPoint], np.ndarray]:
        h, w = gray_u8.shape[:2]
        # the scale pyramid cannot shrink a single row or column
        if min(h, w) < MIN_IMAGE_SIDE:
            return self._empty()
        try:
            kps = list(self._det.detect(gray_u8, None) or [])
        except cv2.error as e:
            log.warning("detection failed", extra={"extra": {"width": w, "height": h, "error": str(e)}})
            return self._empty()
        if len(kps) > self.nfeatures:
            # ORB's retainBest keeps ties at the cut
            kps = sorted(kps, key=lambda p: p.response, reverse=True)[: self.nfeatures]
        if self.grid is not None and kps:
            kps = grid_nms(kps, (w, h), grid=self.grid, cap_per_cell=self.cap_per_cell)
        if not kps:
            return self._empty()
        kps, des = self._det.compute(gray_u8, kps)
        if des is None or not kps:
            return self._empty()
        return list(kps), des

    def extract(self, image: GridImage, image_index: int = 0) -> FeatureSet:
        """
        Keypoints + descriptors for one map. A blank map yields an empty
        FeatureSet rather than an error.
        """
        kps, des = self.detect_and_compute(image.data)
        keypoints = [
            Keypoint(
                x=float(k.pt[0]),
                y=float(k.pt[1]),
                size=float(k.size),
                angle=float(k.angle),
                response=float(k.response),
                octave=int(k.octave),
            )
            for k in kps
        ]
        fs = FeatureSet(
            keypoints=keypoints,
            descriptors=des,
            width=image.width,
            height=image.height,
            image_index=image_index,
        )
        if fs.is_empty:
            log.debug("no features", extra={"extra": {"image": image_index, **image.to_meta()}})
        return fs


# -----------------------------
# Keypoint post-processing
# -----------------------------

def grid_nms(
    kps: List[cv2.KeyPoint],
    img_size: Tuple[int, int],
    grid: Tuple[int, int] = (8, 8),
    cap_per_cell: int = 60,
) -> List[cv2.KeyPoint]:
    """
    Keep at most cap_per_cell keypoints per grid cell, sorted by response.
    """
    if not kps:
        return []
    W, H = int(img_size[0]), int(img_size[1])
    gx, gy = int(grid[0]), int(grid[1])
    cells: List[List[List[cv2.KeyPoint]]] = [[[] for _ in range(gx)] for _ in range(gy)]
    cw = max(1, W // gx)
    ch = max(1, H // gy)
    for kp in kps:
        x, y = int(kp.pt[0]), int(kp.pt[1])
        cx = min(gx - 1, max(0, x // cw))
        cy = min(gy - 1, max(0, y // ch))
        cells[cy][cx].append(kp)
    kept: List[cv2.KeyPoint] = []
    for row in cells:
        for cell in row:
            cell.sort(key=lambda p: p.response, reverse=True)
            kept.extend(cell[:cap_per_cell])
    return kept


def extract_all(
    detector: Detector,
    images: Sequence[GridImage],
    workers: Optional[int] = 1,
) -> List[FeatureSet]:
    """
    One FeatureSet per image, index-aligned with `images`.
    Images are independent, so this fans out over `workers` threads.
    """
    def _one(item: Tuple[int, GridImage]) -> FeatureSet:
        idx, img = item
        fs = detector.extract(img)
        fs.image_index = idx
        return fs

    features = parallel_map(_one, list(enumerate(images)), workers=workers)
    log.debug(
        "features extracted",
        extra={"extra": {"keypoints": [len(f) for f in features]}},
    )
    return features
