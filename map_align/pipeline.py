from __future__ import annotations

import math
from enum import Enum
from pathlib import Path
from typing import Optional, Sequence, Tuple, Union

import numpy as np

from common.geometry import wrap_angle
from common.logging_setup import get_logger
from common.types import AlignResult, CameraParams, GridImage, RigidTransform
from common.utils import timer_ms
from map_align.config import AlignConfig, load_config
from map_align.errors import InsufficientInput
from map_align.estimate import Estimator, HomographyBasedEstimator
from map_align.features import Detector, FeatureExtractor, extract_all
from map_align.matching import BestOf2NearestRangeMatcher, Matcher
from map_align.refine import refine_designated_pair


log = get_logger("map_align")


class Stage(str, Enum):
    IDLE = "idle"
    EXTRACTING = "extracting"
    MATCHING = "matching"
    ESTIMATING = "estimating"
    DONE = "done"


ImageLike = Union[GridImage, np.ndarray]


class MapAligner:
    """
    Extract -> match -> estimate over a list of map rasters.

    The three stages are swappable strategies (anything with the
    extract / match_all / estimate methods). Nothing is retried: a failed
    run is reported through AlignResult and the caller decides what to do.
    """

    def __init__(
        self,
        extractor: Optional[Detector] = None,
        matcher: Optional[Matcher] = None,
        estimator: Optional[Estimator] = None,
        *,
        extract_workers: int = 1,
        refine_pair: Optional[Tuple[int, int]] = (0, 1),
        refine_kwargs: Optional[dict] = None,
    ):
        self.extractor = extractor if extractor is not None else FeatureExtractor()
        self.matcher = matcher if matcher is not None else BestOf2NearestRangeMatcher()
        self.estimator = estimator if estimator is not None else HomographyBasedEstimator()
        self.extract_workers = int(extract_workers)
        self.refine_pair = refine_pair
        self.refine_kwargs = dict(refine_kwargs or {})
        self.stage = Stage.IDLE

    @classmethod
    def from_config(cls, cfg: AlignConfig) -> "MapAligner":
        f, m, e, r = cfg.features, cfg.matching, cfg.estimation, cfg.refine
        return cls(
            FeatureExtractor(
                method=f.method,
                nfeatures=f.nfeatures,
                fast_threshold=f.fast_threshold,
                nlevels=f.nlevels,
                scale_factor=f.scale_factor,
                edge_threshold=f.edge_threshold,
                grid=f.grid,
                cap_per_cell=f.cap_per_cell,
            ),
            BestOf2NearestRangeMatcher(
                ratio=m.ratio,
                range_width=m.range_width,
                ransac_px=m.ransac_px,
                max_iters=m.max_iters,
                ransac_confidence=m.ransac_confidence,
                min_matches=m.min_matches,
                min_inliers_refit=m.min_inliers_refit,
                workers=m.workers,
            ),
            HomographyBasedEstimator(
                min_confidence=e.min_confidence,
                reference=e.reference,
                refine=e.refine,
                refine_max_nfev=e.refine_max_nfev,
                refine_loss=e.refine_loss,
                refine_f_scale=e.refine_f_scale,
            ),
            extract_workers=f.workers,
            refine_pair=r.pair if r.enabled else None,
            refine_kwargs={"allow_scale": r.allow_scale, "method": r.method, "ransac_px": r.ransac_px},
        )

    @staticmethod
    def _check_inputs(images: Optional[Sequence[ImageLike]]) -> list:
        if images is None or len(images) < 2:
            raise InsufficientInput(f"need at least 2 maps, got {0 if images is None else len(images)}")
        return [
            img if isinstance(img, GridImage) else GridImage.from_array(img, name=f"map{i}")
            for i, img in enumerate(images)
        ]

    def run(self, images: Optional[Sequence[ImageLike]]) -> AlignResult:
        self.stage = Stage.IDLE
        try:
            grids = self._check_inputs(images)
        except InsufficientInput as e:
            self.stage = Stage.DONE
            log.info("alignment rejected", extra={"extra": {"error": "InsufficientInput", "reason": str(e)}})
            return AlignResult(ok=False, error="InsufficientInput")

        self.stage = Stage.EXTRACTING
        features, t_extract = timer_ms(extract_all)(self.extractor, grids, workers=self.extract_workers)

        self.stage = Stage.MATCHING
        matches, t_match = timer_ms(self.matcher.match_all)(features)

        self.stage = Stage.ESTIMATING
        (ok, cameras), t_estimate = timer_ms(self.estimator.estimate)(features, matches)

        rigid = None
        if ok and self.refine_pair is not None:
            rigid = refine_designated_pair(features, matches, self.refine_pair, **self.refine_kwargs)
            if rigid is not None:
                log.info("rigid cross-check", extra={"extra": rigid_disagreement(rigid, cameras)})

        self.stage = Stage.DONE
        log.info(
            "alignment finished",
            extra={"extra": {
                "ok": bool(ok),
                "maps": len(grids),
                "pairs": len(matches),
                "confident_pairs": sum(1 for m in matches if m.H is not None),
                "extract_ms": round(t_extract, 1),
                "match_ms": round(t_match, 1),
                "estimate_ms": round(t_estimate, 1),
            }},
        )
        if not ok:
            return AlignResult(ok=False, error="DisconnectedGraph", matches=list(matches))
        return AlignResult(ok=True, cameras=list(cameras), matches=list(matches), rigid=rigid)


def rigid_disagreement(rigid: RigidTransform, cameras: Sequence[CameraParams]) -> dict:
    """
    Rotation/scale gap between a pairwise rigid fit and the global estimate
    for the same pair (src -> dst rotation implied by the two cameras).
    """
    src, dst = cameras[rigid.src_idx], cameras[rigid.dst_idx]
    implied = src.angle_rad() - dst.angle_rad()
    return {
        "src": rigid.src_idx,
        "dst": rigid.dst_idx,
        "angle_diff_deg": math.degrees(wrap_angle(rigid.angle_rad() - implied)),
        "scale_ratio": rigid.scale() * dst.focal / src.focal,
        "rigid_rmse_px": float(rigid.rmse_px),
    }


def estimate_transforms(
    images: Optional[Sequence[ImageLike]],
    config: Optional[Union[AlignConfig, str, Path]] = None,
) -> AlignResult:
    """
    Align maps into the frame of the first one.

    Returns AlignResult(ok, cameras, ...) with one CameraParams per input map
    when ok; cameras is empty otherwise.
    """
    cfg = config if isinstance(config, AlignConfig) else load_config(config)
    return MapAligner.from_config(cfg).run(images)
