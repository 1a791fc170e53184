from __future__ import annotations
"""
Configuration for the alignment pipeline (YAML, see config/params.yaml).
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import yaml


@dataclass
class FeaturesConfig:
    method: str = "orb"
    nfeatures: int = 1500
    fast_threshold: int = 12
    nlevels: int = 8
    scale_factor: float = 1.2
    edge_threshold: int = 19
    grid: Optional[Tuple[int, int]] = (8, 8)
    cap_per_cell: int = 60
    workers: int = 1


@dataclass
class MatchingConfig:
    ratio: float = 0.7
    range_width: int = 5
    ransac_px: float = 3.0
    max_iters: int = 2000
    ransac_confidence: float = 0.995
    min_matches: int = 6
    min_inliers_refit: int = 6
    workers: int = 1


@dataclass
class EstimationConfig:
    min_confidence: float = 1.0
    reference: str = "first"
    refine: bool = True
    refine_max_nfev: int = 200
    refine_loss: str = "huber"
    refine_f_scale: float = 2.0


@dataclass
class RefineConfig:
    enabled: bool = True
    pair: Tuple[int, int] = (0, 1)
    allow_scale: bool = False
    method: str = "lstsq"
    ransac_px: float = 3.0


@dataclass
class AlignConfig:
    features: FeaturesConfig = field(default_factory=FeaturesConfig)
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    estimation: EstimationConfig = field(default_factory=EstimationConfig)
    refine: RefineConfig = field(default_factory=RefineConfig)
    log_level: str = "INFO"


def _load_yaml(path: Union[str, Path]) -> Dict:
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def _pair(v: Any, name: str) -> Tuple[int, int]:
    if not isinstance(v, (list, tuple)) or len(v) != 2:
        raise ValueError(f"{name} must be a two-element list")
    return (int(v[0]), int(v[1]))


def config_from_dict(P: Dict) -> AlignConfig:
    """Build an AlignConfig from a parsed params dict; unknown keys are ignored."""
    if not isinstance(P, dict):
        raise ValueError("config root must be a mapping")
    d = AlignConfig()

    f = P.get("features") or {}
    grid = f.get("grid", d.features.grid)
    features = FeaturesConfig(
        method=str(f.get("method", d.features.method)).lower(),
        nfeatures=int(f.get("nfeatures", d.features.nfeatures)),
        fast_threshold=int(f.get("fast_threshold", d.features.fast_threshold)),
        nlevels=int(f.get("nlevels", d.features.nlevels)),
        scale_factor=float(f.get("scale_factor", d.features.scale_factor)),
        edge_threshold=int(f.get("edge_threshold", d.features.edge_threshold)),
        grid=None if grid is None else _pair(grid, "features.grid"),
        cap_per_cell=int(f.get("cap_per_cell", d.features.cap_per_cell)),
        workers=int(f.get("workers", d.features.workers)),
    )

    m = P.get("matching") or {}
    matching = MatchingConfig(
        ratio=float(m.get("ratio", d.matching.ratio)),
        range_width=int(m.get("range_width", d.matching.range_width)),
        ransac_px=float(m.get("ransac_px", d.matching.ransac_px)),
        max_iters=int(m.get("max_iters", d.matching.max_iters)),
        ransac_confidence=float(m.get("ransac_confidence", d.matching.ransac_confidence)),
        min_matches=int(m.get("min_matches", d.matching.min_matches)),
        min_inliers_refit=int(m.get("min_inliers_refit", d.matching.min_inliers_refit)),
        workers=int(m.get("workers", d.matching.workers)),
    )

    e = P.get("estimation") or {}
    estimation = EstimationConfig(
        min_confidence=float(e.get("min_confidence", d.estimation.min_confidence)),
        reference=str(e.get("reference", d.estimation.reference)),
        refine=bool(e.get("refine", d.estimation.refine)),
        refine_max_nfev=int(e.get("refine_max_nfev", d.estimation.refine_max_nfev)),
        refine_loss=str(e.get("refine_loss", d.estimation.refine_loss)),
        refine_f_scale=float(e.get("refine_f_scale", d.estimation.refine_f_scale)),
    )

    r = P.get("refine") or {}
    refine = RefineConfig(
        enabled=bool(r.get("enabled", d.refine.enabled)),
        pair=_pair(r.get("pair", d.refine.pair), "refine.pair"),
        allow_scale=bool(r.get("allow_scale", d.refine.allow_scale)),
        method=str(r.get("method", d.refine.method)),
        ransac_px=float(r.get("ransac_px", d.refine.ransac_px)),
    )

    if features.workers < 1 or matching.workers < 1:
        raise ValueError("workers must be >= 1")
    if refine.method not in ("lstsq", "ransac"):
        raise ValueError(f"Unsupported refine.method: {refine.method}")

    level = str((P.get("logging") or {}).get("level", d.log_level)).upper()
    return AlignConfig(features, matching, estimation, refine, level)


def load_config(path: Optional[Union[str, Path]] = None) -> AlignConfig:
    """Defaults when path is None; otherwise the YAML file at `path`."""
    if path is None:
        return AlignConfig()
    return config_from_dict(_load_yaml(path))
