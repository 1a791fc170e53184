#!/usr/bin/env python3
"""
Estimate the transforms that align several saved grid maps.

Loads each map (PGM/PNG read as grayscale, or a .npy occupancy array),
runs the alignment pipeline and prints a JSON report to stdout: ok flag, failure kind, one
transform per map (relative to the first map) and per-pair diagnostics.
Logs go to stderr.

Examples:
  python scripts/align_maps.py maps/robot1.pgm maps/robot2.pgm
  python scripts/align_maps.py dumps/robot1.npy dumps/robot2.npy
  python scripts/align_maps.py maps/*.pgm --config config/params.yaml --log-level DEBUG
"""
from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path
from typing import List

import cv2
import numpy as np

# Allow running from a checkout without installing
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from common.logging_setup import get_logger, setup_logging
from common.types import GridImage
from map_align.config import load_config
from map_align.occupancy import occupancy_to_image
from map_align.pipeline import MapAligner


log = get_logger("align_maps")


def load_maps(paths: List[str]) -> List[GridImage]:
    """
    Raster images are read as grayscale. `.npy` files hold raw occupancy
    cells (H, W) in -1..100 and are converted like a live occupancy grid.
    """
    maps: List[GridImage] = []
    for p in paths:
        name = Path(p).stem
        if Path(p).suffix.lower() == ".npy":
            if not os.path.isfile(p):
                raise FileNotFoundError(f"Could not load occupancy array: {p}")
            cells = np.load(p)
            if cells.ndim != 2:
                raise ValueError(f"occupancy array must be 2-D, got shape {cells.shape}: {p}")
            maps.append(occupancy_to_image(cells, width=cells.shape[1], height=cells.shape[0], name=name))
            continue
        img = cv2.imread(p, cv2.IMREAD_GRAYSCALE)
        if img is None:
            raise FileNotFoundError(f"Could not load map image: {p}")
        maps.append(GridImage.from_array(img, name=name))
    return maps


def main() -> int:
    ap = argparse.ArgumentParser(description="Estimate transforms aligning overlapping grid maps")
    ap.add_argument("maps", nargs="+", help="Map images (grayscale rasters) or .npy occupancy arrays")
    ap.add_argument("--config", default=None, help="YAML params (see config/params.yaml)")
    ap.add_argument("--log-level", default=None, help="Override logging level")
    args = ap.parse_args()

    cfg = load_config(args.config)
    setup_logging(args.log_level or cfg.log_level, force=True)

    try:
        maps = load_maps(args.maps)
    except (FileNotFoundError, ValueError) as e:
        log.error("map load failed", extra={"extra": {"error": str(e)}})
        return 2

    result = MapAligner.from_config(cfg).run(maps)
    report = result.to_dict()
    report["maps"] = [m.to_meta() for m in maps]
    print(json.dumps(report, indent=2))
    return 0 if result.ok else 1


if __name__ == "__main__":
    sys.exit(main())
