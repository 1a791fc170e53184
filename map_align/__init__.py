# FILE: map_align/__init__.py
"""
map_align — Multi-robot occupancy grid registration

This package provides:
- ORB keypoints on grid-map rasters (features)
- Range-restricted pairwise matching with RANSAC homography verification
  and per-pair confidence (matching)
- Global transform estimation over the match graph: maximum-confidence
  spanning tree plus joint refinement, one CameraParams per map (estimate)
- Direct rigid fit for a designated pair, used as a cross-check (refine)
- Occupancy cells (-1..100) to rasters (occupancy)
- A pipeline that sequences the above and reports success/failure

Entry point (library call):
    from map_align import estimate_transforms, occupancy_to_image
    grids = [occupancy_to_image(cells, w, h) for cells, w, h in robot_maps]
    result = estimate_transforms(grids)
"""
from .occupancy import occupancy_to_image
from .pipeline import MapAligner, estimate_transforms

__all__ = ["MapAligner", "estimate_transforms", "occupancy_to_image"]
