from __future__ import annotations
"""
Occupancy grid -> GridImage.

Cell values follow the usual occupancy-grid convention: -1 unknown,
0..100 free..occupied, stored as signed bytes. The raster is the same bytes
read as uint8, so unknown becomes 255 and occupied stays 100.
"""

from typing import Sequence, Union

import numpy as np

from common.types import GridImage


def occupancy_to_image(
    data: Union[Sequence[int], np.ndarray],
    width: int,
    height: int,
    name: str = "map",
) -> GridImage:
    """
    Row-major occupancy cells (len == width*height, or an (H,W) array) to a raster.
    """
    a = np.asarray(data)
    if a.size != int(width) * int(height):
        raise ValueError(f"expected {width}x{height} cells, got {a.size}")
    if a.size and (a.min() < -1 or a.max() > 100):
        raise ValueError("occupancy values must be in [-1, 100]")
    cells = a.astype(np.int8).reshape(int(height), int(width))
    return GridImage(data=cells.view(np.uint8).copy(), width=int(width), height=int(height), name=name)
