"""
Shared fixtures: synthetic occupancy-grid rasters and feature sets.
"""

import os
import sys

import cv2
import numpy as np
import pytest

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from common.types import FeatureSet, GridImage, Keypoint

# Raster palette of an occupancy grid read as uint8 (-1 -> 255).
UNKNOWN = 255
FREE = 0
OCCUPIED = 100


def make_floor_plan(size=(400, 400), seed=0, walled=True) -> np.ndarray:
    """
    Cluttered floor plan: walls, rooms, obstacles, scattered debris.

    walled=False leaves out the outer wall and unknown margin, so two plans
    with different seeds share no structure at all.
    """
    w, h = size
    rng = np.random.default_rng(seed)
    if walled:
        img = np.full((h, w), UNKNOWN, dtype=np.uint8)
        cv2.rectangle(img, (20, 20), (w - 21, h - 21), FREE, -1)
        cv2.rectangle(img, (20, 20), (w - 21, h - 21), OCCUPIED, 3)
    else:
        img = np.full((h, w), FREE, dtype=np.uint8)

    for _ in range(30):
        x0 = int(rng.integers(30, w - 70))
        y0 = int(rng.integers(30, h - 70))
        ww, hh = (int(v) for v in rng.integers(8, 45, size=2))
        thickness = -1 if rng.random() < 0.5 else 2
        cv2.rectangle(img, (x0, y0), (x0 + ww, y0 + hh), OCCUPIED, thickness)

    for _ in range(12):
        p0 = tuple(int(v) for v in rng.integers(30, min(w, h) - 30, size=2))
        p1 = tuple(int(v) for v in rng.integers(30, min(w, h) - 30, size=2))
        cv2.line(img, p0, p1, OCCUPIED, 2)

    for _ in range(6):
        c = tuple(int(v) for v in rng.integers(40, min(w, h) - 40, size=2))
        cv2.circle(img, c, int(rng.integers(6, 18)), UNKNOWN, -1)

    for _ in range(350):
        x, y = (int(v) for v in rng.integers(25, min(w, h) - 25, size=2))
        s = int(rng.integers(1, 4))
        cv2.rectangle(img, (x, y), (x + s, y + s), OCCUPIED, -1)
    return img


def warp_map(img: np.ndarray, angle_deg: float, tx: float, ty: float):
    """
    Rotate about the image center then shift; returns (warped, M) where M (2x3)
    maps original pixels to warped pixels.
    """
    h, w = img.shape
    M = cv2.getRotationMatrix2D((w / 2.0, h / 2.0), angle_deg, 1.0)
    M[:, 2] += (tx, ty)
    warped = cv2.warpAffine(img, M, (w, h), flags=cv2.INTER_LINEAR, borderValue=UNKNOWN)
    return warped, M


def make_feature_set(points, width=400, height=400, index=0) -> FeatureSet:
    """FeatureSet from raw points; descriptors are dummies."""
    pts = np.asarray(points, dtype=float).reshape(-1, 2)
    kps = [Keypoint(x=float(x), y=float(y)) for x, y in pts]
    return FeatureSet(kps, np.zeros((len(kps), 32), np.uint8), width, height, index)


@pytest.fixture
def floor_plan():
    return make_floor_plan(seed=7)


@pytest.fixture
def grid_image(floor_plan):
    return GridImage.from_array(floor_plan, name="robot0")


@pytest.fixture
def blank_map():
    return np.full((400, 400), UNKNOWN, dtype=np.uint8)


@pytest.fixture
def rotated_pair(floor_plan):
    """(original, warped, M) with a 12 degree rotation and (15, -10) px shift."""
    warped, M = warp_map(floor_plan, 12.0, 15.0, -10.0)
    return floor_plan, warped, M


@pytest.fixture
def rng():
    return np.random.default_rng(1234)
