"""
Failure kinds of the alignment core.

Only InsufficientInput and DisconnectedGraph ever reach the caller (as
AlignResult.error); the others are absorbed where they occur and encoded
as empty/zero-confidence results.
"""
from __future__ import annotations


class AlignmentError(Exception):
    """Base class for alignment failures."""


class InsufficientInput(AlignmentError):
    """Fewer than two maps were supplied."""


class NoFeatures(AlignmentError):
    """An image produced no keypoints."""


class InsufficientCorrespondences(AlignmentError):
    """A pair has too few matches/inliers to fit a transform."""


class DisconnectedGraph(AlignmentError):
    """Some map has no path of confident edges to the reference map."""

    def __init__(self, unreachable):
        self.unreachable = sorted(int(i) for i in unreachable)
        super().__init__(f"maps not connected to reference: {self.unreachable}")


class DegenerateFit(AlignmentError):
    """A transform fit is numerically singular (e.g. collinear points)."""
