from __future__ import annotations
"""
Global transform estimation over the pairwise match graph.

Each confident pairwise homography becomes an edge carrying a 2-D similarity.
Maps are chained to the reference along a maximum-confidence spanning tree,
then all maps are adjusted jointly against every inlier correspondence of
every confident edge (reference held fixed).

Output convention (see CameraParams): p_ref = focal * R2 @ p_map + (ppx, ppy),
corner-anchored pixel coordinates, same as keypoints.
"""

from dataclasses import dataclass
import heapq
import math
from typing import Dict, List, Protocol, Sequence, Set, Tuple

import numpy as np
from scipy.optimize import least_squares

from common.geometry import (
    apply_transform,
    decompose_similarity,
    orthonormalize,
    rmse,
    rotation_z,
    similarity_matrix,
    to_homogeneous,
)
from common.logging_setup import get_logger
from common.types import CameraParams, FeatureSet, PairwiseMatch
from map_align.errors import DegenerateFit, DisconnectedGraph
from map_align.refine import fit_similarity


log = get_logger("map_align.estimate")


class Estimator(Protocol):
    def estimate(
        self, features: Sequence[FeatureSet], matches: Sequence[PairwiseMatch]
    ) -> Tuple[bool, List[CameraParams]]: ...


@dataclass
class Edge:
    """Similarity T mapping pixels of map `src` onto pixels of map `dst`."""
    src: int
    dst: int
    T: np.ndarray
    confidence: float
    match: PairwiseMatch

    def other(self, node: int) -> int:
        return self.dst if node == self.src else self.src

    def transform_from(self, node: int) -> np.ndarray:
        """Transform taking pixels of `node` into the frame of the other endpoint."""
        return self.T if node == self.src else np.linalg.inv(self.T)


def similarity_from_homography(H: np.ndarray, width: int, height: int) -> np.ndarray:
    """
    Closest similarity (3x3) to H over the source image: corners and center are
    pushed through H and a least-squares similarity is fitted to them.
    """
    w, h = float(width), float(height)
    probe = np.array([[0, 0], [w, 0], [w, h], [0, h], [w / 2, h / 2]], dtype=float)
    mapped = apply_transform(H, probe)
    if not np.all(np.isfinite(mapped)):
        raise DegenerateFit("homography maps image to infinity")
    return to_homogeneous(fit_similarity(probe, mapped, allow_scale=True))


@dataclass
class HomographyBasedEstimator:
    min_confidence: float = 1.0
    reference: str = "first"
    refine: bool = True
    refine_max_nfev: int = 200
    refine_loss: str = "huber"
    refine_f_scale: float = 2.0

    def __post_init__(self):
        if self.reference not in ("first", "max_confidence"):
            raise ValueError(f"Unsupported reference: {self.reference}")
        if self.min_confidence < 0:
            raise ValueError("min_confidence must be >= 0")

    # -------------------------
    # Graph
    # -------------------------
    def build_edges(self, features: Sequence[FeatureSet], matches: Sequence[PairwiseMatch]) -> List[Edge]:
        n = len(features)
        edges: List[Edge] = []
        for m in matches:
            if not (0 <= m.src_idx < n and 0 <= m.dst_idx < n) or m.src_idx == m.dst_idx:
                raise ValueError(f"match ({m.src_idx}, {m.dst_idx}) does not index {n} feature sets")
            if m.H is None or m.confidence < self.min_confidence or m.num_inliers == 0:
                continue
            fs = features[m.src_idx]
            try:
                T = similarity_from_homography(m.H, fs.width, fs.height)
            except DegenerateFit as e:
                log.debug("edge dropped", extra={"extra": {"src": m.src_idx, "dst": m.dst_idx, "reason": str(e)}})
                continue
            edges.append(Edge(m.src_idx, m.dst_idx, T, float(m.confidence), m))
        return edges

    def pick_reference(self, n: int, edges: Sequence[Edge]) -> int:
        if self.reference == "first" or not edges:
            return 0
        score = np.zeros(n)
        for e in edges:
            score[e.src] += e.confidence
            score[e.dst] += e.confidence
        return int(np.argmax(score))

    @staticmethod
    def spanning_tree(n: int, edges: Sequence[Edge], ref: int) -> List[Tuple[int, int, Edge]]:
        """
        Maximum-confidence spanning tree grown from `ref` (Prim).
        Returns (parent, child, edge) in discovery order; raises DisconnectedGraph.
        """
        adj: Dict[int, List[int]] = {i: [] for i in range(n)}
        for k, e in enumerate(edges):
            adj[e.src].append(k)
            adj[e.dst].append(k)

        visited: Set[int] = {ref}
        heap: List[Tuple[float, int, int]] = []
        for k in adj[ref]:
            heapq.heappush(heap, (-edges[k].confidence, k, ref))

        tree: List[Tuple[int, int, Edge]] = []
        while heap and len(visited) < n:
            _, k, parent = heapq.heappop(heap)
            child = edges[k].other(parent)
            if child in visited:
                continue
            visited.add(child)
            tree.append((parent, child, edges[k]))
            for k2 in adj[child]:
                if edges[k2].other(child) not in visited:
                    heapq.heappush(heap, (-edges[k2].confidence, k2, child))

        if len(visited) < n:
            raise DisconnectedGraph(set(range(n)) - visited)
        return tree

    # -------------------------
    # Estimation
    # -------------------------
    def estimate(
        self, features: Sequence[FeatureSet], matches: Sequence[PairwiseMatch]
    ) -> Tuple[bool, List[CameraParams]]:
        """
        One CameraParams per feature set, relative to the reference map.
        Returns (False, []) when some map can't be reached through confident edges.
        """
        n = len(features)
        if n == 0:
            return False, []

        edges = self.build_edges(features, matches)
        ref = self.pick_reference(n, edges)
        try:
            tree = self.spanning_tree(n, edges, ref)
        except DisconnectedGraph as e:
            log.info(
                "match graph disconnected",
                extra={"extra": {"reference": ref, "unreachable": e.unreachable, "edges": len(edges)}},
            )
            return False, []

        poses: List[np.ndarray] = [np.eye(3) for _ in range(n)]
        for parent, child, e in tree:
            poses[child] = poses[parent] @ e.transform_from(child)

        if self.refine and n > 1:
            poses = self.bundle_adjust(poses, features, edges, ref)

        cameras = [self._camera(T) for T in poses]
        for i, cam in enumerate(cameras):
            log.debug("map transform", extra={"extra": {"map": i, "reference": ref, **cam.to_dict()}})
        for e in edges:
            log.debug(
                "edge residual",
                extra={"extra": {"src": e.src, "dst": e.dst, "rmse_px": self._edge_rmse(poses, features, e)}},
            )
        return True, cameras

    @staticmethod
    def _camera(T: np.ndarray) -> CameraParams:
        theta, scale, tx, ty = decompose_similarity(T)
        return CameraParams(R=orthonormalize(rotation_z(theta)), focal=scale, ppx=tx, ppy=ty)

    @staticmethod
    def _edge_rmse(poses: Sequence[np.ndarray], features: Sequence[FeatureSet], e: Edge) -> float:
        pa, pb = e.match.inlier_points(features[e.src], features[e.dst])
        return rmse(apply_transform(poses[e.src], pa) - apply_transform(poses[e.dst], pb))

    # -------------------------
    # Joint refinement
    # -------------------------
    def bundle_adjust(
        self,
        poses: List[np.ndarray],
        features: Sequence[FeatureSet],
        edges: Sequence[Edge],
        ref: int,
    ) -> List[np.ndarray]:
        """
        Minimise reference-frame distances between every inlier pair over
        per-map (tx, ty, theta, log_scale). Falls back to `poses` when the
        problem is under-determined or the solver does not improve it.
        """
        n = len(poses)
        ia_l, ib_l, pa_l, pb_l = [], [], [], []
        for e in edges:
            pa, pb = e.match.inlier_points(features[e.src], features[e.dst])
            if len(pa) == 0:
                continue
            ia_l.append(np.full(len(pa), e.src))
            ib_l.append(np.full(len(pb), e.dst))
            pa_l.append(pa)
            pb_l.append(pb)
        free = [i for i in range(n) if i != ref]
        if not pa_l or 2 * sum(len(p) for p in pa_l) < 4 * len(free):
            return poses

        ia = np.concatenate(ia_l)
        ib = np.concatenate(ib_l)
        pa = np.vstack(pa_l)
        pb = np.vstack(pb_l)

        init = np.array([decompose_similarity(T) for T in poses])  # theta, scale, tx, ty
        slot = {node: k for k, node in enumerate(free)}
        x0 = np.concatenate([[init[i, 2], init[i, 3], init[i, 0], math.log(init[i, 1])] for i in free])

        def unpack(x: np.ndarray):
            th = np.zeros(n)
            ls = np.zeros(n)
            tx = np.zeros(n)
            ty = np.zeros(n)
            for node, k in slot.items():
                tx[node], ty[node], th[node], ls[node] = x[4 * k: 4 * k + 4]
            return th, np.exp(ls), tx, ty

        def to_ref(idx, p, th, s, tx, ty):
            c, sn = np.cos(th[idx]), np.sin(th[idx])
            x = s[idx] * (c * p[:, 0] - sn * p[:, 1]) + tx[idx]
            y = s[idx] * (sn * p[:, 0] + c * p[:, 1]) + ty[idx]
            return x, y

        def residuals(x: np.ndarray) -> np.ndarray:
            th, s, tx, ty = unpack(x)
            xa, ya = to_ref(ia, pa, th, s, tx, ty)
            xb, yb = to_ref(ib, pb, th, s, tx, ty)
            return np.concatenate([xa - xb, ya - yb])

        r0 = residuals(x0)
        try:
            result = least_squares(
                residuals,
                x0,
                method="trf",
                loss=self.refine_loss,
                f_scale=float(self.refine_f_scale),
                max_nfev=int(self.refine_max_nfev),
                x_scale="jac",
            )
        except (ValueError, np.linalg.LinAlgError) as e:
            log.warning("bundle adjustment failed", extra={"extra": {"error": str(e)}})
            return poses

        r1 = residuals(result.x)
        before = float(np.sqrt(np.mean(r0 ** 2)))
        after = float(np.sqrt(np.mean(r1 ** 2)))
        log.debug(
            "bundle adjustment",
            extra={"extra": {"observations": int(len(pa)), "rms_before": before, "rms_after": after, "nfev": int(result.nfev)}},
        )
        if not np.all(np.isfinite(result.x)) or after > before + 1e-6:
            return poses

        th, s, tx, ty = unpack(result.x)
        return [
            np.eye(3) if i == ref else similarity_matrix(th[i], s[i], tx[i], ty[i])
            for i in range(n)
        ]
