"""
Nearest-neighbor search over a stratum's controls.

The orchestrator only relies on the contract of the two functions here:

- ``build_index(points)`` indexes the control vectors in the given order
- ``nearest(index, query, k)`` returns up to k ``(position, distance)`` pairs,
  ascending by Euclidean distance, ties broken by insertion position

Any pair of callables with the same contract can be passed to
``run_matching`` instead.
"""

from typing import List, Sequence, Tuple

import numpy as np
from sklearn.neighbors import NearestNeighbors


class NeighborIndex:
    """Fitted NearestNeighbors model over a fixed list of points."""

    def __init__(self, points: np.ndarray):
        self.points = points
        self.size = points.shape[0]
        self.dim = points.shape[1] if points.ndim == 2 else 0
        self.model = None
        if self.size > 0 and self.dim > 0:
            self.model = NearestNeighbors(metric="euclidean").fit(points)


def build_index(points: Sequence[Sequence[float]]) -> NeighborIndex:
    """Index points (one row per control) for nearest-neighbor queries."""
    array = np.asarray(points, dtype=float)
    if array.ndim == 1:
        # no rows at all
        array = array.reshape(len(array), 0 if len(array) == 0 else -1)
    return NeighborIndex(array)


def nearest(index: NeighborIndex, query: Sequence[float], k: int) -> List[Tuple[int, float]]:
    """
    Find the k indexed points closest to query.

    Returns
    -------
    List[Tuple[int, float]]
        (insertion position, distance) pairs, ascending by distance, ties in
        insertion order; fewer than k when the index holds fewer points
    """
    k = min(k, index.size)
    if k <= 0:
        return []

    if index.model is None:
        # zero-dimensional vectors: every point is at distance 0
        return [(i, 0.0) for i in range(k)]

    q = np.asarray(query, dtype=float).reshape(1, -1)
    distances, indices = index.model.kneighbors(q, n_neighbors=k, return_distance=True)

    # Widen to everything tied with the k-th distance so the cut is made by
    # insertion order rather than by whatever order the tree returned
    kth = distances[0, -1]
    radius = kth + max(abs(kth), 1.0) * 1e-12
    r_dist, r_idx = index.model.radius_neighbors(q, radius=radius, return_distance=True)
    dist = np.concatenate([distances[0], r_dist[0]])
    idx = np.concatenate([indices[0], r_idx[0]])
    idx, first = np.unique(idx, return_index=True)
    dist = dist[first]

    order = np.lexsort((idx, dist))[:k]
    return [(int(idx[i]), float(dist[i])) for i in order]
