from typing import Dict, List, Optional, Tuple

import numpy as np
from scipy.spatial import cKDTree


class NeighborIndex:
    """
    Spatial index over vertex translations.

    Used to propose loop closure candidates: the nearest vertices to an anchor,
    ignoring a window of ids around it (recent vertices are trivially close
    and carry no loop information). Orientation is not considered.

    The KD-tree is rebuilt lazily on the first query after the set of
    positions changes.
    """

    def __init__(self):
        self._positions: Dict[int, np.ndarray] = {}
        self._tree: Optional[cKDTree] = None
        self._tree_ids: np.ndarray = np.zeros(0, dtype=np.int64)

    def add(self, vertex_id: int, translation):
        self._positions[vertex_id] = np.asarray(translation, dtype=np.float64).reshape(3)
        self._tree = None

    def update(self, positions: Dict[int, np.ndarray]):
        """Replace the positions of existing vertices (after optimization)."""
        for vertex_id, translation in positions.items():
            self._positions[vertex_id] = np.asarray(translation, dtype=np.float64).reshape(3)
        self._tree = None

    def clear(self):
        self._positions.clear()
        self._tree = None
        self._tree_ids = np.zeros(0, dtype=np.int64)

    def position(self, vertex_id: int) -> np.ndarray:
        return self._positions[vertex_id]

    def __contains__(self, vertex_id: int) -> bool:
        return vertex_id in self._positions

    def __len__(self) -> int:
        return len(self._positions)

    def _ensure_tree(self):
        if self._tree is None:
            self._tree_ids = np.array(sorted(self._positions), dtype=np.int64)
            points = np.array([self._positions[v] for v in self._tree_ids]).reshape(-1, 3)
            self._tree = cKDTree(points)

    def query(
        self,
        anchor: int,
        best_n: int,
        excluded_range: Tuple[int, int],
    ) -> List[int]:
        """
        Nearest vertices to `anchor` with ids outside `excluded_range`.

        Args:
            anchor: Vertex id whose neighbors are wanted
            best_n: Maximum number of neighbors returned
            excluded_range: Inclusive (low, high) range of ignored vertex ids

        Returns:
            Vertex ids by ascending distance, ties broken by lower id
        """
        if best_n <= 0 or not self._positions:
            return []

        self._ensure_tree()
        low, high = excluded_range
        center = self._positions[anchor]

        def _eligible(idx: np.ndarray) -> np.ndarray:
            ids = self._tree_ids[idx]
            return idx[(ids < low) | (ids > high)]

        n_points = len(self._tree_ids)
        n_excluded = int(np.count_nonzero((self._tree_ids >= low) & (self._tree_ids <= high)))
        k = min(n_points, best_n + n_excluded)

        distances, idx = self._tree.query(center, k=k)
        idx = _eligible(np.atleast_1d(idx))
        if idx.size == 0:
            return []

        # Gather every point tied with the farthest kept one so that ties are
        # resolved by id rather than by tree traversal order
        cutoff = np.linalg.norm(self._tree.data[idx[: best_n][-1]] - center)
        ball = np.asarray(self._tree.query_ball_point(center, cutoff * (1 + 1e-9) + 1e-12), dtype=np.int64)
        candidates = np.union1d(_eligible(ball), idx)

        dists = np.linalg.norm(self._tree.data[candidates] - center, axis=1)
        ids = self._tree_ids[candidates]
        order = np.lexsort((ids, dists))
        return [int(v) for v in ids[order][:best_n]]
