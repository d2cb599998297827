import numpy as np
from scipy.spatial import cKDTree


class NeighbourSearch:
    """
    Radius queries against a snapshot of cell positions.

    The tree is built from the positions passed to `refresh`. Cells that move
    afterwards are only seen at their snapshot positions until the next
    refresh (or an `update` of that single entry).
    """

    def __init__(self, domain_min, domain_max):
        self.domain_min = np.asarray(domain_min, dtype=np.float64)
        self.domain_max = np.asarray(domain_max, dtype=np.float64)
        self.positions = np.zeros((0, 2))
        self._tree = None
        self._stale = False

    def refresh(self, positions):
        """Rebuilds the tree from a copy of `positions` (shape (n, 2))."""
        positions = np.array(positions, dtype=np.float64).reshape(-1, 2)
        if np.any(positions < self.domain_min) or np.any(positions > self.domain_max):
            raise ValueError("Cell positions fall outside the search domain "
                             f"[{self.domain_min}, {self.domain_max}]")
        self.positions = positions
        self._tree = cKDTree(positions) if len(positions) else None
        self._stale = False

    def update(self, index, position):
        """
        Makes a single committed move visible to later queries.

        Only the stored position is overwritten here; the tree is rebuilt
        (O(n log n)) on the next query, so a run of updates between queries
        costs one rebuild.
        """
        self.positions[index] = position
        self._stale = True

    def _current_tree(self):
        if self._stale:
            self._tree = cKDTree(self.positions) if len(self.positions) else None
            self._stale = False
        return self._tree

    def query(self, point, radius):
        """
        Returns (indices, offsets) of every snapshot entry strictly closer than
        `radius` to `point`, where offsets[k] = positions[indices[k]] - point.
        Indices come back sorted.
        """
        point = np.asarray(point, dtype=np.float64)
        tree = self._current_tree()
        if tree is None:
            return np.zeros(0, dtype=np.int64), np.zeros((0, 2))
        candidates = np.array(sorted(tree.query_ball_point(point, radius)), dtype=np.int64)
        if len(candidates) == 0:
            return candidates, np.zeros((0, 2))
        offsets = self.positions[candidates] - point
        keep = np.hypot(offsets[:, 0], offsets[:, 1]) < radius
        return candidates[keep], offsets[keep]

    def is_free(self, point, radius, exclude=-1):
        """True when no entry other than `exclude` lies within `radius`."""
        indices, _ = self.query(point, radius)
        return not np.any(indices != exclude)
