"""Grid clustering: union-find over cells driven by predicted center offsets.

Cells of one object are not always 4/8-connected (an L-shaped car seen across
a corner, thin structures), so cells are merged along the network's
per-cell vector pointing toward the object center instead of by adjacency:

1. Eligible cells: non-empty and objectness >= threshold
2. Each eligible cell is unioned with the eligible cell its offset lands in
   (nearest cell, halves rounded away from zero)
3. Each disjoint-set root becomes one cluster; cluster ids follow the
   smallest member cell, and points are listed in row-major cell order

The union-find lives in flat index arrays owned by the clusterer and reset at
the start of every frame.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from .feature_map import InverseIndex
from .grid import GridSpec
from .inference import Predictions
from .log import get_logger
from .numba_kernels import label_cells, link_cells

logger = get_logger(__name__)


@dataclass(eq=False)
class Cluster:
    cluster_id: int
    cells: np.ndarray          # (C,) int64, ascending flat cell indices
    point_indices: np.ndarray  # (K,) int64, rows grouped by cell, ascending

    @property
    def point_count(self) -> int:
        return int(self.point_indices.shape[0])

    @property
    def min_cell(self) -> int:
        return int(self.cells[0])


@dataclass(eq=False)
class ClusterResult:
    """Clusters of one frame, ordered by their smallest cell.

    ``cell_label`` is a view into the clusterer's scratch buffer and stays
    valid only until the next ``cluster`` call on the same clusterer. The
    ``Cluster`` arrays are fresh copies and do not expire.
    """

    clusters: list[Cluster]
    cell_label: np.ndarray  # (G,) int64, cluster id per cell, -1 = none
    n_eligible: int
    n_unions: int

    def __len__(self) -> int:
        return len(self.clusters)

    def partition(self) -> set[frozenset[int]]:
        """Clusters as a set of cell sets, for order-free comparisons."""
        return {frozenset(int(c) for c in cl.cells) for cl in self.clusters}


def _group(values: np.ndarray, labels: np.ndarray, n_groups: int) -> list[np.ndarray]:
    # Stable sort keeps the incoming (cell / point) order inside each group.
    order = np.argsort(labels, kind="stable")
    counts = np.bincount(labels, minlength=n_groups)
    return np.split(values[order], np.cumsum(counts)[:-1])


class GridClusterer:
    """Learned-offset union-find clustering on a fixed grid."""

    def __init__(self, grid: GridSpec):
        self.grid = grid
        n_cells = grid.num_cells
        self._cell_ids = np.arange(n_cells, dtype=np.int64)
        self._parent = np.empty(n_cells, dtype=np.int64)
        self._rank = np.zeros(n_cells, dtype=np.int32)
        self._eligible = np.zeros(n_cells, dtype=np.bool_)
        self._root_label = np.empty(n_cells, dtype=np.int64)
        self._cell_label = np.empty(n_cells, dtype=np.int64)

    def cluster(
        self,
        predictions: Predictions,
        inverse_index: InverseIndex,
        objectness_threshold: float,
    ) -> ClusterResult:
        grid = self.grid
        if predictions.num_cells != grid.num_cells or inverse_index.num_cells != grid.num_cells:
            raise ValueError(
                f"Grid mismatch: predictions={predictions.num_cells}, "
                f"inverse index={inverse_index.num_cells}, grid={grid.num_cells}"
            )

        eligible = self._eligible
        # NaN objectness compares False, so it is never eligible.
        np.greater_equal(predictions.objectness, objectness_threshold, out=eligible)
        eligible &= inverse_index.nonempty
        visit = np.flatnonzero(eligible).astype(np.int64, copy=False)

        self._parent[:] = self._cell_ids
        self._rank.fill(0)
        n_unions = link_cells(
            visit, eligible,
            predictions.offset_x, predictions.offset_y,
            grid.height, grid.width,
            grid.inv_res_row, grid.inv_res_col,
            self._parent, self._rank,
        )

        self._root_label.fill(-1)
        self._cell_label.fill(-1)
        n_clusters = label_cells(eligible, self._parent, self._root_label, self._cell_label)

        clusters = self._collect(visit, n_clusters, inverse_index)
        logger.debug(
            "Clustered %d eligible cells into %d clusters (%d unions)",
            visit.size, n_clusters, n_unions,
        )
        return ClusterResult(
            clusters=clusters,
            cell_label=self._cell_label,
            n_eligible=int(visit.size),
            n_unions=int(n_unions),
        )

    def _collect(self, visit: np.ndarray, n_clusters: int, inverse_index: InverseIndex) -> list[Cluster]:
        if n_clusters == 0:
            return []
        cell_label = self._cell_label
        cell_groups = _group(visit, cell_label[visit], n_clusters)

        # inverse_index.point_indices is already in ascending cell order.
        pts = inverse_index.point_indices
        pt_labels = cell_label[inverse_index.point_to_cell[pts]]
        keep = pt_labels >= 0
        point_groups = _group(pts[keep], pt_labels[keep], n_clusters)

        return [
            Cluster(cluster_id=i, cells=cell_groups[i], point_indices=point_groups[i])
            for i in range(n_clusters)
        ]
