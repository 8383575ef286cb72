"""Numba-accelerated kernels for BEV rasterization and grid clustering."""

from __future__ import annotations

import math
import time

import numba as nb
import numpy as np

from .log import get_logger

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Grid indexing: shared by the Python API and the scatter kernel
# ---------------------------------------------------------------------------

@nb.njit(cache=True)
def grid_index(
    x: float,
    y: float,
    range_m: float,
    inv_res_row: float,   # rows / (2 * range)
    inv_res_col: float,   # cols / (2 * range)
    rows: int,
    cols: int,
) -> int:
    """Flat cell index ``row * cols + col`` for planar (x, y), or -1.

    x runs down the rows (x = +range is row 0), y runs across the columns
    (y = +range is column 0). Both edges are closed: x = -range lands in the
    last row, y = -range in the last column.
    """
    # Also rejects NaN.
    if not (x >= -range_m and y >= -range_m):
        return -1
    # Stay in float until the bounds check so huge coordinates cannot overflow.
    fr = min(np.floor((range_m - x) * inv_res_row), rows - 1.0)
    fc = min(np.floor((range_m - y) * inv_res_col), cols - 1.0)
    if not (fr >= 0.0 and fc >= 0.0):
        return -1
    return int(fr) * cols + int(fc)


@nb.njit(cache=True)
def grid_index_batch(
    xy: np.ndarray,        # (N, 2+) float64
    range_m: float,
    inv_res_row: float,
    inv_res_col: float,
    rows: int,
    cols: int,
    out: np.ndarray,       # (N,) int64
) -> None:
    for i in range(xy.shape[0]):
        out[i] = grid_index(xy[i, 0], xy[i, 1], range_m, inv_res_row, inv_res_col, rows, cols)


# ---------------------------------------------------------------------------
# Feature map: single-pass scatter of per-cell statistics
# ---------------------------------------------------------------------------

@nb.njit(cache=True)
def scatter_cell_stats(
    points: np.ndarray,         # (N, 4) float32, x y z intensity (all finite)
    z_offset: float,
    min_z: float,
    max_z: float,
    range_m: float,
    inv_res_row: float,
    inv_res_col: float,
    rows: int,
    cols: int,
    inv_intensity_scale: float,
    point_to_cell: np.ndarray,  # (N,) int64, out; -1 = not rasterized
    count: np.ndarray,          # (G,) int32, pre-filled 0
    max_height: np.ndarray,     # (G,) float32, pre-filled min_z
    height_sum: np.ndarray,     # (G,) float64, pre-filled 0
    top_intensity: np.ndarray,  # (G,) float32, pre-filled 0
    intensity_sum: np.ndarray,  # (G,) float64, pre-filled 0
) -> int:  # n_in_grid
    """Map every point to its cell and update the cell accumulators.

    Points outside the height band or the planar extent get
    ``point_to_cell = -1`` and touch no accumulator.
    """
    n_in_grid = 0
    N = points.shape[0]

    for i in range(N):
        z = points[i, 2] + z_offset
        if z <= min_z or z >= max_z:
            point_to_cell[i] = -1
            continue

        cell = grid_index(points[i, 0], points[i, 1], range_m,
                          inv_res_row, inv_res_col, rows, cols)
        point_to_cell[i] = cell
        if cell < 0:
            continue
        n_in_grid += 1

        intensity = points[i, 3] * inv_intensity_scale
        # Top intensity follows the highest point seen so far in the cell.
        if z > max_height[cell]:
            max_height[cell] = z
            top_intensity[cell] = intensity
        height_sum[cell] += z
        intensity_sum[cell] += intensity
        count[cell] += 1

    return n_in_grid


# ---------------------------------------------------------------------------
# Clustering: union-find over flat cell indices
# ---------------------------------------------------------------------------

@nb.njit(cache=True)
def _round_half_away(v: float) -> int:
    if v >= 0.0:
        return int(math.floor(v + 0.5))
    return -int(math.floor(-v + 0.5))


@nb.njit(cache=True)
def uf_find(parent: np.ndarray, i: int) -> int:
    """Root of i, compressing the whole path onto it."""
    root = i
    while parent[root] != root:
        root = parent[root]
    while parent[i] != root:
        nxt = parent[i]
        parent[i] = root
        i = nxt
    return root


@nb.njit(cache=True)
def uf_union(parent: np.ndarray, rank: np.ndarray, a: int, b: int) -> bool:
    """Merge the sets of a and b by rank. Returns False if already joined."""
    ra = uf_find(parent, a)
    rb = uf_find(parent, b)
    if ra == rb:
        return False
    if rank[ra] < rank[rb]:
        parent[ra] = rb
    elif rank[ra] > rank[rb]:
        parent[rb] = ra
    else:
        parent[rb] = ra
        rank[ra] += 1
    return True


@nb.njit(cache=True)
def link_cells(
    visit: np.ndarray,        # (K,) int64, eligible cells in visiting order
    eligible: np.ndarray,     # (G,) bool
    offset_x: np.ndarray,     # (G,) float32, meters along the row axis
    offset_y: np.ndarray,     # (G,) float32, meters along the column axis
    rows: int,
    cols: int,
    inv_res_row: float,
    inv_res_col: float,
    parent: np.ndarray,       # (G,) int64, pre-filled with arange(G)
    rank: np.ndarray,         # (G,) int32, pre-filled 0
) -> int:  # n_unions
    """Union every eligible cell with the cell its center offset points at.

    Targets outside the grid, ineligible targets, self-pointers and
    non-finite offsets contribute no union.
    """
    n_unions = 0
    for k in range(visit.shape[0]):
        cell = visit[k]
        dx = offset_x[cell]
        dy = offset_y[cell]
        if not (math.isfinite(dx) and math.isfinite(dy)):
            continue
        row = cell // cols
        col = cell - row * cols
        target_row = _round_half_away(row + dx * inv_res_row)
        target_col = _round_half_away(col + dy * inv_res_col)
        if target_row < 0 or target_row >= rows or target_col < 0 or target_col >= cols:
            continue
        target = target_row * cols + target_col
        if target == cell or not eligible[target]:
            continue
        if uf_union(parent, rank, cell, target):
            n_unions += 1
    return n_unions


@nb.njit(cache=True)
def label_cells(
    eligible: np.ndarray,     # (G,) bool
    parent: np.ndarray,       # (G,) int64, after link_cells
    root_label: np.ndarray,   # (G,) int64, pre-filled -1 (scratch)
    cell_label: np.ndarray,   # (G,) int64, pre-filled -1 (out)
) -> int:  # n_clusters
    """Give each set a dense id, in ascending order of its smallest cell."""
    n_clusters = 0
    for cell in range(eligible.shape[0]):
        if not eligible[cell]:
            continue
        root = uf_find(parent, cell)
        if root_label[root] < 0:
            root_label[root] = n_clusters
            n_clusters += 1
        cell_label[cell] = root_label[root]
    return n_clusters


# ---------------------------------------------------------------------------
# Warmup: compile all kernels once with tiny dummy data
# ---------------------------------------------------------------------------

def warmup_numba() -> float:
    """Trigger JIT compilation for all kernels. Returns warmup time in seconds."""
    t0 = time.perf_counter()

    rows, cols = 4, 4
    n_cells = rows * cols
    dummy_pts = np.zeros((10, 4), dtype=np.float32)
    point_to_cell = np.empty(10, dtype=np.int64)
    scatter_cell_stats(
        dummy_pts, 0.0, -5.0, 5.0, 2.0, 1.0, 1.0, rows, cols, 1.0,
        point_to_cell,
        np.zeros(n_cells, np.int32), np.full(n_cells, -5.0, np.float32),
        np.zeros(n_cells, np.float64), np.zeros(n_cells, np.float32),
        np.zeros(n_cells, np.float64),
    )

    eligible = np.ones(n_cells, dtype=np.bool_)
    offsets = np.zeros(n_cells, dtype=np.float32)
    parent = np.arange(n_cells, dtype=np.int64)
    rank = np.zeros(n_cells, dtype=np.int32)
    link_cells(
        np.arange(n_cells, dtype=np.int64), eligible, offsets, offsets,
        rows, cols, 1.0, 1.0, parent, rank,
    )
    label_cells(
        eligible, parent,
        np.full(n_cells, -1, np.int64), np.full(n_cells, -1, np.int64),
    )

    dt = time.perf_counter() - t0
    logger.info("Numba warmup: %.1fs", dt)
    return dt
