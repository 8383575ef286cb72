"""BEV grid geometry: point -> cell indexing and cell centers.

Convention (shared with the paired network):
    row = floor((range - x) * height / (2 * range))
    col = floor((range - y) * width  / (2 * range))
so +x (forward) is the top row and +y (left) is the left column. The extent
is closed: x = -range falls in the last row, y = -range in the last column.
A cell is addressed by its flat index ``row * width + col`` everywhere in the
package.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from .config import GridConfig
from .numba_kernels import grid_index, grid_index_batch


@dataclass(frozen=True)
class GridSpec:
    width: int      # columns
    height: int     # rows
    range_m: float  # half extent

    def __post_init__(self):
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"Grid dimensions must be positive: {self.width}x{self.height}")
        if not self.range_m > 0:
            raise ValueError(f"Grid range must be positive: {self.range_m}")

    @classmethod
    def from_config(cls, cfg: GridConfig) -> "GridSpec":
        return cls(width=int(cfg.width), height=int(cfg.height), range_m=float(cfg.range_m))

    @property
    def num_cells(self) -> int:
        return self.width * self.height

    @property
    def cell_size_row(self) -> float:
        """Meters per row (along x)."""
        return 2.0 * self.range_m / self.height

    @property
    def cell_size_col(self) -> float:
        """Meters per column (along y)."""
        return 2.0 * self.range_m / self.width

    @property
    def inv_res_row(self) -> float:
        return 0.5 * self.height / self.range_m

    @property
    def inv_res_col(self) -> float:
        return 0.5 * self.width / self.range_m

    def flat(self, row: int, col: int) -> int:
        return row * self.width + col

    def row_col(self, cell: int) -> tuple[int, int]:
        return divmod(int(cell), self.width)

    def cell_of(self, x: float, y: float) -> tuple[int, int] | None:
        """(row, col) of a planar point, or None outside the grid."""
        cell = grid_index(float(x), float(y), self.range_m,
                          self.inv_res_row, self.inv_res_col, self.height, self.width)
        if cell < 0:
            return None
        return self.row_col(cell)

    def cells_of(self, xy: np.ndarray) -> np.ndarray:
        """Flat cell index per row of an (N, 2+) array; -1 outside the grid."""
        xy = np.ascontiguousarray(xy, dtype=np.float64).reshape(-1, np.shape(xy)[-1])
        out = np.empty(xy.shape[0], dtype=np.int64)
        grid_index_batch(xy, self.range_m, self.inv_res_row, self.inv_res_col,
                         self.height, self.width, out)
        return out

    def cell_center(self, row: int, col: int) -> tuple[float, float]:
        """World (x, y) of a cell center."""
        x = self.range_m - (row + 0.5) * self.cell_size_row
        y = self.range_m - (col + 0.5) * self.cell_size_col
        return x, y

    def cell_centers(self) -> tuple[np.ndarray, np.ndarray]:
        """(height, width) arrays of cell-center x and y."""
        rows = np.arange(self.height, dtype=np.float64)
        cols = np.arange(self.width, dtype=np.float64)
        cx = self.range_m - (rows + 0.5) * self.cell_size_row
        cy = self.range_m - (cols + 0.5) * self.cell_size_col
        return np.repeat(cx[:, None], self.width, axis=1), np.repeat(cy[None, :], self.height, axis=0)

    def center_offsets(self, x: float, y: float) -> tuple[np.ndarray, np.ndarray]:
        """Per-cell (offset_x, offset_y) that make every cell point at (x, y).

        Offsets are in meters along the row and column axes, the layout the
        network's instance head predicts. Rows grow as x shrinks, hence the
        sign flip relative to world coordinates.
        """
        cx, cy = self.cell_centers()
        return (cx - x).astype(np.float32), (cy - y).astype(np.float32)
