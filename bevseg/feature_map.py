"""BEV feature map: rasterize one point cloud frame into the network input.

Pipeline per frame:
1. Reset the per-cell accumulators (allocated once per builder)
2. One numba scatter pass: point -> cell, update count / height / intensity
3. Derive the per-cell features (means, log count, non-empty mask)
4. Write them into the fixed (C, H, W) tensor in FeatureLayout order
5. Build the inverse index (cell -> contributing point rows)

Feature layout v1 (channel order is a contract with the paired model):
    max_height, mean_height, log_count,
    [direction],                       if use_constant_feature
    [top_intensity, mean_intensity],   if use_intensity_feature
    [distance],                        if use_constant_feature
    nonempty
Empty cells read 0.0 in every height / intensity / count channel.
``direction`` and ``distance`` depend only on cell position and are filled
once at construction.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from .config import FeatureConfig, SegmenterConfig
from .grid import GridSpec
from .numba_kernels import scatter_cell_stats

FEATURE_LAYOUT_VERSION = 1

# Normalizer of the distance channel, fixed by the model's training setup
# (independent of the configured grid range).
_DISTANCE_NORM_M = 60.0


@dataclass(frozen=True)
class FeatureLayout:
    channels: tuple[str, ...]
    version: int = FEATURE_LAYOUT_VERSION

    @classmethod
    def for_flags(cls, use_intensity_feature: bool, use_constant_feature: bool) -> "FeatureLayout":
        channels = ["max_height", "mean_height", "log_count"]
        if use_constant_feature:
            channels.append("direction")
        if use_intensity_feature:
            channels += ["top_intensity", "mean_intensity"]
        if use_constant_feature:
            channels.append("distance")
        channels.append("nonempty")
        return cls(tuple(channels))

    @property
    def num_channels(self) -> int:
        return len(self.channels)

    def index(self, name: str) -> int:
        return self.channels.index(name)

    def __contains__(self, name: str) -> bool:
        return name in self.channels


@dataclass(eq=False)
class InverseIndex:
    """Cell -> contributing point rows, CSR style over flat cell indices.

    ``point_indices[cell_start[c]:cell_start[c + 1]]`` are the rows of cell
    ``c`` in ascending order. Rows index the sanitized point array handed to
    ``FeatureMapBuilder.build``.

    ``cell_start`` and ``nonempty`` are views into the builder's scratch
    buffers and stay valid only until the next ``build`` call on the same
    builder; copy them to keep a frame's index around.
    """

    cell_start: np.ndarray     # (G + 1,) int64
    point_indices: np.ndarray  # (M,) int64, grouped by ascending cell
    point_to_cell: np.ndarray  # (N,) int64, -1 = in no cell
    nonempty: np.ndarray       # (G,) bool

    @property
    def num_cells(self) -> int:
        return self.nonempty.shape[0]

    @property
    def num_points(self) -> int:
        return self.point_to_cell.shape[0]

    def points_in_cell(self, cell: int) -> np.ndarray:
        return self.point_indices[self.cell_start[cell]:self.cell_start[cell + 1]]

    def cell_count(self, cell: int) -> int:
        return int(self.cell_start[cell + 1] - self.cell_start[cell])


@dataclass
class FeatureStats:
    n_points: int
    n_in_grid: int
    n_nonempty_cells: int


@dataclass(eq=False)
class FeatureMap:
    """One frame's network input plus its inverse index.

    Arrays are views into the builder's scratch buffers and stay valid only
    until the next ``build`` call on the same builder.
    """

    tensor: np.ndarray         # (C, H, W) float32
    layout: FeatureLayout
    inverse_index: InverseIndex
    stats: FeatureStats


class FeatureMapBuilder:
    """Rasterizes point clouds onto a fixed BEV grid, reusing its buffers."""

    def __init__(
        self,
        grid: GridSpec,
        features: FeatureConfig | None = None,
        min_height_m: float = -5.0,
        max_height_m: float = 5.0,
        z_offset_m: float = 0.0,
    ):
        features = features or FeatureConfig()
        if not min_height_m < max_height_m:
            raise ValueError(f"Bad height limits: min={min_height_m}, max={max_height_m}")
        if not features.intensity_scale > 0:
            raise ValueError(f"Intensity scale must be positive: {features.intensity_scale}")
        self.grid = grid
        self.layout = FeatureLayout.for_flags(
            features.use_intensity_feature, features.use_constant_feature)
        self.min_height_m = float(min_height_m)
        self.max_height_m = float(max_height_m)
        self.z_offset_m = float(z_offset_m)
        self._inv_intensity_scale = 1.0 / float(features.intensity_scale)

        n_cells = grid.num_cells
        self._count = np.zeros(n_cells, dtype=np.int32)
        self._max_height = np.full(n_cells, self.min_height_m, dtype=np.float32)
        self._height_sum = np.zeros(n_cells, dtype=np.float64)
        self._top_intensity = np.zeros(n_cells, dtype=np.float32)
        self._intensity_sum = np.zeros(n_cells, dtype=np.float64)
        self._nonempty = np.zeros(n_cells, dtype=np.bool_)
        self._cell_start = np.zeros(n_cells + 1, dtype=np.int64)
        self._tensor = np.zeros((self.layout.num_channels, grid.height, grid.width), dtype=np.float32)

        if "direction" in self.layout:
            self._fill_constant_channels()

    @classmethod
    def from_config(cls, cfg: SegmenterConfig) -> "FeatureMapBuilder":
        return cls(
            GridSpec.from_config(cfg.grid),
            cfg.features,
            min_height_m=cfg.grid.min_height_m,
            max_height_m=cfg.grid.max_height_m,
            z_offset_m=cfg.transforms.z_offset_m,
        )

    def _fill_constant_channels(self) -> None:
        cx, cy = self.grid.cell_centers()
        self._tensor[self.layout.index("direction")] = np.arctan2(cy, cx) / (2.0 * np.pi)
        self._tensor[self.layout.index("distance")] = np.hypot(cx, cy) / _DISTANCE_NORM_M - 0.5

    def _reset(self) -> None:
        self._count.fill(0)
        self._max_height.fill(self.min_height_m)
        self._height_sum.fill(0.0)
        self._top_intensity.fill(0.0)
        self._intensity_sum.fill(0.0)

    def build(self, points: np.ndarray) -> FeatureMap:
        """Rasterize (N, 4) finite points [x, y, z, intensity] for one frame."""
        points = np.ascontiguousarray(points, dtype=np.float32)
        if points.size == 0:
            points = points.reshape(0, 4)
        if points.ndim != 2 or points.shape[1] != 4:
            raise ValueError(f"Expected (N, 4) points, got {points.shape}")

        grid = self.grid
        self._reset()
        point_to_cell = np.empty(points.shape[0], dtype=np.int64)
        n_in_grid = scatter_cell_stats(
            points,
            self.z_offset_m, self.min_height_m, self.max_height_m,
            grid.range_m, grid.inv_res_row, grid.inv_res_col,
            grid.height, grid.width,
            self._inv_intensity_scale,
            point_to_cell,
            self._count, self._max_height, self._height_sum,
            self._top_intensity, self._intensity_sum,
        )

        self._derive_features()
        inverse_index = self._build_inverse_index(point_to_cell, n_in_grid)
        return FeatureMap(
            tensor=self._tensor,
            layout=self.layout,
            inverse_index=inverse_index,
            stats=FeatureStats(
                n_points=int(points.shape[0]),
                n_in_grid=int(n_in_grid),
                n_nonempty_cells=int(np.count_nonzero(self._nonempty)),
            ),
        )

    def _derive_features(self) -> None:
        layout = self.layout
        # Flat (C, G) view so every channel is written in place.
        flat = self._tensor.reshape(layout.num_channels, -1)
        nonempty = self._nonempty
        np.greater(self._count, 0, out=nonempty)

        ch = flat[layout.index("max_height")]
        ch.fill(0.0)
        np.copyto(ch, self._max_height, where=nonempty)

        ch = flat[layout.index("mean_height")]
        ch.fill(0.0)
        np.divide(self._height_sum, self._count, out=ch, where=nonempty, casting="same_kind")

        np.log1p(self._count, out=flat[layout.index("log_count")], casting="same_kind")

        if "top_intensity" in layout:
            ch = flat[layout.index("top_intensity")]
            ch.fill(0.0)
            np.copyto(ch, self._top_intensity, where=nonempty)

            ch = flat[layout.index("mean_intensity")]
            ch.fill(0.0)
            np.divide(self._intensity_sum, self._count, out=ch, where=nonempty, casting="same_kind")

        flat[layout.index("nonempty")] = nonempty

    def _build_inverse_index(self, point_to_cell: np.ndarray, n_in_grid: int) -> InverseIndex:
        # Stable sort keeps ascending point order inside each cell; the -1
        # (not rasterized) entries all land in front and are sliced off.
        order = np.argsort(point_to_cell, kind="stable")
        point_indices = order[point_to_cell.shape[0] - n_in_grid:]
        self._cell_start[0] = 0
        np.cumsum(self._count, dtype=np.int64, out=self._cell_start[1:])
        return InverseIndex(
            cell_start=self._cell_start,
            point_indices=point_indices,
            point_to_cell=point_to_cell,
            nonempty=self._nonempty,
        )
