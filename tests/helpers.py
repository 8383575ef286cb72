"""Shared builders for small hand-made grids, clouds and predictions."""

import numpy as np

from bevseg.config import config_from_dict
from bevseg.grid import GridSpec
from bevseg.inference import PredictionLayout, Predictions


def small_config(width=4, height=4, range_m=2.0, **overrides):
    """4x4 grid, 1 m cells, no z offset, permissive thresholds."""
    raw = {
        "grid": {"width": width, "height": height, "range_m": range_m},
        "clustering": {"objectness_threshold": 0.5},
        "objects": {"score_threshold": 0.5, "height_thresh": 0.0, "min_pts_num": 1},
        "transforms": {"target_frame": "base_link", "z_offset_m": 0.0},
        "logging": {"level": "WARNING"},
    }
    for section, values in overrides.items():
        raw.setdefault(section, {}).update(values)
    return config_from_dict(raw)


def points_in_cells(grid: GridSpec, cell_points: dict, z_step=0.25, intensity=100.0):
    """Stack points at cell centers; cell_points maps (row, col) -> count.

    Points inside one cell get z = 0, z_step, 2 * z_step, ... so every
    multi-point cell has a known height range.
    """
    rows = []
    for (row, col), n in cell_points.items():
        x, y = grid.cell_center(row, col)
        for k in range(n):
            rows.append([x, y, k * z_step, intensity])
    if not rows:
        return np.zeros((0, 4), dtype=np.float32)
    return np.asarray(rows, dtype=np.float32)


def blank_predictions(grid: GridSpec, layout: PredictionLayout | None = None):
    """(C', H, W) tensor of zeros in the default 12-channel layout."""
    layout = layout or default_layout()
    return np.zeros((layout.num_channels, grid.height, grid.width), dtype=np.float32), layout


def default_layout():
    return PredictionLayout(
        num_channels=12, objectness=0, offset_x=1, offset_y=2, confidence=3, height=11,
        class_start=4, class_names=("unknown", "car", "truck", "bicycle", "pedestrian"),
    )


def point_at(tensor, layout, grid, src, dst):
    """Set the offsets of cell src so it lands on cell dst (both (row, col))."""
    dr = (dst[0] - src[0]) * grid.cell_size_row
    dc = (dst[1] - src[1]) * grid.cell_size_col
    tensor[layout.offset_x, src[0], src[1]] = dr
    tensor[layout.offset_y, src[0], src[1]] = dc


def to_predictions(tensor, layout):
    return Predictions.from_tensor(tensor, layout)
