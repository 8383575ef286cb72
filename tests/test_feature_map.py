"""Tests for bevseg.feature_map — rasterization and the inverse index."""

import numpy as np
import pytest

from bevseg.config import FeatureConfig
from bevseg.feature_map import FeatureLayout, FeatureMapBuilder
from bevseg.grid import GridSpec

from helpers import points_in_cells


@pytest.fixture
def grid():
    return GridSpec(width=4, height=4, range_m=2.0)


def _builder(grid, intensity=True, constant=True, **kwargs):
    return FeatureMapBuilder(grid, FeatureConfig(intensity, constant, 255.0), **kwargs)


@pytest.mark.parametrize("intensity,constant,expected", [
    (False, False, ("max_height", "mean_height", "log_count", "nonempty")),
    (True, False, ("max_height", "mean_height", "log_count",
                   "top_intensity", "mean_intensity", "nonempty")),
    (False, True, ("max_height", "mean_height", "log_count",
                   "direction", "distance", "nonempty")),
    (True, True, ("max_height", "mean_height", "log_count", "direction",
                  "top_intensity", "mean_intensity", "distance", "nonempty")),
])
def test_layout_channel_order(intensity, constant, expected):
    layout = FeatureLayout.for_flags(intensity, constant)
    assert layout.channels == expected
    assert layout.version == 1


def test_tensor_shape(grid):
    fmap = _builder(grid).build(points_in_cells(grid, {(0, 0): 1}))
    assert fmap.tensor.shape == (8, 4, 4)
    assert fmap.tensor.dtype == np.float32


def test_cell_statistics(grid):
    pts = np.array([
        [1.5, 1.5, 0.2, 51.0],
        [1.5, 1.5, 1.0, 255.0],
        [1.5, 1.5, 0.6, 0.0],
    ], dtype=np.float32)
    fmap = _builder(grid).build(pts)
    t, layout = fmap.tensor, fmap.layout
    assert t[layout.index("max_height"), 0, 0] == pytest.approx(1.0)
    assert t[layout.index("mean_height"), 0, 0] == pytest.approx(0.6)
    assert t[layout.index("log_count"), 0, 0] == pytest.approx(np.log(4.0))
    assert t[layout.index("top_intensity"), 0, 0] == pytest.approx(1.0)
    assert t[layout.index("mean_intensity"), 0, 0] == pytest.approx((0.2 + 1.0 + 0.0) / 3)
    assert t[layout.index("nonempty"), 0, 0] == 1.0


def test_empty_cells_default_to_zero(grid):
    fmap = _builder(grid).build(points_in_cells(grid, {(0, 0): 2}))
    t, layout = fmap.tensor, fmap.layout
    for name in ("max_height", "mean_height", "log_count", "top_intensity", "mean_intensity", "nonempty"):
        assert t[layout.index(name), 2, 2] == 0.0
    assert np.all(np.isfinite(t))


def test_negative_heights_survive_max(grid):
    pts = np.array([[1.5, 1.5, -3.0, 0.0], [1.5, 1.5, -2.0, 0.0]], dtype=np.float32)
    fmap = _builder(grid).build(pts)
    assert fmap.tensor[fmap.layout.index("max_height"), 0, 0] == pytest.approx(-2.0)


def test_constant_channels(grid):
    fmap = _builder(grid).build(np.zeros((0, 4), np.float32))
    t, layout = fmap.tensor, fmap.layout
    x, y = grid.cell_center(0, 3)
    assert t[layout.index("direction"), 0, 3] == pytest.approx(np.arctan2(y, x) / (2 * np.pi))
    assert t[layout.index("distance"), 0, 3] == pytest.approx(np.hypot(x, y) / 60.0 - 0.5)


def test_z_offset_and_height_band(grid):
    pts = np.array([
        [1.5, 1.5, 0.5, 0.0],    # 0.5 + 2 = 2.5 -> kept
        [1.5, -1.5, 3.5, 0.0],   # 3.5 + 2 = 5.5 -> above band
        [-1.5, 1.5, -7.5, 0.0],  # -5.5 -> below band
    ], dtype=np.float32)
    fmap = _builder(grid, z_offset_m=2.0, min_height_m=-5.0, max_height_m=5.0).build(pts)
    assert fmap.stats.n_in_grid == 1
    assert fmap.tensor[fmap.layout.index("max_height"), 0, 0] == pytest.approx(2.5)
    assert list(fmap.inverse_index.point_to_cell) == [0, -1, -1]


def test_inverse_index_covers_in_range_points_once():
    g = GridSpec(width=32, height=32, range_m=10.0)
    rng = np.random.default_rng(7)
    pts = np.zeros((3000, 4), dtype=np.float32)
    pts[:, :2] = rng.uniform(-14.0, 14.0, size=(3000, 2))
    pts[:, 2] = rng.uniform(-1.0, 1.0, size=3000)
    fmap = FeatureMapBuilder(g).build(pts)
    inv = fmap.inverse_index

    in_range = np.flatnonzero(g.cells_of(pts[:, :2]) >= 0)
    assert fmap.stats.n_in_grid == in_range.size
    assert sorted(inv.point_indices.tolist()) == in_range.tolist()
    assert np.unique(inv.point_indices).size == inv.point_indices.size

    for cell in np.flatnonzero(inv.nonempty)[:50]:
        members = inv.points_in_cell(cell)
        assert np.all(np.diff(members) > 0)
        assert np.all(inv.point_to_cell[members] == cell)
    assert inv.cell_start[-1] == in_range.size


def test_nonempty_mask_matches_counts(grid):
    fmap = _builder(grid).build(points_in_cells(grid, {(0, 1): 3, (3, 2): 1}))
    inv = fmap.inverse_index
    assert set(np.flatnonzero(inv.nonempty).tolist()) == {grid.flat(0, 1), grid.flat(3, 2)}
    assert inv.cell_count(grid.flat(0, 1)) == 3
    assert fmap.stats.n_nonempty_cells == 2


def test_buffers_reset_between_frames(grid):
    builder = _builder(grid)
    builder.build(points_in_cells(grid, {(0, 0): 5, (1, 1): 2}))
    fmap = builder.build(points_in_cells(grid, {(2, 2): 1}))
    t, layout = fmap.tensor, fmap.layout
    assert t[layout.index("nonempty"), 0, 0] == 0.0
    assert t[layout.index("log_count"), 1, 1] == 0.0
    assert t[layout.index("nonempty"), 2, 2] == 1.0
    assert fmap.stats.n_nonempty_cells == 1


def test_empty_cloud(grid):
    fmap = _builder(grid).build(np.zeros((0, 4), np.float32))
    assert fmap.stats.n_points == 0
    assert fmap.inverse_index.point_indices.size == 0
    assert not fmap.inverse_index.nonempty.any()


def test_rejects_bad_shape(grid):
    with pytest.raises(ValueError, match="Expected"):
        _builder(grid).build(np.zeros((5, 3), np.float32))


def test_inverse_index_views_follow_next_build(grid):
    builder = _builder(grid)
    first = builder.build(points_in_cells(grid, {(0, 0): 2})).inverse_index
    assert first.nonempty[0]
    builder.build(points_in_cells(grid, {(3, 3): 1}))
    # Scratch views now describe the second frame.
    assert not first.nonempty[0]
    assert first.cell_count(grid.flat(3, 3)) == 1
