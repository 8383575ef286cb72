"""Tests for bevseg.grid — point to cell indexing."""

import numpy as np
import pytest

from bevseg.grid import GridSpec


@pytest.fixture
def grid():
    return GridSpec(width=4, height=4, range_m=2.0)


def test_cell_sizes(grid):
    assert grid.cell_size_row == pytest.approx(1.0)
    assert grid.cell_size_col == pytest.approx(1.0)
    assert grid.num_cells == 16


def test_forward_left_is_top_left_cell(grid):
    assert grid.cell_of(1.5, 1.5) == (0, 0)


def test_backward_right_is_bottom_right_cell(grid):
    assert grid.cell_of(-1.5, -1.5) == (3, 3)


def test_x_selects_row_y_selects_column():
    g = GridSpec(width=8, height=4, range_m=2.0)
    # rows are 1 m tall, columns 0.5 m wide
    assert g.cell_of(0.5, 0.25) == (1, 3)


def test_outside_range_is_none(grid):
    assert grid.cell_of(2.5, 0.0) is None
    assert grid.cell_of(0.0, -2.5) is None
    assert grid.cell_of(1e30, 0.0) is None


def test_boundary_convention(grid):
    # Closed extent: +range is the first row/column, -range the last.
    assert grid.cell_of(2.0, 2.0) == (0, 0)
    assert grid.cell_of(-2.0, 0.0) == (3, 2)
    assert grid.cell_of(0.0, -2.0) == (2, 3)
    assert grid.cell_of(-2.0, -2.0) == (3, 3)
    assert grid.cell_of(-2.001, 0.0) is None
    assert grid.cell_of(0.0, 2.001) is None


def test_lower_edge_closed_on_uneven_grid():
    g = GridSpec(width=640, height=640, range_m=60.0)
    assert g.cell_of(-60.0, -60.0) == (639, 639)
    assert g.cells_of(np.array([[-60.0, 60.0]]))[0] == g.flat(639, 0)


def test_nan_is_outside(grid):
    assert grid.cell_of(np.nan, 0.0) is None
    assert grid.cell_of(0.0, np.nan) is None


def test_interior_points_always_land_in_grid():
    g = GridSpec(width=64, height=48, range_m=30.0)
    rng = np.random.default_rng(1)
    xy = rng.uniform(-29.999, 29.999, size=(5000, 2))
    cells = g.cells_of(xy)
    assert np.all(cells >= 0)
    assert np.all(cells < g.num_cells)


def test_exterior_points_never_land_in_grid():
    g = GridSpec(width=64, height=48, range_m=30.0)
    rng = np.random.default_rng(2)
    inside = rng.uniform(-29.0, 29.0, size=1000)
    outside = rng.uniform(30.001, 100.0, size=1000) * rng.choice([-1.0, 1.0], size=1000)
    xy = np.column_stack([np.concatenate([outside, inside]), np.concatenate([inside, outside])])
    assert np.all(g.cells_of(xy) == -1)


def test_scalar_and_batch_agree():
    g = GridSpec(width=10, height=10, range_m=5.0)
    rng = np.random.default_rng(3)
    xy = rng.uniform(-6.0, 6.0, size=(500, 2))
    batch = g.cells_of(xy)
    for (x, y), cell in zip(xy, batch):
        rc = g.cell_of(x, y)
        assert (rc is None and cell == -1) or g.flat(*rc) == cell


def test_cell_center_maps_back_to_cell(grid):
    for row in range(grid.height):
        for col in range(grid.width):
            assert grid.cell_of(*grid.cell_center(row, col)) == (row, col)


def test_cell_centers_match_scalar(grid):
    cx, cy = grid.cell_centers()
    assert cx.shape == (4, 4)
    assert (cx[2, 1], cy[2, 1]) == pytest.approx(grid.cell_center(2, 1))


def test_center_offsets_point_at_target_cell(grid):
    off_x, off_y = grid.center_offsets(*grid.cell_center(1, 2))
    # cell (3, 0) is two rows below and two columns left of (1, 2)
    assert off_x[3, 0] == pytest.approx(-2.0)
    assert off_y[3, 0] == pytest.approx(2.0)
    assert off_x[1, 2] == pytest.approx(0.0)


def test_row_col_roundtrip(grid):
    assert grid.row_col(grid.flat(2, 3)) == (2, 3)


def test_rejects_bad_dimensions():
    with pytest.raises(ValueError):
        GridSpec(width=0, height=4, range_m=1.0)
    with pytest.raises(ValueError):
        GridSpec(width=4, height=4, range_m=0.0)
